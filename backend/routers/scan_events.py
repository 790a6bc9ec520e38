from typing import Any

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel

from backend.config import DOUBLE_TAP_WINDOW_SECONDS, HISTORY_DEFAULT_LIMIT, HISTORY_MAX_LIMIT
from backend.errors import NotFoundError
from backend.gate import require_context
from backend.services.events import derive_status
from backend.services.scan_ingestion import submit
from database.db import get_employee, get_scan_events

router = APIRouter()


class ScanEventCreate(BaseModel):
    # Kept loose so any value reaches parse_direction and fails with its message.
    direction: Any = None


def _client_ip(request: Request) -> str | None:
    raw = request.client.host if request.client else ""
    if raw.startswith("::ffff:"):
        raw = raw.replace("::ffff:", "", 1)
    return raw or None


def _clamp_limit(raw: str | None) -> int:
    try:
        limit = int((raw or str(HISTORY_DEFAULT_LIMIT)).strip())
    except ValueError:
        return HISTORY_DEFAULT_LIMIT
    if limit < 1:
        return HISTORY_DEFAULT_LIMIT
    return min(limit, HISTORY_MAX_LIMIT)


@router.post("/employees/{employee_id}/scan-events")
def create_scan_event(
    employee_id: str,
    request: Request,
    response: Response,
    ctx: dict = Depends(require_context),
    user_agent: str | None = Header(default=None),
    payload: ScanEventCreate | None = None,
):
    raw_direction = payload.direction if payload is not None else None
    result = submit(
        employee_id,
        "" if raw_direction is None else str(raw_direction),
        client_id=ctx["client"]["client_id"],
        scantag_id=ctx["scantag"]["scantag_id"],
        user_agent=user_agent,
        ip_address=_client_ip(request),
    )

    response.status_code = 201 if result["accepted"] else 200
    body = {"ok": True, **result}
    if result["ignored"]:
        body.pop("event")
        body.pop("extra_events")
        body.pop("warning")
        body["cooldown_seconds"] = DOUBLE_TAP_WINDOW_SECONDS
    return body


@router.get("/employees/{employee_id}/scan-events")
def list_scan_events(
    employee_id: str,
    limit: str | None = None,
    ctx: dict = Depends(require_context),
):
    client_id = ctx["client"]["client_id"]
    if get_employee(employee_id, client_id) is None:
        raise NotFoundError("employee not found")

    events = get_scan_events(employee_id, client_id, _clamp_limit(limit))
    return {
        "ok": True,
        "employee_id": employee_id,
        "current_status": derive_status(events[0] if events else None),
        "events": events,
    }
