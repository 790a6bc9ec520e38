from typing import Any

from fastapi import APIRouter, Body, Depends

from backend.gate import require_context
from backend.services.reference import get_reference, update_reference

router = APIRouter()


@router.get("/employees/{employee_id}/reference")
def read_reference(employee_id: str, ctx: dict = Depends(require_context)):
    return {"ok": True, **get_reference(employee_id, ctx["client"]["client_id"])}


@router.put("/employees/{employee_id}/reference")
def write_reference(
    employee_id: str,
    payload: Any = Body(default=None),
    ctx: dict = Depends(require_context),
):
    # Explicit HR input only: a missing key is rejected, null clears.
    body = payload if isinstance(payload, dict) else {}
    if "reference_minutes" in body:
        updated = update_reference(employee_id, ctx["client"]["client_id"], body["reference_minutes"])
    else:
        updated = update_reference(employee_id, ctx["client"]["client_id"])
    return {"ok": True, **updated}
