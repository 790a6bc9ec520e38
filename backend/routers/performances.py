from fastapi import APIRouter, Depends, Query

from backend.gate import require_context
from backend.services.events import parse_date_range
from backend.services.performances import get_performances

router = APIRouter()


@router.get("/performances")
def performances(
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
    employee_id: str | None = None,
    ctx: dict = Depends(require_context),
):
    start, end = parse_date_range(date_from, date_to)
    rows = get_performances(
        ctx["client"]["client_id"],
        start,
        end,
        employee_id=(employee_id or "").strip() or None,
    )
    return {
        "ok": True,
        "from": date_from,
        "to": date_to,
        "count": len(rows),
        "performances": rows,
    }
