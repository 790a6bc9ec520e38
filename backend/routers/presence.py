from fastapi import APIRouter, Depends

from backend.gate import require_context
from backend.services.presence import get_presence

router = APIRouter()


@router.get("/presence")
def presence(ctx: dict = Depends(require_context)):
    return {"ok": True, **get_presence(ctx["client"]["client_id"])}
