from typing import Any

from fastapi import Query

from backend.errors import GateError
from database.db import get_active_scantag, get_customer_by_email


def resolve_context(email: str | None) -> dict[str, Any]:
    """
    Resolve the enabled customer behind `email` and its active scantag.

    Raises GateError carrying the response body when the client may not
    use attendance scanning.
    """
    clean_email = (email or "").strip().lower()
    if not clean_email:
        raise GateError(400, {"ok": False, "error": "email query param is required"})

    client = get_customer_by_email(clean_email)
    if not client:
        raise GateError(404, {"ok": True, "allowed": False, "reason": "NO_CUSTOMER_ACCOUNT"})

    if not client["punctoo_enabled"]:
        raise GateError(
            200,
            {"ok": True, "allowed": False, "reason": "NOT_ENABLED_YET", "client_id": client["client_id"]},
        )

    scantag = get_active_scantag(client["client_id"])
    if not scantag:
        raise GateError(
            200,
            {"ok": True, "allowed": False, "reason": "NO_ACTIVE_SCANTAG", "client_id": client["client_id"]},
        )

    return {"client": client, "scantag": scantag}


def require_context(email: str | None = Query(default=None)) -> dict[str, Any]:
    return resolve_context(email)
