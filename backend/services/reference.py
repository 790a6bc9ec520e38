import logging
import math
from typing import Any

from backend.config import REFERENCE_MAX_MINUTES, REFERENCE_MIN_MINUTES
from backend.errors import NotFoundError, ValidationError
from database.db import get_employee, set_reference_minutes

logger = logging.getLogger(__name__)

_MISSING = object()


def parse_reference_minutes(value: Any = _MISSING) -> int | None:
    """
    Validate an HR-entered reference duration.

    None clears the reference. Anything else must be a whole number of
    minutes between 1 and 1440.
    """
    if value is _MISSING:
        raise ValidationError("reference_minutes is required (number or null)")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("reference_minutes must be a number or null")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("reference_minutes must be a number or null")
    if int(value) != value:
        raise ValidationError("reference_minutes must be an integer")

    minutes = int(value)
    if minutes < REFERENCE_MIN_MINUTES or minutes > REFERENCE_MAX_MINUTES:
        raise ValidationError(
            f"reference_minutes must be between {REFERENCE_MIN_MINUTES} and {REFERENCE_MAX_MINUTES}, or null"
        )
    return minutes


def get_reference(employee_id: str, client_id: str) -> dict[str, Any]:
    employee = get_employee(employee_id, client_id)
    if employee is None:
        raise NotFoundError("employee not found")
    return {
        "employee_id": employee["employee_id"],
        "reference_minutes": employee["reference_minutes"],
    }


def update_reference(employee_id: str, client_id: str, value: Any = _MISSING) -> dict[str, Any]:
    minutes = parse_reference_minutes(value)
    updated = set_reference_minutes(employee_id, client_id, minutes)
    if updated is None:
        raise NotFoundError("employee not found")
    logger.info("Reference duration for employee %s set to %s", employee_id, minutes)
    return updated
