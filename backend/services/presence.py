from typing import Any

from backend.services.events import derive_status, utcnow
from database.db import get_latest_events

_STATUS_ORDER = {"IN": 0, "OUT": 1, "UNKNOWN": 2}


def _needs_attention(event) -> bool:
    if event is None:
        return False
    return (not event["measurement_valid"]) or event["anomaly_code"] is not None


def get_presence(client_id: str) -> dict[str, Any]:
    """
    Presence board for one client: every employee with their current status.

    Employees present come first, then those who left, then those who never
    scanned; newest employees first within each group.
    """
    employees = []
    summary = {"in": 0, "out": 0, "no_scans": 0, "attention": 0}

    for employee, last in get_latest_events(client_id):
        status = derive_status(last)
        if status == "IN":
            summary["in"] += 1
        elif status == "OUT":
            summary["out"] += 1
        else:
            summary["no_scans"] += 1
        if _needs_attention(last):
            summary["attention"] += 1

        employees.append({
            "employee_id": employee["employee_id"],
            "first_name": employee["first_name"],
            "last_name": employee["last_name"],
            "email": employee["email"],
            "display_name": f"{(employee['first_name'] or '').strip()} {(employee['last_name'] or '').strip()}".strip(),
            "employee_created_at": employee["created_at"],
            "employee_updated_at": employee["updated_at"],
            "last_scan_event_id": last["scan_event_id"] if last else None,
            "last_direction": last["direction"] if last else None,
            "since": last["scanned_at"] if last else None,
            "measurement_valid": last["measurement_valid"] if last else True,
            "anomaly_code": last["anomaly_code"] if last else None,
            "is_system": last["is_system"] if last else False,
            "current_status": status,
        })

    # Two stable sorts: newest employees first, then by status group.
    employees.sort(key=lambda row: row["employee_created_at"] or "", reverse=True)
    employees.sort(key=lambda row: _STATUS_ORDER[row["current_status"]])

    return {
        "timestamp": utcnow(),
        "summary": summary,
        "employees": employees,
    }
