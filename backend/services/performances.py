"""
Attendance performances derived from the scan event log.

Everything here is recomputed on each read: `reconstruct` pairs IN/OUT
events for one employee, `attach_overtime` compares the result with the
employee's reference duration, and `get_performances` is the single read
model shared by the performances endpoint and any export built on it.
"""
import logging
from datetime import datetime
from typing import Any, Iterable

from backend.errors import NotFoundError
from backend.services.events import Performance, ScanEvent, event_sort_key, minutes_between
from database.db import get_employee, get_scan_events_between, list_employees

logger = logging.getLogger(__name__)


def _performance(
    *,
    start: ScanEvent | None,
    end: ScanEvent | None,
    measurable: bool,
    reasons: list[str],
) -> Performance:
    owner = start or end
    effective_minutes = None
    if start is not None and end is not None:
        effective_minutes = minutes_between(start["scanned_at"], end["scanned_at"])
    return {
        "employee_id": owner["employee_id"] if owner else None,
        "start_event_id": start["scan_event_id"] if start else None,
        "end_event_id": end["scan_event_id"] if end else None,
        "started_at": start["scanned_at"] if start else None,
        "ended_at": end["scanned_at"] if end else None,
        "is_open_shift": start is not None and end is None,
        "effective_minutes": effective_minutes,
        "registration_complete": start is not None and end is not None,
        "measurable": measurable,
        "attention": bool(reasons),
        "attention_reasons": reasons,
        "reference_minutes": None,
        "difference_minutes": None,
        "overtime_minutes": None,
    }


def _closed(start: ScanEvent, end: ScanEvent, extra_ins: int) -> Performance:
    measurable = bool(start["measurement_valid"]) and bool(end["measurement_valid"])
    reasons: list[str] = []
    if not measurable:
        reasons.append("NOT_MEASURABLE")
    if start.get("anomaly_code"):
        reasons.append(f"START_{start['anomaly_code']}")
    if end.get("anomaly_code"):
        reasons.append(f"END_{end['anomaly_code']}")
    if extra_ins > 0:
        reasons.append("IN_WHILE_OPEN")
    return _performance(start=start, end=end, measurable=measurable, reasons=reasons)


def _orphan_out(end: ScanEvent) -> Performance:
    reasons = ["OUT_WITHOUT_IN"]
    if not end["measurement_valid"]:
        reasons.append("NOT_MEASURABLE")
    if end.get("anomaly_code"):
        reasons.append(f"END_{end['anomaly_code']}")
    return _performance(start=None, end=end, measurable=False, reasons=reasons)


def _open_shift(start: ScanEvent, extra_ins: int) -> Performance:
    reasons = ["OPEN_SHIFT"]
    if extra_ins > 0:
        reasons.append("IN_WHILE_OPEN")
    if start.get("anomaly_code"):
        reasons.append(f"START_{start['anomaly_code']}")
    if not start["measurement_valid"]:
        reasons.append("NOT_MEASURABLE")
    return _performance(start=start, end=None, measurable=False, reasons=reasons)


def reconstruct(events: Iterable[ScanEvent]) -> list[Performance]:
    """
    Pair one employee's ordered events into performances in a single pass.

    A second IN while a shift is open does not move the shift start; it is
    only counted and reported as IN_WHILE_OPEN. Events with an unknown
    direction are skipped.
    """
    performances: list[Performance] = []
    open_in: ScanEvent | None = None
    extra_ins = 0

    for event in events:
        direction = event.get("direction")
        if direction == "IN":
            if open_in is None:
                open_in = event
                extra_ins = 0
            else:
                extra_ins += 1
        elif direction == "OUT":
            if open_in is not None:
                performances.append(_closed(open_in, event, extra_ins))
                open_in = None
                extra_ins = 0
            else:
                performances.append(_orphan_out(event))

    if open_in is not None:
        performances.append(_open_shift(open_in, extra_ins))

    return performances


def attach_overtime(performance: Performance, reference_minutes: int | None) -> Performance:
    """
    Return a copy of `performance` with reference, difference and overtime set.

    Difference and overtime stay None unless the performance is measurable
    and an explicit integer reference exists. No reference is ever inferred.
    """
    has_reference = isinstance(reference_minutes, int) and not isinstance(reference_minutes, bool)
    effective = performance.get("effective_minutes")

    difference = None
    overtime = None
    if performance.get("measurable") and has_reference and effective is not None:
        difference = int(effective) - int(reference_minutes)  # type: ignore[arg-type]
        overtime = max(difference, 0)

    result: Performance = dict(performance)  # type: ignore[assignment]
    result["attention_reasons"] = list(performance.get("attention_reasons") or [])
    result["reference_minutes"] = reference_minutes if has_reference else None
    result["difference_minutes"] = difference
    result["overtime_minutes"] = overtime
    return result


def _display_name(employee: dict[str, Any]) -> str:
    return f"{(employee.get('first_name') or '').strip()} {(employee.get('last_name') or '').strip()}".strip()


def get_performances(
    client_id: str,
    start: datetime,
    end: datetime,
    employee_id: str | None = None,
) -> list[dict[str, Any]]:
    if employee_id:
        employee = get_employee(employee_id, client_id)
        if employee is None:
            raise NotFoundError("employee not found")
        employees = [employee]
    else:
        employees = list_employees(client_id)

    rows: list[dict[str, Any]] = []
    for employee in employees:
        events = sorted(get_scan_events_between(employee["employee_id"], start, end), key=event_sort_key)
        reference = employee["reference_minutes"]
        for performance in reconstruct(events):
            rows.append({
                **attach_overtime(performance, reference),
                "employee_id": employee["employee_id"],
                "employee_name": _display_name(employee),
            })

    logger.info(
        "Built %s performances for client %s over %s employees",
        len(rows),
        client_id,
        len(employees),
    )
    return rows
