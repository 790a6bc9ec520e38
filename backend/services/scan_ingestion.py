import logging
import sqlite3
from datetime import datetime
from typing import Literal, TypedDict

from backend.config import (
    AUTO_FIX_IN_OFFSET_MS,
    COOLDOWN_AFTER_OUT_MINUTES,
    DOUBLE_TAP_WINDOW_SECONDS,
)
from backend.errors import ConflictError, NotFoundError
from backend.services.events import (
    AnomalyCode,
    Direction,
    PresenceStatus,
    ScanEvent,
    add_milliseconds,
    as_utc,
    derive_status,
    elapsed_seconds,
    parse_direction,
    utcnow,
)
from database.db import NewScanEvent, append_scan_events, connect_db, get_employee, read_scan_stream

logger = logging.getLogger(__name__)

ScanOutcome = Literal["ignored", "cooldown", "insert"]

SCAN_SOURCE = "punctoo"


class PlannedEvent(TypedDict):
    direction: Direction
    scanned_at: datetime
    anomaly_code: AnomalyCode | None
    measurement_valid: bool
    is_system: bool


class ScanDecision(TypedDict):
    outcome: ScanOutcome
    reason: str | None
    warning: str | None
    status_before: PresenceStatus
    status_after: PresenceStatus
    retry_after_seconds: int | None
    events: list[PlannedEvent]


class IngestResult(TypedDict):
    accepted: bool
    ignored: bool
    reason: str | None
    status_before: PresenceStatus
    status_after: PresenceStatus
    warning: str | None
    event: ScanEvent | None
    extra_events: list[ScanEvent]
    server_time: datetime


def _planned(
    direction: Direction,
    scanned_at: datetime,
    *,
    anomaly_code: AnomalyCode | None = None,
    measurement_valid: bool = True,
    is_system: bool = False,
) -> PlannedEvent:
    return {
        "direction": direction,
        "scanned_at": scanned_at,
        "anomaly_code": anomaly_code,
        "measurement_valid": measurement_valid,
        "is_system": is_system,
    }


def _insert(
    status_before: PresenceStatus,
    events: list[PlannedEvent],
    *,
    warning: str | None = None,
) -> ScanDecision:
    final = events[-1]
    return {
        "outcome": "insert",
        "reason": None,
        "warning": warning,
        "status_before": status_before,
        "status_after": derive_status(final),  # type: ignore[arg-type]
        "retry_after_seconds": None,
        "events": events,
    }


def decide_scan(last: ScanEvent | None, direction: Direction, now: datetime) -> ScanDecision:
    """
    Decide what one scan does given the employee's latest event.

    Pure: the caller owns reading `last` and persisting the planned events.
    """
    status_before = derive_status(last)

    if last is not None:
        elapsed = elapsed_seconds(now, last["scanned_at"])

        if 0 <= elapsed < DOUBLE_TAP_WINDOW_SECONDS:
            return {
                "outcome": "ignored",
                "reason": "DUPLICATE_WITHIN_COOLDOWN",
                "warning": None,
                "status_before": status_before,
                "status_after": status_before,
                "retry_after_seconds": None,
                "events": [],
            }

        cooldown_seconds = COOLDOWN_AFTER_OUT_MINUTES * 60
        if direction == "IN" and last["direction"] == "OUT" and 0 <= elapsed < cooldown_seconds:
            return {
                "outcome": "cooldown",
                "reason": "COOLDOWN_AFTER_OUT",
                "warning": None,
                "status_before": status_before,
                "status_after": status_before,
                "retry_after_seconds": cooldown_seconds - elapsed,
                "events": [],
            }

    if direction == "IN":
        if last is None or last["direction"] == "OUT":
            return _insert(status_before, [_planned("IN", now)])

        # IN while already IN: close the open shift on the employee's behalf,
        # then record the real IN one millisecond later.
        return _insert(
            status_before,
            [
                _planned(
                    "OUT",
                    now,
                    anomaly_code="AUTO_CLOSED_PREVIOUS_IN",
                    measurement_valid=False,
                    is_system=True,
                ),
                _planned(
                    "IN",
                    add_milliseconds(now, AUTO_FIX_IN_OFFSET_MS),
                    anomaly_code="IN_AFTER_IN",
                    measurement_valid=False,
                ),
            ],
            warning="IN_AFTER_IN_AUTO_CLOSED",
        )

    if last is None:
        return _insert(
            status_before,
            [_planned("OUT", now, anomaly_code="OUT_WITHOUT_IN", measurement_valid=False)],
            warning="OUT_TREATED_AS_IN_NO_MEASUREMENT",
        )

    if last["direction"] == "IN":
        return _insert(status_before, [_planned("OUT", now)])

    # TODO: OUT after OUT is accepted and flagged while IN after IN is
    # auto-corrected; revisit once HR decides whether to reject double OUTs.
    return _insert(
        status_before,
        [_planned("OUT", now, anomaly_code="OUT_AFTER_OUT", measurement_valid=False)],
        warning="OUT_AFTER_OUT_IGNORED_FOR_MEASUREMENT",
    )


def submit(
    employee_id: str,
    direction: str,
    now: datetime | None = None,
    *,
    client_id: str,
    scantag_id: str | None = None,
    user_agent: str | None = None,
    ip_address: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> IngestResult:
    """
    Ingest one badge scan for an employee.

    Reads the employee's latest event together with its stream version,
    decides, then appends 0, 1 or 2 events guarded by that version. A
    concurrent scan for the same employee makes the append fail with
    ConcurrencyError and nothing is written.

    Raises:
      - ValidationError: direction is not IN/OUT
      - NotFoundError: employee does not belong to `client_id`
      - ConflictError: IN inside the cooldown window after an OUT
      - ConcurrencyError / PersistenceError: from storage
    """
    clean_direction = parse_direction(direction)
    server_time = as_utc(now) if now is not None else utcnow()

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        if get_employee(employee_id, client_id, conn=active_conn) is None:
            raise NotFoundError("employee not found")

        version, last = read_scan_stream(employee_id, conn=active_conn)
        decision = decide_scan(last, clean_direction, server_time)

        if decision["outcome"] == "ignored":
            logger.info(
                "Ignored %s scan for employee %s within %ss of the previous scan",
                clean_direction,
                employee_id,
                DOUBLE_TAP_WINDOW_SECONDS,
            )
            return {
                "accepted": False,
                "ignored": True,
                "reason": decision["reason"],
                "status_before": decision["status_before"],
                "status_after": decision["status_after"],
                "warning": None,
                "event": None,
                "extra_events": [],
                "server_time": server_time,
            }

        if decision["outcome"] == "cooldown":
            retry_after = int(decision["retry_after_seconds"] or 0)
            logger.info(
                "Refused IN for employee %s during cooldown; retry after %ss",
                employee_id,
                retry_after,
            )
            raise ConflictError(
                "IN refused: cooldown after OUT is still running.",
                retry_after_seconds=retry_after,
                status_before=decision["status_before"],
                server_time=server_time,
            )

        rows: list[NewScanEvent] = [
            {
                "client_id": client_id,
                "scantag_id": scantag_id,
                "employee_id": employee_id,
                "direction": planned["direction"],
                "scanned_at": planned["scanned_at"],
                "anomaly_code": planned["anomaly_code"],
                "measurement_valid": planned["measurement_valid"],
                "is_system": planned["is_system"],
                "source": SCAN_SOURCE,
                "user_agent": user_agent,
                "ip_address": ip_address,
            }
            for planned in decision["events"]
        ]
        inserted = append_scan_events(employee_id, version, rows, conn=active_conn)
    finally:
        if owns_conn:
            active_conn.close()

    if decision["warning"]:
        logger.warning(
            "Accepted %s scan for employee %s with anomaly: %s",
            clean_direction,
            employee_id,
            decision["warning"],
        )
    else:
        logger.info("Accepted %s scan for employee %s", clean_direction, employee_id)

    return {
        "accepted": True,
        "ignored": False,
        "reason": None,
        "status_before": decision["status_before"],
        "status_after": decision["status_after"],
        "warning": decision["warning"],
        "event": inserted[-1],
        "extra_events": inserted[:-1],
        "server_time": server_time,
    }
