import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal, TypedDict

from backend.errors import ValidationError

Direction = Literal["IN", "OUT"]
AnomalyCode = Literal[
    "OUT_WITHOUT_IN",
    "IN_AFTER_IN",
    "AUTO_CLOSED_PREVIOUS_IN",
    "OUT_AFTER_OUT",
]
PresenceStatus = Literal["IN", "OUT", "UNKNOWN"]

DIRECTIONS: tuple[str, ...] = ("IN", "OUT")

_DB_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class ScanEvent(TypedDict):
    scan_event_id: str
    client_id: str
    scantag_id: str | None
    employee_id: str
    direction: Direction
    scanned_at: datetime
    source: str
    anomaly_code: AnomalyCode | None
    measurement_valid: bool
    is_system: bool
    created_at: datetime


class Performance(TypedDict):
    employee_id: str | None
    start_event_id: str | None
    end_event_id: str | None
    started_at: datetime | None
    ended_at: datetime | None
    is_open_shift: bool
    effective_minutes: int | None
    registration_complete: bool
    measurable: bool
    attention: bool
    attention_reasons: list[str]
    reference_minutes: int | None
    difference_minutes: int | None
    overtime_minutes: int | None


def derive_status(event: ScanEvent | None) -> PresenceStatus:
    """
    Presence status implied by an employee's latest event.

    An OUT flagged OUT_WITHOUT_IN never reports as OUT: the employee is
    treated as present until a real OUT closes the day.
    """
    if event is None:
        return "UNKNOWN"
    if event["direction"] == "IN":
        return "IN"
    if event.get("anomaly_code") == "OUT_WITHOUT_IN":
        return "IN"
    return "OUT"


def event_sort_key(event: ScanEvent) -> tuple[datetime, datetime, str]:
    return (event["scanned_at"], event["created_at"], str(event["scan_event_id"]))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    # Fixed width so TEXT ordering in SQL matches chronological ordering.
    return as_utc(value).strftime(_DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def elapsed_seconds(now: datetime, earlier: datetime) -> int:
    return math.floor((as_utc(now) - as_utc(earlier)).total_seconds())


def minutes_between(start: datetime, end: datetime) -> int:
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    return math.floor(seconds / 60 + 0.5)


def parse_direction(raw: str | None) -> Direction:
    value = (raw or "").strip().upper()
    if not value:
        raise ValidationError("direction is required")
    if value not in DIRECTIONS:
        raise ValidationError("direction must be IN or OUT")
    return value  # type: ignore[return-value]


def _parse_day(value: str | None, field: str) -> date:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required (YYYY-MM-DD)")
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def parse_date_range(date_from: str | None, date_to: str | None) -> tuple[datetime, datetime]:
    """Return the half-open UTC window `[from 00:00, to 00:00)`."""
    start_day = _parse_day(date_from, "from")
    end_day = _parse_day(date_to, "to")
    if end_day < start_day:
        raise ValidationError("to must not be earlier than from")
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day, time.min, tzinfo=timezone.utc)
    return start, end


def add_milliseconds(value: datetime, ms: int) -> datetime:
    return value + timedelta(milliseconds=ms)
