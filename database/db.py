import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, TypedDict

from backend.config import DB_PATH, LOCK_TIMEOUT_SECONDS
from backend.errors import ConcurrencyError, PersistenceError
from backend.services.events import (
    AnomalyCode,
    Direction,
    ScanEvent,
    from_db_timestamp,
    to_db_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

SCAN_EVENT_COLUMNS = """
    scan_event_id,
    client_id,
    scantag_id,
    employee_id,
    direction,
    scanned_at,
    source,
    anomaly_code,
    measurement_valid,
    is_system,
    created_at
"""


class NewScanEvent(TypedDict):
    client_id: str
    scantag_id: str | None
    employee_id: str
    direction: Direction
    scanned_at: datetime
    anomaly_code: AnomalyCode | None
    measurement_valid: bool
    is_system: bool
    source: str
    user_agent: str | None
    ip_address: str | None


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=LOCK_TIMEOUT_SECONDS, check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _is_lock_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _storage_error(exc: sqlite3.Error, action: str) -> ConcurrencyError | PersistenceError:
    if _is_lock_error(exc):
        logger.warning("%s timed out waiting for a lock", action)
        return ConcurrencyError("Event stream is locked; retry the scan.")
    logger.exception("%s failed", action)
    return PersistenceError("Storage failure; nothing was written.")


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Cursor]:
    """
    BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

    IMMEDIATE takes the write lock up front so a read inside the block cannot
    be invalidated by another writer before our own insert.
    """
    cur = conn.cursor()
    cur.execute("BEGIN IMMEDIATE")
    try:
        yield cur
        conn.commit()
    except BaseException:
        conn.rollback()
        raise


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS client (
        client_id TEXT PRIMARY KEY,
        client_type TEXT NOT NULL DEFAULT 'CUSTOMER',
        company_name TEXT,
        email TEXT NOT NULL,
        punctoo_enabled INTEGER NOT NULL DEFAULT 0,
        punctoo_enabled_at TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS scantag (
        scantag_id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        qr_url_in TEXT,
        qr_url_out TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TEXT NOT NULL,
        FOREIGN KEY (client_id) REFERENCES client(client_id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS employee (
        employee_id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        reference_minutes INTEGER
            CHECK (reference_minutes IS NULL OR reference_minutes BETWEEN 1 AND 1440),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (client_id) REFERENCES client(client_id) ON DELETE CASCADE
    )
    """)

    # Append-only event log. Rows are never updated or deleted by the app.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS scan_event (
        scan_event_id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        scantag_id TEXT,
        employee_id TEXT NOT NULL,
        direction TEXT NOT NULL CHECK (direction IN ('IN', 'OUT')),
        scanned_at TEXT NOT NULL,        -- UTC, fixed-width ISO-8601
        source TEXT NOT NULL DEFAULT 'punctoo',
        user_agent TEXT,
        ip_address TEXT,
        anomaly_code TEXT,
        measurement_valid INTEGER NOT NULL DEFAULT 1,
        is_system INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        FOREIGN KEY (employee_id) REFERENCES employee(employee_id) ON DELETE CASCADE
    )
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS idx_scan_event_employee_order
    ON scan_event (employee_id, scanned_at, created_at, scan_event_id)
    """)

    # Per-employee version counter: ingestion compare-and-swaps it so only
    # writers for the same employee ever conflict.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS scan_stream (
        employee_id TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (employee_id) REFERENCES employee(employee_id) ON DELETE CASCADE
    )
    """)

    conn.commit()
    conn.close()


def ping_db() -> str:
    conn = connect_db()
    try:
        row = conn.execute("SELECT CURRENT_TIMESTAMP").fetchone()
        return str(row[0])
    finally:
        conn.close()


# -----------------------------
# Clients + scantags
# -----------------------------
def add_client(
    company_name: str,
    email: str,
    *,
    enabled: bool = True,
    client_type: str = "CUSTOMER",
    client_id: str | None = None,
) -> str:
    new_id = client_id or str(uuid.uuid4())
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO client (client_id, client_type, company_name, email, punctoo_enabled, punctoo_enabled_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (
        new_id,
        client_type,
        company_name,
        email.strip().lower(),
        1 if enabled else 0,
        to_db_timestamp(utcnow()) if enabled else None,
    ))
    conn.commit()
    conn.close()
    return new_id


def add_scantag(
    client_id: str,
    *,
    status: str = "ACTIVE",
    qr_url_in: str | None = None,
    qr_url_out: str | None = None,
    created_at: datetime | None = None,
) -> str:
    new_id = str(uuid.uuid4())
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO scantag (scantag_id, client_id, qr_url_in, qr_url_out, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (new_id, client_id, qr_url_in, qr_url_out, status, to_db_timestamp(created_at or utcnow())))
    conn.commit()
    conn.close()
    return new_id


def get_customer_by_email(email: str) -> dict[str, Any] | None:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            SELECT client_id, client_type, company_name, email, punctoo_enabled, punctoo_enabled_at
            FROM client
            WHERE client_type = 'CUSTOMER' AND email = ?
            LIMIT 1
        """, (email,))
        row = cur.fetchone()
    except sqlite3.Error as exc:
        raise _storage_error(exc, "Looking up customer by email") from exc
    finally:
        conn.close()
    if not row:
        return None
    return {
        "client_id": row[0],
        "client_type": row[1],
        "company_name": row[2],
        "email": row[3],
        "punctoo_enabled": bool(row[4]),
        "punctoo_enabled_at": row[5],
    }


def get_active_scantag(client_id: str) -> dict[str, Any] | None:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            SELECT scantag_id, qr_url_in, qr_url_out, status, created_at
            FROM scantag
            WHERE client_id = ? AND status = 'ACTIVE'
            ORDER BY created_at DESC
            LIMIT 1
        """, (client_id,))
        row = cur.fetchone()
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Looking up active scantag for client {client_id}") from exc
    finally:
        conn.close()
    if not row:
        return None
    return {
        "scantag_id": row[0],
        "qr_url_in": row[1],
        "qr_url_out": row[2],
        "status": row[3],
        "created_at": row[4],
    }


# -----------------------------
# Employees
# -----------------------------
def _row_to_employee(row) -> dict[str, Any]:
    return {
        "employee_id": row[0],
        "client_id": row[1],
        "first_name": row[2],
        "last_name": row[3],
        "email": row[4],
        "reference_minutes": row[5],
        "created_at": row[6],
        "updated_at": row[7],
    }


def add_employee(
    client_id: str,
    first_name: str,
    last_name: str,
    *,
    email: str | None = None,
    reference_minutes: int | None = None,
    employee_id: str | None = None,
    created_at: datetime | None = None,
) -> str:
    new_id = employee_id or str(uuid.uuid4())
    stamp = to_db_timestamp(created_at or utcnow())
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO employee (
            employee_id, client_id, first_name, last_name, email,
            reference_minutes, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (new_id, client_id, first_name, last_name, email, reference_minutes, stamp, stamp))
    conn.commit()
    conn.close()
    return new_id


def get_employee(employee_id: str, client_id: str, *, conn: sqlite3.Connection | None = None):
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute("""
            SELECT employee_id, client_id, first_name, last_name, email,
                   reference_minutes, created_at, updated_at
            FROM employee
            WHERE employee_id = ? AND client_id = ?
            LIMIT 1
        """, (employee_id, client_id))
        row = cur.fetchone()
        return _row_to_employee(row) if row else None
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Reading employee {employee_id}") from exc
    finally:
        cur.close()
        if owns_conn:
            active_conn.close()


def list_employees(client_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            SELECT employee_id, client_id, first_name, last_name, email,
                   reference_minutes, created_at, updated_at
            FROM employee
            WHERE client_id = ?
            ORDER BY last_name, first_name, employee_id
        """, (client_id,))
        rows = cur.fetchall()
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Listing employees for client {client_id}") from exc
    finally:
        conn.close()
    return [_row_to_employee(r) for r in rows]


def set_reference_minutes(employee_id: str, client_id: str, minutes: int | None) -> dict[str, Any] | None:
    stamp = to_db_timestamp(utcnow())
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            UPDATE employee
            SET reference_minutes = ?,
                updated_at = ?
            WHERE employee_id = ? AND client_id = ?
        """, (minutes, stamp, employee_id, client_id))
        updated = cur.rowcount
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise _storage_error(exc, f"Updating reference for employee {employee_id}") from exc
    finally:
        conn.close()
    if not updated:
        return None
    return {"employee_id": employee_id, "reference_minutes": minutes, "updated_at": stamp}


# -----------------------------
# Scan events
# -----------------------------
def _row_to_event(row) -> ScanEvent:
    return {
        "scan_event_id": row[0],
        "client_id": row[1],
        "scantag_id": row[2],
        "employee_id": row[3],
        "direction": row[4],
        "scanned_at": from_db_timestamp(row[5]),
        "source": row[6],
        "anomaly_code": row[7],
        "measurement_valid": bool(row[8]),
        "is_system": bool(row[9]),
        "created_at": from_db_timestamp(row[10]),
    }


def read_scan_stream(
    employee_id: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> tuple[int, ScanEvent | None]:
    """
    Return `(version, last_event)` for one employee.

    The version is read first: any insert committed after that read bumps
    the counter, so a later `append_scan_events` with this version fails.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute("""
            SELECT version
            FROM scan_stream
            WHERE employee_id = ?
        """, (employee_id,))
        row = cur.fetchone()
        version = int(row[0]) if row else 0

        cur.execute(f"""
            SELECT {SCAN_EVENT_COLUMNS}
            FROM scan_event
            WHERE employee_id = ?
            ORDER BY scanned_at DESC, created_at DESC, scan_event_id DESC
            LIMIT 1
        """, (employee_id,))
        last = cur.fetchone()
        return version, (_row_to_event(last) if last else None)
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Reading scan stream for employee {employee_id}") from exc
    finally:
        # Release the read statement before any write on this connection.
        cur.close()
        if owns_conn:
            active_conn.close()


def _insert_scan_event(cur: sqlite3.Cursor, row: NewScanEvent) -> ScanEvent:
    event_id = str(uuid.uuid4())
    scanned_at = to_db_timestamp(row["scanned_at"])
    # created_at stays aligned with scanned_at; the id breaks remaining ties.
    cur.execute("""
        INSERT INTO scan_event (
            scan_event_id,
            client_id,
            scantag_id,
            employee_id,
            direction,
            scanned_at,
            source,
            user_agent,
            ip_address,
            anomaly_code,
            measurement_valid,
            is_system,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        event_id,
        row["client_id"],
        row["scantag_id"],
        row["employee_id"],
        row["direction"],
        scanned_at,
        row["source"],
        row["user_agent"],
        row["ip_address"],
        row["anomaly_code"],
        1 if row["measurement_valid"] else 0,
        1 if row["is_system"] else 0,
        scanned_at,
    ))
    return _row_to_event((
        event_id,
        row["client_id"],
        row["scantag_id"],
        row["employee_id"],
        row["direction"],
        scanned_at,
        row["source"],
        row["anomaly_code"],
        row["measurement_valid"],
        row["is_system"],
        scanned_at,
    ))


def _bump_stream_version(cur: sqlite3.Cursor, employee_id: str, expected_version: int) -> None:
    stamp = to_db_timestamp(utcnow())
    if expected_version == 0:
        try:
            cur.execute("""
                INSERT INTO scan_stream (employee_id, version, updated_at)
                VALUES (?, 1, ?)
            """, (employee_id, stamp))
        except sqlite3.IntegrityError as exc:
            raise ConcurrencyError("Event stream changed during the scan; retry.") from exc
        return

    cur.execute("""
        UPDATE scan_stream
        SET version = version + 1,
            updated_at = ?
        WHERE employee_id = ? AND version = ?
    """, (stamp, employee_id, expected_version))
    if cur.rowcount != 1:
        raise ConcurrencyError("Event stream changed during the scan; retry.")


def append_scan_events(
    employee_id: str,
    expected_version: int,
    rows: list[NewScanEvent],
    *,
    conn: sqlite3.Connection | None = None,
) -> list[ScanEvent]:
    """
    Append `rows` to one employee's log if its version is still `expected_version`.

    All rows are written in one transaction: either every row lands or none.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        with write_transaction(active_conn) as cur:
            _bump_stream_version(cur, employee_id, expected_version)
            return [_insert_scan_event(cur, row) for row in rows]
    except ConcurrencyError:
        logger.warning("Version conflict on scan stream for employee %s", employee_id)
        raise
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Appending scan events for employee {employee_id}") from exc
    finally:
        if owns_conn:
            active_conn.close()


def get_scan_events(employee_id: str, client_id: str, limit: int) -> list[ScanEvent]:
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(f"""
            SELECT {SCAN_EVENT_COLUMNS}
            FROM scan_event
            WHERE client_id = ? AND employee_id = ?
            ORDER BY scanned_at DESC, created_at DESC, scan_event_id DESC
            LIMIT ?
        """, (client_id, employee_id, limit))
        rows = cur.fetchall()
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Reading scan history for employee {employee_id}") from exc
    finally:
        conn.close()
    return [_row_to_event(r) for r in rows]


def get_scan_events_between(employee_id: str, start: datetime, end: datetime) -> list[ScanEvent]:
    """Ascending slice of one employee's log for `[start, end)`."""
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute(f"""
            SELECT {SCAN_EVENT_COLUMNS}
            FROM scan_event
            WHERE employee_id = ?
              AND scanned_at >= ?
              AND scanned_at < ?
            ORDER BY scanned_at ASC, created_at ASC, scan_event_id ASC
        """, (employee_id, to_db_timestamp(start), to_db_timestamp(end)))
        rows = cur.fetchall()
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Reading scan events for employee {employee_id}") from exc
    finally:
        conn.close()
    return [_row_to_event(r) for r in rows]


def get_latest_events(client_id: str) -> list[tuple[dict[str, Any], ScanEvent | None]]:
    """Every employee of the client paired with their latest event (or None)."""
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("""
            SELECT
                e.employee_id,
                e.client_id,
                e.first_name,
                e.last_name,
                e.email,
                e.reference_minutes,
                e.created_at,
                e.updated_at,
                se.scan_event_id,
                se.client_id,
                se.scantag_id,
                se.employee_id,
                se.direction,
                se.scanned_at,
                se.source,
                se.anomaly_code,
                se.measurement_valid,
                se.is_system,
                se.created_at
            FROM employee e
            LEFT JOIN scan_event se ON se.scan_event_id = (
                SELECT se1.scan_event_id
                FROM scan_event se1
                WHERE se1.employee_id = e.employee_id
                ORDER BY se1.scanned_at DESC, se1.created_at DESC, se1.scan_event_id DESC
                LIMIT 1
            )
            WHERE e.client_id = ?
        """, (client_id,))
        rows = cur.fetchall()
    except sqlite3.Error as exc:
        raise _storage_error(exc, f"Reading presence for client {client_id}") from exc
    finally:
        conn.close()
    return [
        (_row_to_employee(r[:8]), _row_to_event(r[8:]) if r[8] is not None else None)
        for r in rows
    ]
