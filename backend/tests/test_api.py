import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import database.db as db
from backend.services.events import utcnow
from backend.services.scan_ingestion import submit

PREFIX = "/api/punctoo"


def _scan(tenant, direction, now, employee_id=None):
    return submit(
        employee_id or tenant["employee_id"],
        direction,
        now,
        client_id=tenant["client_id"],
        scantag_id=tenant["scantag_id"],
    )


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_db_check(client):
    res = client.get("/db-check")
    assert res.status_code == 200
    assert res.json()["db"] == "connected"


def test_scan_rules_config_reports_defaults(client):
    res = client.get("/config/scan-rules")
    assert res.status_code == 200
    payload = res.json()
    assert payload["double_tap_window_seconds"] == 10
    assert payload["cooldown_after_out_minutes"] == 60
    assert payload["reference_max_minutes"] == 1440


def test_gate_requires_email(client, tenant):
    res = client.get(f"{PREFIX}/presence")
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "email query param is required"}


def test_gate_unknown_customer(client, tenant):
    res = client.get(f"{PREFIX}/presence", params={"email": "nobody@nowhere.test"})
    assert res.status_code == 404
    assert res.json()["reason"] == "NO_CUSTOMER_ACCOUNT"


def test_gate_not_enabled_and_no_scantag(client, test_db):
    disabled = db.add_client("Later BV", "hr@later.test", enabled=False)
    db.add_scantag(disabled)
    db.add_client("Tagless BV", "hr@tagless.test")

    res = client.get(f"{PREFIX}/presence", params={"email": "HR@later.test "})
    assert res.status_code == 200
    assert res.json() == {"ok": True, "allowed": False, "reason": "NOT_ENABLED_YET", "client_id": disabled}

    res = client.get(f"{PREFIX}/presence", params={"email": "hr@tagless.test"})
    assert res.status_code == 200
    assert res.json()["reason"] == "NO_ACTIVE_SCANTAG"


def test_post_scan_event_then_double_tap(client, tenant, count_events):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/scan-events"
    params = {"email": tenant["email"]}

    res = client.post(url, params=params, json={"direction": "in"}, headers={"User-Agent": "kiosk/1.0"})
    assert res.status_code == 201
    body = res.json()
    assert body["ok"] is True
    assert body["accepted"] is True
    assert body["status_before"] == "UNKNOWN"
    assert body["status_after"] == "IN"
    assert body["event"]["direction"] == "IN"
    assert body["event"]["measurement_valid"] is True
    assert body["extra_events"] == []

    res = client.post(url, params=params, json={"direction": "OUT"})
    assert res.status_code == 200
    body = res.json()
    assert body["ignored"] is True
    assert body["reason"] == "DUPLICATE_WITHIN_COOLDOWN"
    assert body["status_after"] == "IN"
    assert "event" not in body

    assert count_events(tenant["employee_id"]) == 1


def test_post_scan_event_validation(client, tenant, count_events):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/scan-events"
    params = {"email": tenant["email"]}

    res = client.post(url, params=params, json={})
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "direction is required"}

    res = client.post(url, params=params, json={"direction": "up"})
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "direction must be IN or OUT"}

    res = client.post(f"{PREFIX}/employees/nobody/scan-events", params=params, json={"direction": "IN"})
    assert res.status_code == 404
    assert res.json() == {"ok": False, "error": "employee not found"}

    assert count_events(tenant["employee_id"]) == 0


def test_post_scan_event_cooldown_conflict(client, tenant, count_events):
    now = utcnow()
    _scan(tenant, "IN", now - timedelta(hours=8))
    _scan(tenant, "OUT", now - timedelta(minutes=30))

    res = client.post(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
        json={"direction": "IN"},
    )

    assert res.status_code == 409
    body = res.json()
    assert body["accepted"] is False
    assert body["reason"] == "COOLDOWN_AFTER_OUT"
    assert 1790 <= body["retry_after_seconds"] <= 1800
    assert body["status_before"] == "OUT"
    assert res.headers["retry-after"] == str(body["retry_after_seconds"])
    assert count_events(tenant["employee_id"]) == 2


def test_auto_fix_through_api(client, tenant):
    _scan(tenant, "IN", utcnow() - timedelta(hours=3))

    res = client.post(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
        json={"direction": "IN"},
    )

    assert res.status_code == 201
    body = res.json()
    assert body["warning"] == "IN_AFTER_IN_AUTO_CLOSED"
    assert body["event"]["anomaly_code"] == "IN_AFTER_IN"
    assert [e["anomaly_code"] for e in body["extra_events"]] == ["AUTO_CLOSED_PREVIOUS_IN"]
    assert body["extra_events"][0]["is_system"] is True


def test_scan_event_history(client, tenant, t0):
    _scan(tenant, "OUT", t0)
    _scan(tenant, "IN", t0 + timedelta(hours=2))
    _scan(tenant, "OUT", t0 + timedelta(hours=6))

    url = f"{PREFIX}/employees/{tenant['employee_id']}/scan-events"
    res = client.get(url, params={"email": tenant["email"]})
    assert res.status_code == 200
    body = res.json()
    assert body["current_status"] == "OUT"
    assert [e["direction"] for e in body["events"]] == ["OUT", "IN", "OUT"]
    assert body["events"][-1]["anomaly_code"] == "OUT_WITHOUT_IN"

    res = client.get(url, params={"email": tenant["email"], "limit": "1"})
    assert len(res.json()["events"]) == 1

    res = client.get(url, params={"email": tenant["email"], "limit": "junk"})
    assert len(res.json()["events"]) == 3


def test_history_of_orphan_out_reports_in(client, tenant, t0):
    _scan(tenant, "OUT", t0)

    res = client.get(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
    )
    assert res.json()["current_status"] == "IN"


def test_presence_board(client, tenant, t0):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    leaver = db.add_employee(tenant["client_id"], "Lien", "Claes", created_at=base + timedelta(days=1))
    newcomer = db.add_employee(tenant["client_id"], "Noor", "Wouters", created_at=base + timedelta(days=2))
    flagged = db.add_employee(tenant["client_id"], "Jef", "Smets", created_at=base)

    _scan(tenant, "IN", t0)
    _scan(tenant, "IN", t0, employee_id=leaver)
    _scan(tenant, "OUT", t0 + timedelta(hours=8), employee_id=leaver)
    _scan(tenant, "OUT", t0, employee_id=flagged)

    res = client.get(f"{PREFIX}/presence", params={"email": tenant["email"]})
    assert res.status_code == 200
    body = res.json()

    assert body["summary"] == {"in": 2, "out": 1, "no_scans": 1, "attention": 1}

    rows = body["employees"]
    statuses = [r["current_status"] for r in rows]
    assert statuses == ["IN", "IN", "OUT", "UNKNOWN"]
    assert rows[2]["employee_id"] == leaver
    assert rows[3]["employee_id"] == newcomer
    assert rows[3]["measurement_valid"] is True
    assert rows[3]["since"] is None

    by_id = {r["employee_id"]: r for r in rows}
    assert by_id[flagged]["anomaly_code"] == "OUT_WITHOUT_IN"
    assert by_id[flagged]["last_direction"] == "OUT"
    assert by_id[tenant["employee_id"]]["display_name"] == "Ada Peeters"


def test_reference_read_and_update(client, tenant):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/reference"
    params = {"email": tenant["email"]}

    res = client.get(url, params=params)
    assert res.status_code == 200
    assert res.json()["reference_minutes"] == 450

    res = client.put(url, params=params, json={"reference_minutes": 480})
    assert res.status_code == 200
    assert res.json()["reference_minutes"] == 480

    res = client.put(url, params=params, json={"reference_minutes": 480.0})
    assert res.status_code == 200
    assert res.json()["reference_minutes"] == 480

    res = client.put(url, params=params, json={"reference_minutes": None})
    assert res.status_code == 200
    assert res.json()["reference_minutes"] is None
    assert client.get(url, params=params).json()["reference_minutes"] is None


def test_reference_rejects_bad_input(client, tenant):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/reference"
    params = {"email": tenant["email"]}

    for bad in ({}, {"reference_minutes": 0}, {"reference_minutes": 1441},
                {"reference_minutes": 480.5}, {"reference_minutes": "480"},
                {"reference_minutes": True}):
        res = client.put(url, params=params, json=bad)
        assert res.status_code == 400, bad
        assert res.json()["ok"] is False

    assert client.get(url, params=params).json()["reference_minutes"] == 450

    res = client.put(f"{PREFIX}/employees/nobody/reference", params=params, json={"reference_minutes": 60})
    assert res.status_code == 404


def test_performances_with_overtime(client, tenant, t0):
    _scan(tenant, "IN", t0)
    _scan(tenant, "OUT", t0 + timedelta(hours=8))
    _scan(tenant, "IN", t0 + timedelta(days=1))

    res = client.get(
        f"{PREFIX}/performances",
        params={"email": tenant["email"], "from": "2026-03-02", "to": "2026-03-04"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2

    closed, open_shift = body["performances"]
    assert closed["employee_id"] == tenant["employee_id"]
    assert closed["employee_name"] == "Ada Peeters"
    assert closed["started_at"] == "2026-03-02T09:00:00+00:00"
    assert closed["effective_minutes"] == 480
    assert closed["reference_minutes"] == 450
    assert closed["difference_minutes"] == 30
    assert closed["overtime_minutes"] == 30
    assert closed["attention"] is False

    assert open_shift["ended_at"] is None
    assert open_shift["attention_reasons"] == ["OPEN_SHIFT"]
    assert open_shift["overtime_minutes"] is None


def test_performances_window_is_half_open(client, tenant, t0):
    _scan(tenant, "IN", t0)
    _scan(tenant, "OUT", t0 + timedelta(hours=8))

    res = client.get(
        f"{PREFIX}/performances",
        params={"email": tenant["email"], "from": "2026-03-01", "to": "2026-03-02"},
    )
    assert res.json()["count"] == 0

    res = client.get(
        f"{PREFIX}/performances",
        params={
            "email": tenant["email"],
            "from": "2026-03-02",
            "to": "2026-03-03",
            "employee_id": tenant["employee_id"],
        },
    )
    assert res.json()["count"] == 1


def test_performances_validation(client, tenant):
    params = {"email": tenant["email"]}

    res = client.get(f"{PREFIX}/performances", params={**params, "from": "2026-03-02"})
    assert res.status_code == 400

    res = client.get(f"{PREFIX}/performances", params={**params, "from": "02/03/2026", "to": "2026-03-03"})
    assert res.status_code == 400

    res = client.get(
        f"{PREFIX}/performances",
        params={**params, "from": "2026-03-02", "to": "2026-03-03", "employee_id": "nobody"},
    )
    assert res.status_code == 404


def test_post_scan_event_malformed_bodies_are_validation_errors(client, tenant, count_events):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/scan-events"
    params = {"email": tenant["email"]}

    res = client.post(url, params=params, json={"direction": 1})
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "direction must be IN or OUT"}

    res = client.post(url, params=params)
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "direction is required"}

    res = client.post(url, params=params, json="IN")
    assert res.status_code == 400
    assert res.json()["ok"] is False

    assert count_events(tenant["employee_id"]) == 0


def test_reference_rejects_non_object_body(client, tenant):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/reference"
    params = {"email": tenant["email"]}

    for bad in (480, [480], "480"):
        res = client.put(url, params=params, json=bad)
        assert res.status_code == 400, bad
        assert res.json() == {"ok": False, "error": "reference_minutes is required (number or null)"}

    assert client.get(url, params=params).json()["reference_minutes"] == 450


def test_double_tap_reports_cooldown_seconds(client, tenant):
    url = f"{PREFIX}/employees/{tenant['employee_id']}/scan-events"
    params = {"email": tenant["email"]}

    assert client.post(url, params=params, json={"direction": "IN"}).status_code == 201
    body = client.post(url, params=params, json={"direction": "IN"}).json()
    assert body["ignored"] is True
    assert body["cooldown_seconds"] == 10


def test_cooldown_conflict_reports_scan_time(client, tenant, monkeypatch):
    import backend.services.scan_ingestion as scan_ingestion

    frozen = datetime(2026, 3, 2, 17, 30, tzinfo=timezone.utc)
    monkeypatch.setattr(scan_ingestion, "utcnow", lambda: frozen)
    _scan(tenant, "IN", frozen - timedelta(hours=8))
    _scan(tenant, "OUT", frozen - timedelta(minutes=30))

    res = client.post(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
        json={"direction": "IN"},
    )
    assert res.status_code == 409
    assert res.json()["server_time"] == "2026-03-02T17:30:00+00:00"
    assert res.json()["retry_after_seconds"] == 1800


def test_locked_stream_returns_503_with_retry_after(client, tenant, monkeypatch, count_events):
    def locked_insert(cur, row):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "_insert_scan_event", locked_insert)

    res = client.post(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
        json={"direction": "IN"},
    )
    assert res.status_code == 503
    assert res.headers["retry-after"] == "1"
    assert res.json()["ok"] is False
    assert count_events(tenant["employee_id"]) == 0


def test_storage_failure_returns_generic_500(client, tenant, monkeypatch, count_events):
    def broken_insert(cur, row):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "_insert_scan_event", broken_insert)

    res = client.post(
        f"{PREFIX}/employees/{tenant['employee_id']}/scan-events",
        params={"email": tenant["email"]},
        json={"direction": "IN"},
    )
    assert res.status_code == 500
    assert res.json() == {"ok": False, "error": "internal storage error"}
    assert "disk" not in res.text
    assert count_events(tenant["employee_id"]) == 0


def test_read_failures_map_to_500_and_close_connections(client, tenant, monkeypatch):
    conn = db.connect_db()
    conn.execute("DROP TABLE scan_event")
    conn.commit()
    conn.close()

    opened = []
    real_connect = db.connect_db

    def tracking_connect():
        c = real_connect()
        opened.append(c)
        return c

    monkeypatch.setattr(db, "connect_db", tracking_connect)

    params = {"email": tenant["email"]}
    res = client.get(f"{PREFIX}/employees/{tenant['employee_id']}/scan-events", params=params)
    assert res.status_code == 500
    assert res.json() == {"ok": False, "error": "internal storage error"}

    res = client.get(f"{PREFIX}/presence", params=params)
    assert res.status_code == 500

    res = client.get(f"{PREFIX}/performances", params={**params, "from": "2026-03-02", "to": "2026-03-03"})
    assert res.status_code == 500
    assert "no such table" not in res.text

    assert opened
    for c in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            c.execute("SELECT 1")
