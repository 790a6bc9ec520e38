from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db


@pytest.fixture()
def test_db(tmp_path, monkeypatch):
    path = tmp_path / "punctoo_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_PATH", path)

    db.create_tables()
    return path


@pytest.fixture()
def client(test_db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def tenant(test_db):
    email = "hr@acme.test"
    client_id = db.add_client("Acme BV", email)
    scantag_id = db.add_scantag(client_id)
    employee_id = db.add_employee(client_id, "Ada", "Peeters", reference_minutes=450)
    return {
        "email": email,
        "client_id": client_id,
        "scantag_id": scantag_id,
        "employee_id": employee_id,
    }


@pytest.fixture()
def t0():
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def count_events(test_db):
    def _count(employee_id: str) -> int:
        conn = db.connect_db()
        row = conn.execute(
            "SELECT COUNT(*) FROM scan_event WHERE employee_id = ?",
            (employee_id,),
        ).fetchone()
        conn.close()
        return int(row[0])

    return _count
