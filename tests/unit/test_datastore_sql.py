import importlib
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import relaysheet.datastore_pg as pg_module


class RecordingCursor:
    def __init__(self, rows=None):
        self.executed = []
        self.rows = list(rows or [])
        self.rowcount = 36

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def fetchall(self):
        rows, self.rows = self.rows, []
        return rows


class RecordingConn:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0

    def cursor(self, cursor_factory=None):
        return self._cursor

    def commit(self):
        self.commits += 1


def _install(monkeypatch, cursor):
    # conftest swaps the query functions for in-memory ones; reload the real module
    pg = importlib.reload(pg_module)
    conn = RecordingConn(cursor)

    @contextmanager
    def fake_get_conn():
        yield conn

    monkeypatch.setattr(pg, "_get_conn", fake_get_conn)
    return pg, conn


def test_update_leg_input_only_touches_named_columns(monkeypatch):
    cur = RecordingCursor()
    pg, conn = _install(monkeypatch, cur)
    when = datetime(2026, 8, 28, 13, 10, tzinfo=timezone.utc)

    pg.update_leg_input(4, {"actual_start_time": when, "leg_mileage": 99})

    assert cur.executed[0] == ("INSERT INTO leg_inputs (leg) VALUES (%s) ON CONFLICT (leg) DO NOTHING", (4,))
    sql, params = cur.executed[1]
    assert sql == "UPDATE leg_inputs SET actual_start_time = %s, updated_at = now() WHERE leg = %s"
    assert params == [when, 4]
    assert conn.commits == 1


def test_update_without_writable_fields_is_a_no_op(monkeypatch):
    cur = RecordingCursor()
    pg, _conn = _install(monkeypatch, cur)
    pg.update_leg(3, {"runner_number": 5})
    pg.update_config({})
    assert cur.executed == []


def test_update_runner_returns_row_with_floats(monkeypatch):
    stamp = datetime(2026, 8, 1, 12, 0, tzinfo=timezone.utc)
    cur = RecordingCursor(rows=[{
        "runner_number": 2,
        "name": "Lee",
        "default_estimated_pace_spm": Decimal("455.50"),
        "updated_at": stamp,
    }])
    pg, _conn = _install(monkeypatch, cur)

    row = pg.update_runner(2, {"default_estimated_pace_spm": 455.5})
    assert row == {"runner_number": 2, "name": "Lee", "default_estimated_pace_spm": 455.5, "updated_at": stamp}
    assert "RETURNING runner_number" in cur.executed[0][0]


def test_clear_actual_start_times_reports_rowcount(monkeypatch):
    cur = RecordingCursor()
    pg, _conn = _install(monkeypatch, cur)
    assert pg.clear_actual_start_times() == 36
    assert cur.executed[0][0].startswith("UPDATE leg_inputs SET actual_start_time = NULL")
