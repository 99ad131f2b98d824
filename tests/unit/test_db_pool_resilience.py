import importlib

import pytest


class _Cursor:
    def __init__(self, fail):
        self.fail = fail

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        if self.fail:
            from psycopg2 import OperationalError

            raise OperationalError("SSL connection has been closed unexpectedly")
        return None


class _Conn:
    autocommit = False
    closed = 0
    status = 0

    def __init__(self, healthy):
        self.healthy = healthy
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return _Cursor(fail=not self.healthy)

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


class FakePool:
    def __init__(self, health):
        self.health = list(health)
        self.calls_get = 0
        self.calls_put = []

    def getconn(self):
        self.calls_get += 1
        return _Conn(self.health.pop(0))

    def putconn(self, conn, close=False):
        self.calls_put.append((conn, close))
        if close:
            conn.close()


def test_pool_checkout_retries_on_stale_connection(monkeypatch):
    import relaysheet.datastore_pg as pg
    pg = importlib.reload(pg)

    pool = FakePool([False, True])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn() as conn:
        # The stale connection was swapped for a healthy one
        assert conn.healthy

    assert pool.calls_get == 2
    assert pool.calls_put[0][1] is True
    assert pool.calls_put[-1] == (conn, False)


def test_pool_checkout_gives_up_after_one_retry(monkeypatch):
    import psycopg2

    import relaysheet.datastore_pg as pg
    pg = importlib.reload(pg)

    pool = FakePool([False, False])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(psycopg2.OperationalError):
        with pg._get_conn():
            pass
    assert pool.calls_get == 2
    assert all(close for (_c, close) in pool.calls_put)


def test_error_inside_block_rolls_back_and_returns_conn(monkeypatch):
    import relaysheet.datastore_pg as pg
    pg = importlib.reload(pg)

    pool = FakePool([True])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(ValueError):
        with pg._get_conn() as conn:
            raise ValueError("boom")
    # One rollback after the ping, one for the failed block
    assert conn.rollbacks == 2
    assert pool.calls_put == [(conn, False)]
