import os
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

# Writable columns per table; anything else in a payload is ignored.
_CONFIG_FIELDS = ("race_start_time", "finish_time")
_LEG_FIELDS = (
    "leg_mileage",
    "elev_gain_ft",
    "elev_loss_ft",
    "net_elev_diff_ft",
    "exchange_label",
    "exchange_url",
)
_LEG_INPUT_FIELDS = ("estimated_pace_override_spm", "actual_start_time")
_RUNNER_FIELDS = ("name", "default_estimated_pace_spm")


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """connect_timeout + TCP keepalive options read from the environment.

    Defaults: 10 second connect timeout, keepalives on (DB_KEEPALIVES=0 turns
    them off). IDLE/INTERVAL/COUNT tunables are only passed when set.
    """
    kwargs: Dict[str, Any] = {}
    kwargs["connect_timeout"] = _env_int("DB_CONNECT_TIMEOUT", 10)

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if ka_env.lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        value = _env_int(env_name)
        if value is not None:
            kwargs[key] = value
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize the shared connection pool from DATABASE_URL.

    Calling it again once a pool exists is a no-op. Without DATABASE_URL the
    pool stays unset and connections are opened directly.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _ping(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        if not getattr(conn, "autocommit", False):
            conn.rollback()
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False
    return True


def _release(conn) -> None:
    # status 1 = active, 2 = in transaction, 3 = in error
    if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
        if getattr(conn, "status", 0) in (1, 2, 3):
            conn.rollback()
    _POOL.putconn(conn)


@contextmanager
def _get_conn():
    """Yield a pooled connection (pinged, one retry) or a direct one.

    Any exception raised inside the block rolls the transaction back before
    propagating.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")

    if _POOL is None:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return

    conn = _POOL.getconn()
    if not _ping(conn):
        _POOL.putconn(conn, close=True)
        conn = _POOL.getconn()
        if not _ping(conn):
            _POOL.putconn(conn, close=True)
            raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        _release(conn)


def _num(val) -> Optional[float]:
    if val is None:
        return None
    if isinstance(val, Decimal):
        return float(val)
    return val


def get_config() -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT race_start_time, finish_time FROM app_config WHERE id = 1")
        row = cur.fetchone() or {}
    return {
        "race_start_time": row.get("race_start_time"),
        "finish_time": row.get("finish_time"),
    }


def list_runners() -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT runner_number, name, default_estimated_pace_spm FROM runners ORDER BY runner_number ASC"
        )
        rows = cur.fetchall() or []
    return [
        {
            "runner_number": r["runner_number"],
            "name": r.get("name") or "",
            "default_estimated_pace_spm": _num(r.get("default_estimated_pace_spm")),
        }
        for r in rows
    ]


def load_snapshot() -> Dict[str, Any]:
    """Read config, legs, runners and leg inputs in one connection.

    Legs and leg inputs come back ordered by leg ascending; legs without a
    leg_inputs row get an all-null input.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT race_start_time, finish_time FROM app_config WHERE id = 1")
        cfg = cur.fetchone() or {}
        cur.execute(
            "SELECT runner_number, name, default_estimated_pace_spm FROM runners ORDER BY runner_number ASC"
        )
        runner_rows = cur.fetchall() or []
        cur.execute(
            """
            SELECT l.leg, l.runner_number, l.leg_mileage, l.elev_gain_ft, l.elev_loss_ft,
                   l.net_elev_diff_ft, l.exchange_label, l.exchange_url,
                   li.estimated_pace_override_spm, li.actual_start_time
            FROM legs l
            LEFT JOIN leg_inputs li ON li.leg = l.leg
            ORDER BY l.leg ASC
            """
        )
        leg_rows = cur.fetchall() or []

    legs: List[Dict[str, Any]] = []
    leg_inputs: List[Dict[str, Any]] = []
    for r in leg_rows:
        legs.append(
            {
                "leg": r["leg"],
                "runner_number": r["runner_number"],
                "leg_mileage": _num(r.get("leg_mileage")) or 0.0,
                "elev_gain_ft": r.get("elev_gain_ft") or 0,
                "elev_loss_ft": r.get("elev_loss_ft") or 0,
                "net_elev_diff_ft": r.get("net_elev_diff_ft") or 0,
                "exchange_label": r.get("exchange_label") or "",
                "exchange_url": r.get("exchange_url") or "",
            }
        )
        leg_inputs.append(
            {
                "leg": r["leg"],
                "estimated_pace_override_spm": _num(r.get("estimated_pace_override_spm")),
                "actual_start_time": r.get("actual_start_time"),
            }
        )
    return {
        "config": {
            "race_start_time": cfg.get("race_start_time"),
            "finish_time": cfg.get("finish_time"),
        },
        "runners": [
            {
                "runner_number": r["runner_number"],
                "name": r.get("name") or "",
                "default_estimated_pace_spm": _num(r.get("default_estimated_pace_spm")),
            }
            for r in runner_rows
        ],
        "legs": legs,
        "leg_inputs": leg_inputs,
    }


def _set_clause(fields: Dict[str, Any], allowed) -> tuple:
    sets: List[str] = []
    params: List[Any] = []
    for col in allowed:
        if col in fields:
            sets.append(f"{col} = %s")
            params.append(fields[col])
    return sets, params


def update_config(fields: Dict[str, Any]) -> None:
    """Update race_start_time / finish_time on the singleton config row."""
    sets, params = _set_clause(fields, _CONFIG_FIELDS)
    if not sets:
        return
    sets.append("updated_at = now()")
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("INSERT INTO app_config (id) VALUES (1) ON CONFLICT (id) DO NOTHING")
        cur.execute(f"UPDATE app_config SET {', '.join(sets)} WHERE id = 1", params)
        conn.commit()


def update_leg(leg: int, fields: Dict[str, Any]) -> None:
    """Update static course facts of a single leg."""
    sets, params = _set_clause(fields, _LEG_FIELDS)
    if not sets:
        return
    sets.append("updated_at = now()")
    params.append(int(leg))
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(f"UPDATE legs SET {', '.join(sets)} WHERE leg = %s", params)
        conn.commit()


def update_leg_input(leg: int, fields: Dict[str, Any]) -> None:
    sets, params = _set_clause(fields, _LEG_INPUT_FIELDS)
    if not sets:
        return
    sets.append("updated_at = now()")
    params.append(int(leg))
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("INSERT INTO leg_inputs (leg) VALUES (%s) ON CONFLICT (leg) DO NOTHING", (int(leg),))
        cur.execute(f"UPDATE leg_inputs SET {', '.join(sets)} WHERE leg = %s", params)
        conn.commit()


def update_runner(runner_number: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Update a runner and return the stored row (None if it does not exist)."""
    sets, params = _set_clause(fields, _RUNNER_FIELDS)
    if not sets:
        return None
    sets.append("updated_at = now()")
    params.append(int(runner_number))
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"UPDATE runners SET {', '.join(sets)} WHERE runner_number = %s "
            "RETURNING runner_number, name, default_estimated_pace_spm, updated_at",
            params,
        )
        row = cur.fetchone()
        conn.commit()
    if not row:
        return None
    return {
        "runner_number": row["runner_number"],
        "name": row.get("name") or "",
        "default_estimated_pace_spm": _num(row.get("default_estimated_pace_spm")),
        "updated_at": row.get("updated_at"),
    }


def import_legs(rows: List[Dict[str, Any]]) -> int:
    """Overwrite course facts for the given legs in one transaction."""
    updated = 0
    with _get_conn() as conn, conn.cursor() as cur:
        for row in rows:
            cur.execute(
                """
                UPDATE legs
                SET leg_mileage = %s,
                    elev_gain_ft = %s,
                    elev_loss_ft = %s,
                    net_elev_diff_ft = %s,
                    exchange_label = %s,
                    exchange_url = %s,
                    updated_at = now()
                WHERE leg = %s
                """,
                (
                    row["leg_mileage"],
                    row["elev_gain_ft"],
                    row["elev_loss_ft"],
                    row["net_elev_diff_ft"],
                    row["exchange_label"],
                    row["exchange_url"],
                    int(row["leg"]),
                ),
            )
            updated += 1
        conn.commit()
    return updated


def clear_actual_start_times() -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("UPDATE leg_inputs SET actual_start_time = NULL, updated_at = now()")
        count = cur.rowcount
        conn.commit()
    return count
