from typing import Any, Dict, List, Optional

# Store proxy: every call resolves against datastore_pg at call time so tests
# can monkeypatch the PostgreSQL functions with in-memory stand-ins.

from . import datastore_pg as _pg


def load_snapshot() -> Dict[str, Any]:
    return _pg.load_snapshot()


def get_config() -> Dict[str, Any]:
    return _pg.get_config()


def list_runners() -> List[Dict[str, Any]]:
    return _pg.list_runners()


def update_config(fields: Dict[str, Any]) -> None:
    return _pg.update_config(fields)


def update_leg(leg: int, fields: Dict[str, Any]) -> None:
    return _pg.update_leg(leg, fields)


def update_leg_input(leg: int, fields: Dict[str, Any]) -> None:
    return _pg.update_leg_input(leg, fields)


def update_runner(runner_number: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return _pg.update_runner(runner_number, fields)


def import_legs(rows: List[Dict[str, Any]]) -> int:
    return _pg.import_legs(rows)


def clear_actual_start_times() -> int:
    return _pg.clear_actual_start_times()
