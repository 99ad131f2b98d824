"""Validated partial writes against the store.

Both the HTTP routes and the offline replica's replay go through
:func:`apply_write`, so a queued edit is applied exactly like a live one.
Writes are single-row and field-granular; re-applying the same payload is
harmless.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from . import datastore as ds
from .schedule import LEG_COUNT, RUNNER_COUNT
from .timeutil import local_to_utc

logger = logging.getLogger(__name__)

_MISSING = object()

_TARGET_RE = re.compile(r"^/?(?:api/)?(?P<kind>config|legs|leg-inputs|runners)(?:/(?P<key>[^/]+))?(?:/(?P<action>pace))?/?$")


class WriteError(ValueError):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number_or_null(payload: Dict[str, Any], field: str) -> Any:
    if field not in payload:
        return _MISSING
    value = payload[field]
    if value is None or _is_number(value):
        return value
    return _MISSING


def _instant_or_null(payload: Dict[str, Any], field: str) -> Any:
    """ISO instant, race-local datetime string, or None.

    An unparseable string is stored as None rather than rejected.
    """
    if field not in payload:
        return _MISSING
    value = payload[field]
    if value is None:
        return None
    if not isinstance(value, str):
        return _MISSING
    parsed = local_to_utc(value)
    if parsed is None and value.strip():
        logger.warning("unparseable %s=%r stored as null", field, value)
    return parsed


def _collect(payload: Any, readers: List[Tuple[str, Any]]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise WriteError("Invalid body")
    fields: Dict[str, Any] = {}
    for field, reader in readers:
        value = reader(payload, field)
        if value is not _MISSING:
            fields[field] = value
    if not fields:
        raise WriteError("No valid fields")
    return fields


def _parse_index(value: Any, upper: int, message: str) -> int:
    """Leg/runner key from a path segment or JSON value.

    Accepts anything that reads as a whole number (``"5"``, ``" 05"``,
    ``5.0``); fractions, booleans and non-numbers are rejected.
    """
    if isinstance(value, bool):
        raise WriteError(message)
    if isinstance(value, int):
        num = value
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            raise WriteError(message)
        if not number.is_integer():
            raise WriteError(message)
        num = int(number)
    if num < 1 or num > upper:
        raise WriteError(message)
    return num


def _check_leg(leg: Any) -> int:
    return _parse_index(leg, LEG_COUNT, "Invalid leg")


def _check_runner(runner_number: Any) -> int:
    return _parse_index(runner_number, RUNNER_COUNT, "Invalid runner_number")


def _number(payload: Dict[str, Any], field: str) -> Any:
    value = payload.get(field, _MISSING)
    return value if _is_number(value) else _MISSING


def _stripped(payload: Dict[str, Any], field: str) -> Any:
    value = payload.get(field, _MISSING)
    return value.strip() if isinstance(value, str) else _MISSING


# Validators are pure: they raise WriteError or return the fields a write
# would store. The local replica runs them before touching its cache.

def validate_config(payload: Any) -> Dict[str, Any]:
    return _collect(payload, [("race_start_time", _instant_or_null), ("finish_time", _instant_or_null)])


def validate_leg(leg: Any, payload: Any) -> Tuple[int, Dict[str, Any]]:
    num = _check_leg(leg)
    fields = _collect(
        payload,
        [
            ("leg_mileage", _number),
            ("elev_gain_ft", _number),
            ("elev_loss_ft", _number),
            ("net_elev_diff_ft", _number),
            ("exchange_label", _stripped),
            ("exchange_url", _stripped),
        ],
    )
    if "leg_mileage" in fields and fields["leg_mileage"] < 0:
        raise WriteError("leg_mileage must be >= 0")
    return num, fields


def validate_leg_input(leg: Any, payload: Any) -> Tuple[int, Dict[str, Any]]:
    num = _check_leg(leg)
    fields = _collect(
        payload,
        [("estimated_pace_override_spm", _number_or_null), ("actual_start_time", _instant_or_null)],
    )
    return num, fields


def validate_runner(runner_number: Any, payload: Any) -> Tuple[int, Dict[str, Any]]:
    num = _check_runner(runner_number)
    return num, _collect(payload, [("default_estimated_pace_spm", _number_or_null), ("name", _stripped)])


def validate_pace(leg: Any, pace: Any) -> int:
    num = _check_leg(leg)
    if pace is not None and not _is_number(pace):
        raise WriteError("Invalid pace")
    return num


def update_config(payload: Any) -> Dict[str, Any]:
    fields = validate_config(payload)
    ds.update_config(fields)
    logger.info("updated config fields=%s", ",".join(sorted(fields)))
    return fields


def update_leg(leg: Any, payload: Any) -> Dict[str, Any]:
    num, fields = validate_leg(leg, payload)
    ds.update_leg(num, fields)
    logger.info("updated leg=%s fields=%s", num, ",".join(sorted(fields)))
    return fields


def update_leg_input(leg: Any, payload: Any) -> Dict[str, Any]:
    num, fields = validate_leg_input(leg, payload)
    ds.update_leg_input(num, fields)
    logger.info("updated leg_input leg=%s fields=%s", num, ",".join(sorted(fields)))
    return fields


def update_runner(runner_number: Any, payload: Any) -> Dict[str, Any]:
    num, fields = validate_runner(runner_number, payload)
    row = ds.update_runner(num, fields)
    if row is None:
        raise WriteError("Runner not found", status=404)
    logger.info("updated runner_number=%s", num)
    return row


def set_leg_pace(leg: Any, pace: Optional[float]) -> None:
    """Apply a pace edit made on a leg row.

    A first-rotation leg (1..12) edits its runner's default pace, then clears
    that leg's stale override if one is set. Later legs get a per-leg
    override. Callers re-read the store afterwards instead of trusting any
    intermediate state.
    """
    num = validate_pace(leg, pace)

    if num > RUNNER_COUNT:
        ds.update_leg_input(num, {"estimated_pace_override_spm": pace})
        logger.info("updated leg_input leg=%s pace override", num)
        return

    snapshot = ds.load_snapshot()
    leg_row = next((lg for lg in snapshot.get("legs", []) if int(lg["leg"]) == num), None)
    runner_number = int(leg_row["runner_number"]) if leg_row else num
    current = next((li for li in snapshot.get("leg_inputs", []) if int(li["leg"]) == num), {})

    ds.update_runner(runner_number, {"default_estimated_pace_spm": pace})
    if current.get("estimated_pace_override_spm") is not None:
        ds.update_leg_input(num, {"estimated_pace_override_spm": None})
    logger.info("updated runner_number=%s default pace via leg=%s", runner_number, num)


def _import_row(row: Any) -> Dict[str, Any]:
    if not isinstance(row, dict):
        raise WriteError("Invalid row payload")
    for field in ("leg", "leg_mileage", "elev_gain_ft", "elev_loss_ft", "net_elev_diff_ft"):
        if not _is_number(row.get(field)):
            raise WriteError("Invalid row payload")
    for field in ("exchange_label", "exchange_url"):
        if not isinstance(row.get(field), str):
            raise WriteError("Invalid row payload")
    return {
        "leg": _check_leg(row["leg"]),
        "leg_mileage": row["leg_mileage"],
        "elev_gain_ft": row["elev_gain_ft"],
        "elev_loss_ft": row["elev_loss_ft"],
        "net_elev_diff_ft": row["net_elev_diff_ft"],
        "exchange_label": row["exchange_label"],
        "exchange_url": row["exchange_url"],
    }


def import_legs(payload: Any) -> int:
    """Bulk-replace course facts; the whole payload is validated first."""
    if not isinstance(payload, dict) or not isinstance(payload.get("rows"), list):
        raise WriteError("Invalid body")
    rows = [_import_row(r) for r in payload["rows"]]
    updated = ds.import_legs(rows)
    logger.info("import-legs updated rows=%s", updated)
    return updated


def reset_actual_start_times() -> int:
    count = ds.clear_actual_start_times()
    logger.info("cleared actual start times rows=%s", count)
    return count


def apply_write(target: str, payload: Any) -> Any:
    """Dispatch a write by target path (``"leg-inputs/5"``, ``"runners/3"``...)."""
    match = _TARGET_RE.match(target or "")
    if not match:
        raise WriteError(f"Unknown target {target!r}", status=404)
    kind, key, action = match.group("kind"), match.group("key"), match.group("action")

    if kind == "config" and key is None:
        return update_config(payload)
    if kind == "leg-inputs" and key == "reset-actuals":
        return reset_actual_start_times()
    if kind == "legs" and key is not None and action == "pace":
        if not isinstance(payload, dict) or "pace" not in payload:
            raise WriteError("Invalid body")
        return set_leg_pace(key, payload["pace"])
    if action is None and key is not None:
        if kind == "legs":
            return update_leg(key, payload)
        if kind == "leg-inputs":
            return update_leg_input(key, payload)
        if kind == "runners":
            return update_runner(key, payload)
    raise WriteError(f"Unknown target {target!r}", status=404)


__all__ = [
    "WriteError",
    "validate_config",
    "validate_leg",
    "validate_leg_input",
    "validate_runner",
    "validate_pace",
    "update_config",
    "update_leg",
    "update_leg_input",
    "update_runner",
    "set_leg_pace",
    "import_legs",
    "reset_actual_start_times",
    "apply_write",
]
