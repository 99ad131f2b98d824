"""Table view built on top of the schedule engine.

``build_table`` is the canonical read: it validates a store snapshot, runs
:func:`relaysheet.schedule.derive_schedule` and serializes the result.
``recompute_table`` replays the same derivation over an already serialized
table, which is what the offline replica does after a local edit.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from .schedule import LEG_COUNT, RUNNER_COUNT, derive_schedule
from .timeutil import parse_instant, to_iso

_INSTANT_FIELDS = ("initial_estimated_start", "updated_estimated_start", "actual_start_time")

HEATMAP_COLUMNS = {
    "mileage": "leg_mileage",
    "elev_gain": "elev_gain_ft",
    "elev_loss": "elev_loss_ft",
    "net_elev_diff": "net_elev_diff_ft",
}


class SnapshotError(ValueError):
    """A store snapshot that is not 36 contiguous legs over runners 1..12."""


def validate_snapshot(legs: List[Dict], runners: Iterable[Dict], leg_inputs: Iterable[Dict]) -> None:
    if len(legs) != LEG_COUNT:
        raise SnapshotError(f"Expected {LEG_COUNT} legs, got {len(legs)}")
    numbers = [int(leg.get("leg") or 0) for leg in legs]
    if numbers != list(range(1, LEG_COUNT + 1)):
        raise SnapshotError("Legs must be numbered 1..36 in ascending order")
    runner_numbers = {int(r.get("runner_number") or 0) for r in runners}
    for leg in legs:
        rn = int(leg.get("runner_number") or 0)
        if rn < 1 or rn > RUNNER_COUNT:
            raise SnapshotError(f"Leg {leg.get('leg')} references runner {rn} outside 1..{RUNNER_COUNT}")
        if rn not in runner_numbers:
            raise SnapshotError(f"Leg {leg.get('leg')} references unknown runner {rn}")
    for item in leg_inputs:
        if int(item.get("leg") or 0) not in range(1, LEG_COUNT + 1):
            raise SnapshotError(f"Leg input for unknown leg {item.get('leg')}")


def _min_max(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"min": 0, "max": 0}
    return {"min": min(values), "max": max(values)}


def heatmap_stats(rows: List[Dict]) -> Dict[str, Dict[str, float]]:
    """Min/max per numeric course column for display heat-mapping."""
    out: Dict[str, Dict[str, float]] = {}
    for key, field in HEATMAP_COLUMNS.items():
        values = [row[field] for row in rows if row.get(field) is not None]
        out[key] = _min_max(values)
    return out


def estimated_finish(rows: List[Dict]) -> Optional[Any]:
    """Last leg's updated estimated start plus its estimated duration."""
    if not rows:
        return None
    last = rows[-1]
    start = last.get("updated_estimated_start")
    duration = last.get("estimated_duration_sec")
    if start is None or duration is None:
        return None
    return start + timedelta(seconds=duration)


def next_leg(rows: List[Dict]) -> Optional[int]:
    """Number of the first leg without an actual start, None once all started."""
    for row in rows:
        if row.get("actual_start_time") is None:
            return row["leg"]
    return None


def _normalize_config(config: Optional[Dict]) -> Dict:
    config = config or {}
    return {
        "race_start_time": parse_instant(config.get("race_start_time")),
        "finish_time": parse_instant(config.get("finish_time")),
    }


def _normalize_inputs(leg_inputs: Iterable[Dict]) -> List[Dict]:
    out = []
    for item in leg_inputs:
        out.append({**item, "actual_start_time": parse_instant(item.get("actual_start_time"))})
    return out


def _serialize_row(row: Dict) -> Dict:
    out = dict(row)
    for field in _INSTANT_FIELDS:
        out[field] = to_iso(row.get(field))
    return out


def build_table(snapshot: Dict) -> Dict:
    """Validate a store snapshot and derive the serialized table payload."""
    legs = list(snapshot.get("legs") or [])
    runners = list(snapshot.get("runners") or [])
    leg_inputs = _normalize_inputs(snapshot.get("leg_inputs") or [])
    validate_snapshot(legs, runners, leg_inputs)

    config = _normalize_config(snapshot.get("config"))
    rows = derive_schedule(config, legs, runners, leg_inputs)

    return {
        "rows": [_serialize_row(r) for r in rows],
        "race_start_time": to_iso(config["race_start_time"]),
        "finish_time": to_iso(config["finish_time"]),
        "estimated_finish_time": to_iso(estimated_finish(rows)),
        "next_leg": next_leg(rows),
        "heatmap": heatmap_stats(rows),
    }


def table_to_snapshot(table: Dict) -> Dict:
    """Recover the engine inputs carried by a serialized table."""
    legs: List[Dict] = []
    runners: Dict[int, Dict] = {}
    leg_inputs: List[Dict] = []
    for row in table.get("rows") or []:
        rn = int(row["runner_number"])
        legs.append(
            {
                "leg": row["leg"],
                "runner_number": rn,
                "leg_mileage": row.get("leg_mileage"),
                "elev_gain_ft": row.get("elev_gain_ft"),
                "elev_loss_ft": row.get("elev_loss_ft"),
                "net_elev_diff_ft": row.get("net_elev_diff_ft"),
                "exchange_label": row.get("exchange_label"),
                "exchange_url": row.get("exchange_url"),
            }
        )
        # First-rotation rows carry the authoritative runner fields
        runners.setdefault(
            rn,
            {
                "runner_number": rn,
                "name": row.get("runner_name"),
                "default_estimated_pace_spm": row.get("runner_default_pace_spm"),
            },
        )
        leg_inputs.append(
            {
                "leg": row["leg"],
                "estimated_pace_override_spm": row.get("estimated_pace_override_spm"),
                "actual_start_time": row.get("actual_start_time"),
            }
        )
    return {
        "config": {
            "race_start_time": table.get("race_start_time"),
            "finish_time": table.get("finish_time"),
        },
        "legs": legs,
        "runners": [runners[k] for k in sorted(runners)],
        "leg_inputs": leg_inputs,
    }


def recompute_table(table: Dict) -> Dict:
    """Re-derive every computed field of a serialized table."""
    return build_table(table_to_snapshot(table))


__all__ = [
    "SnapshotError",
    "validate_snapshot",
    "heatmap_stats",
    "estimated_finish",
    "next_leg",
    "build_table",
    "table_to_snapshot",
    "recompute_table",
]
