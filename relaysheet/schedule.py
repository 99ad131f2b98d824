"""Schedule derivation for the 36-leg relay timetable.

Everything in this module is pure: callers hand in a complete snapshot of the
race config, legs, runners and leg inputs, and get back one derived row per
leg. Unknown values travel through every stage as ``None``; nothing here
raises for missing data.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

LEG_COUNT = 36
RUNNER_COUNT = 12
LEGS_PER_VAN_STINT = 6


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity.

    Matches the rounding used by the browser replica so both sides agree on
    every derived second.
    """
    return int(math.floor(value + 0.5))


def van_for_leg(leg: int) -> int:
    """Return the 1-based van stint window (1..6) a leg belongs to."""
    return (leg - 1) // LEGS_PER_VAN_STINT + 1


def effective_pace(override: Optional[float], default: Optional[float]) -> Optional[float]:
    """Per-leg override if present, else the runner default."""
    return override if override is not None else default


def is_override(override: Optional[float], default: Optional[float]) -> bool:
    return override is not None and default is not None and override != default


def estimated_durations(mileages: Sequence[float], paces: Sequence[Optional[float]]) -> List[Optional[int]]:
    """Estimated leg durations in seconds (``mileage * pace``).

    A pace of ``None`` or 0 means "unset" and yields ``None``.
    """
    out: List[Optional[int]] = []
    for mileage, pace in zip(mileages, paces):
        if not pace:
            out.append(None)
            continue
        out.append(round_half_up(float(mileage) * float(pace)))
    return out


def initial_estimates(race_start: Optional[datetime], durations: Sequence[Optional[int]]) -> List[Optional[datetime]]:
    """Project every leg's start time from the race start alone.

    A leg with an unknown duration does not move the cursor, so the following
    leg inherits the same projected start.
    """
    results: List[Optional[datetime]] = [None] * len(durations)
    if race_start is None:
        return results

    cursor = race_start
    for idx, duration in enumerate(durations):
        results[idx] = cursor
        if duration is not None:
            cursor = cursor + timedelta(seconds=duration)
    return results


def updated_estimates(
    initial: Sequence[Optional[datetime]],
    actual_starts: Sequence[Optional[datetime]],
    durations: Sequence[Optional[int]],
) -> List[Optional[datetime]]:
    """Re-anchor the projection on the highest-indexed known actual start.

    Known actual starts replace the projected value in their own slot. Legs
    after the anchor are re-chained from it using the previous leg's
    estimated duration; where that duration is unknown the slot keeps the
    initial projection.
    """
    out = list(initial)

    anchor_idx = -1
    for idx, actual in enumerate(actual_starts):
        if actual is not None:
            out[idx] = actual
            anchor_idx = idx

    if anchor_idx < 0:
        return out

    cursor = actual_starts[anchor_idx]
    for idx in range(anchor_idx + 1, len(out)):
        prev_duration = durations[idx - 1]
        if prev_duration is not None:
            cursor = cursor + timedelta(seconds=prev_duration)
            out[idx] = cursor
    return out


def actual_durations(actual_starts: Sequence[Optional[datetime]], finish: Optional[datetime]) -> List[Optional[int]]:
    """Infer how long each leg actually took from consecutive actual starts.

    The final leg is measured against the finish time. No duration is
    inferred across a leg whose own start, or whose successor's start, is
    unknown.
    """
    count = len(actual_starts)
    out: List[Optional[int]] = [None] * count
    for idx in range(count - 1):
        current = actual_starts[idx]
        nxt = actual_starts[idx + 1]
        if current is not None and nxt is not None:
            out[idx] = round_half_up((nxt - current).total_seconds())

    if count:
        last = actual_starts[-1]
        if last is not None and finish is not None:
            out[-1] = round_half_up((finish - last).total_seconds())
    return out


def _window_sum(values: Sequence[Optional[int]], start: int, end: int) -> Optional[int]:
    total = 0
    for value in values[start:end + 1]:
        if value is None:
            return None
        total += value
    return total


def van_stints(
    est_durations: Sequence[Optional[int]],
    act_durations: Sequence[Optional[int]],
) -> Dict[str, List[Optional[int]]]:
    """Sum each complete 6-leg window onto the window's last leg.

    Returns:
        ``{"estimated": [...], "actual": [...]}``; every slot other than a
        window's last leg is ``None``, as is any window with a gap.
    """
    estimated: List[Optional[int]] = [None] * len(est_durations)
    actual: List[Optional[int]] = [None] * len(act_durations)
    for end in range(LEGS_PER_VAN_STINT - 1, len(est_durations), LEGS_PER_VAN_STINT):
        start = end - (LEGS_PER_VAN_STINT - 1)
        estimated[end] = _window_sum(est_durations, start, end)
        actual[end] = _window_sum(act_durations, start, end)
    return {"estimated": estimated, "actual": actual}


def delta_to_estimate(actual_start: Optional[datetime], initial: Optional[datetime]) -> Optional[int]:
    """Drift in seconds of an actual start from the pre-race projection."""
    if actual_start is None or initial is None:
        return None
    return round_half_up((actual_start - initial).total_seconds())


def _inputs_by_leg(leg_inputs: Iterable[Dict]) -> Dict[int, Dict]:
    return {int(item["leg"]): item for item in leg_inputs or [] if item.get("leg") is not None}


def derive_schedule(
    config: Dict,
    legs: Sequence[Dict],
    runners: Iterable[Dict],
    leg_inputs: Iterable[Dict],
) -> List[Dict]:
    """Derive the full schedule for one snapshot.

    Args:
        config: ``race_start_time`` and ``finish_time`` as aware UTC
            datetimes or ``None``.
        legs: Leg rows ordered by ``leg`` (1..36).
        runners: Runner rows keyed by ``runner_number``.
        leg_inputs: Per-leg overrides; legs without a row count as empty.

    Returns:
        List of derived row dictionaries, one per leg, in leg order. The
        input rows are not modified.
    """
    runner_map = {int(r["runner_number"]): r for r in runners}
    inputs = _inputs_by_leg(leg_inputs)

    mileages: List[float] = []
    defaults: List[Optional[float]] = []
    overrides: List[Optional[float]] = []
    paces: List[Optional[float]] = []
    actual_starts: List[Optional[datetime]] = []
    for leg in legs:
        runner = runner_map.get(int(leg["runner_number"]), {})
        leg_input = inputs.get(int(leg["leg"]), {})
        default = runner.get("default_estimated_pace_spm")
        override = leg_input.get("estimated_pace_override_spm")
        mileages.append(float(leg.get("leg_mileage") or 0))
        defaults.append(default)
        overrides.append(override)
        paces.append(effective_pace(override, default))
        actual_starts.append(leg_input.get("actual_start_time"))

    durations = estimated_durations(mileages, paces)
    initial = initial_estimates(config.get("race_start_time"), durations)
    updated = updated_estimates(initial, actual_starts, durations)
    act_durations = actual_durations(actual_starts, config.get("finish_time"))
    stints = van_stints(durations, act_durations)

    rows: List[Dict] = []
    for idx, leg in enumerate(legs):
        runner = runner_map.get(int(leg["runner_number"]), {})
        mileage = mileages[idx]
        act_duration = act_durations[idx]
        actual_pace = act_duration / mileage if act_duration is not None and mileage > 0 else None
        rows.append(
            {
                "leg": int(leg["leg"]),
                "van": van_for_leg(int(leg["leg"])),
                "runner_number": int(leg["runner_number"]),
                "runner_name": runner.get("name") or "",
                "runner_default_pace_spm": defaults[idx],
                "leg_mileage": mileage,
                "elev_gain_ft": leg.get("elev_gain_ft"),
                "elev_loss_ft": leg.get("elev_loss_ft"),
                "net_elev_diff_ft": leg.get("net_elev_diff_ft"),
                "exchange_label": leg.get("exchange_label") or "",
                "exchange_url": leg.get("exchange_url") or "",
                "estimated_pace_override_spm": overrides[idx],
                "effective_pace_spm": paces[idx],
                "estimated_duration_sec": durations[idx],
                "initial_estimated_start": initial[idx],
                "updated_estimated_start": updated[idx],
                "actual_start_time": actual_starts[idx],
                "actual_duration_sec": act_duration,
                "actual_pace_spm": actual_pace,
                "delta_to_estimate_sec": delta_to_estimate(actual_starts[idx], initial[idx]),
                "estimated_van_stint_sec": stints["estimated"][idx],
                "actual_van_stint_sec": stints["actual"][idx],
                "is_override": is_override(overrides[idx], defaults[idx]),
            }
        )
    return rows


__all__ = [
    "LEG_COUNT",
    "RUNNER_COUNT",
    "LEGS_PER_VAN_STINT",
    "round_half_up",
    "van_for_leg",
    "effective_pace",
    "is_override",
    "estimated_durations",
    "initial_estimates",
    "updated_estimates",
    "actual_durations",
    "van_stints",
    "delta_to_estimate",
    "derive_schedule",
]
