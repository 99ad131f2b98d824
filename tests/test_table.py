import copy
from datetime import datetime, timezone

import pytest

from relaysheet.table import (
    SnapshotError,
    build_table,
    recompute_table,
    table_to_snapshot,
    validate_snapshot,
)


def snapshot_with_paces(memory_store, pace=480.0):
    for runner in memory_store["runners"].values():
        runner["default_estimated_pace_spm"] = pace
    return {
        "config": dict(memory_store["config"]),
        "runners": [memory_store["runners"][k] for k in sorted(memory_store["runners"])],
        "legs": [memory_store["legs"][k] for k in sorted(memory_store["legs"])],
        "leg_inputs": [memory_store["leg_inputs"][k] for k in sorted(memory_store["leg_inputs"])],
    }


def test_build_table_serializes_instants(memory_store):
    snap = snapshot_with_paces(memory_store)
    snap["config"]["race_start_time"] = "2026-08-28T13:00:00Z"
    snap["leg_inputs"][0]["actual_start_time"] = "2026-08-28T13:10:00.000Z"
    table = build_table(snap)

    rows = table["rows"]
    assert len(rows) == 36
    assert table["race_start_time"] == "2026-08-28T13:00:00Z"
    assert rows[0]["initial_estimated_start"] == "2026-08-28T13:00:00Z"
    assert rows[0]["actual_start_time"] == "2026-08-28T13:10:00Z"
    assert rows[1]["updated_estimated_start"] == "2026-08-28T13:50:00Z"
    assert rows[0]["delta_to_estimate_sec"] == 600
    assert table["next_leg"] == 2
    # Leg 36 starts 13:10 + 35 * 40min, finishes 40 minutes later
    assert table["estimated_finish_time"] == "2026-08-29T13:10:00Z"


def test_unparseable_timestamps_become_null(memory_store):
    snap = snapshot_with_paces(memory_store)
    snap["config"]["race_start_time"] = "half past nine"
    snap["leg_inputs"][4]["actual_start_time"] = "soon"
    table = build_table(snap)
    assert table["race_start_time"] is None
    assert table["rows"][4]["actual_start_time"] is None
    assert all(r["initial_estimated_start"] is None for r in table["rows"])


def test_estimated_finish_unknown_without_last_pace(memory_store):
    snap = snapshot_with_paces(memory_store)
    snap["config"]["race_start_time"] = "2026-08-28T13:00:00Z"
    snap["runners"][11]["default_estimated_pace_spm"] = None
    table = build_table(snap)
    assert table["estimated_finish_time"] is None


def test_next_leg_none_when_all_started(memory_store):
    snap = snapshot_with_paces(memory_store)
    for idx, item in enumerate(snap["leg_inputs"]):
        item["actual_start_time"] = f"2026-08-28T{6 + idx // 2:02d}:{(idx % 2) * 30:02d}:00Z"
    table = build_table(snap)
    assert table["next_leg"] is None


def test_heatmap_min_max(memory_store):
    memory_store["legs"][3]["leg_mileage"] = 7.25
    memory_store["legs"][9]["leg_mileage"] = 3.1
    memory_store["legs"][5]["elev_gain_ft"] = 812
    memory_store["legs"][6]["net_elev_diff_ft"] = -430
    table = build_table(snapshot_with_paces(memory_store))
    assert table["heatmap"]["mileage"] == {"min": 3.1, "max": 7.25}
    assert table["heatmap"]["elev_gain"] == {"min": 0, "max": 812}
    assert table["heatmap"]["elev_loss"] == {"min": 0, "max": 0}
    assert table["heatmap"]["net_elev_diff"] == {"min": -430, "max": 0}


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda s: s["legs"].pop(), "Expected 36 legs"),
        (lambda s: s["legs"].reverse(), "numbered 1..36"),
        (lambda s: s["legs"][4].update(runner_number=13), "outside 1..12"),
        (lambda s: s["runners"].pop(0), "unknown runner 1"),
        (lambda s: s["leg_inputs"].append({"leg": 37}), "unknown leg 37"),
    ],
)
def test_validate_snapshot_rejects_malformed_shapes(memory_store, mutate, message):
    snap = copy.deepcopy(snapshot_with_paces(memory_store))
    mutate(snap)
    with pytest.raises(SnapshotError, match=message):
        validate_snapshot(snap["legs"], snap["runners"], snap["leg_inputs"])


def test_recompute_matches_server_derivation(memory_store):
    snap = snapshot_with_paces(memory_store, pace=495.0)
    snap["config"]["race_start_time"] = "2026-08-28T13:00:00Z"
    snap["config"]["finish_time"] = "2026-08-29T19:00:00Z"
    snap["leg_inputs"][14]["estimated_pace_override_spm"] = 520.0
    snap["leg_inputs"][0]["actual_start_time"] = "2026-08-28T13:02:00Z"
    snap["leg_inputs"][1]["actual_start_time"] = "2026-08-28T13:44:31Z"
    snap["leg_inputs"][35]["actual_start_time"] = "2026-08-29T18:20:00Z"
    table = build_table(snap)

    assert recompute_table(table) == table
    assert build_table(table_to_snapshot(table)) == table


def test_recompute_picks_up_local_edit(memory_store):
    snap = snapshot_with_paces(memory_store)
    snap["config"]["race_start_time"] = "2026-08-28T13:00:00Z"
    table = build_table(snap)

    table["rows"][2]["actual_start_time"] = "2026-08-28T14:30:00Z"
    updated = recompute_table(table)
    assert updated["rows"][3]["updated_estimated_start"] == "2026-08-28T15:10:00Z"
    assert updated["rows"][2]["delta_to_estimate_sec"] == 600
    assert updated["next_leg"] == 1


def test_recompute_matches_server_with_sub_millisecond_starts(memory_store):
    snap = snapshot_with_paces(memory_store)
    snap["config"]["race_start_time"] = datetime(2026, 8, 28, 13, 0, tzinfo=timezone.utc)
    snap["leg_inputs"][0]["actual_start_time"] = datetime(2026, 8, 28, 13, 0, 0, 900, tzinfo=timezone.utc)
    snap["leg_inputs"][1]["actual_start_time"] = datetime(2026, 8, 28, 13, 10, 0, 500500, tzinfo=timezone.utc)
    table = build_table(snap)

    assert table["rows"][0]["actual_start_time"] == "2026-08-28T13:00:00Z"
    assert table["rows"][1]["actual_start_time"] == "2026-08-28T13:10:00.500Z"
    # 600.5 seconds once both starts are cut to milliseconds
    assert table["rows"][0]["actual_duration_sec"] == 601
    assert recompute_table(table) == table
