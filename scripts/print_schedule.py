"""Print the derived relay schedule from the configured PostgreSQL store.

Usage: DATABASE_URL=... python scripts/print_schedule.py [--json]
"""
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from relaysheet.datastore import load_snapshot  # type: ignore  # noqa: E402
from relaysheet.table import build_table  # type: ignore  # noqa: E402
from relaysheet.timeutil import format_friendly, format_hms, format_pace  # type: ignore  # noqa: E402


HEADERS = ["Leg", "Van", "Runner", "Miles", "Pace", "Est", "Initial", "Updated", "Actual", "Delta", "Stint"]


def format_rows(table: dict) -> list:
    lines = [" | ".join(HEADERS)]
    for row in table["rows"]:
        stint = row.get("actual_van_stint_sec")
        if stint is None:
            stint = row.get("estimated_van_stint_sec")
        lines.append(" | ".join([
            str(row["leg"]),
            str(row["van"]),
            row.get("runner_name") or "",
            f"{row['leg_mileage']:.2f}",
            format_pace(row.get("effective_pace_spm")) + ("*" if row.get("is_override") else ""),
            format_hms(row.get("estimated_duration_sec")),
            format_friendly(row.get("initial_estimated_start")),
            format_friendly(row.get("updated_estimated_start")),
            format_friendly(row.get("actual_start_time")),
            format_hms(row.get("delta_to_estimate_sec")),
            format_hms(stint) if stint is not None else "",
        ]))
    lines.append(f"Estimated finish: {format_friendly(table.get('estimated_finish_time'))}")
    if table.get("next_leg") is not None:
        lines.append(f"Next leg: {table['next_leg']}")
    return lines


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    table = build_table(load_snapshot())
    if "--json" in argv:
        print(json.dumps(table, indent=2))
    else:
        print("\n".join(format_rows(table)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
