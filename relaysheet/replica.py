"""Local replica of the table for disconnected use.

The replica keeps the last known table and an ordered queue of pending
writes in an injected key-value ``storage``. Local edits are re-derived
through the same schedule engine as the server and queued; :meth:`replay`
sends the queue in order once a transport is available again.

Queue and cached table live in one storage document so that dropping
replayed items and caching the refreshed table happen in a single write.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from . import datastore as ds
from .schedule import RUNNER_COUNT
from .table import build_table, recompute_table
from .timeutil import to_iso
from .writes import (
    apply_write,
    validate_config,
    validate_leg,
    validate_leg_input,
    validate_pace,
)

logger = logging.getLogger(__name__)

STATE_KEY = "relaysheet-replica"


class ReplicaError(RuntimeError):
    pass


class ReplayResult(NamedTuple):
    sent: int
    failed: int


class MemoryStorage:
    """Dict-backed storage, mostly for tests and single-process use."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """One file per key under ``directory``; writes replace the file atomically."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def get(self, key: str) -> Optional[str]:
        try:
            with open(self._path(key), encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass


def store_transport(target: str, payload: Any) -> bool:
    """Apply a queued write directly to the store (server-side replay)."""
    apply_write(target, payload)
    return True


def store_fetch_table() -> Dict[str, Any]:
    return build_table(ds.load_snapshot())


def _queued(fields: Dict[str, Any], validated: Dict[str, Any]) -> Dict[str, Any]:
    """The caller's values for the fields that passed validation."""
    return {key: fields[key] for key in validated}


class LocalReplica:
    def __init__(
        self,
        storage,
        transport: Callable[[str, Any], bool] = store_transport,
        fetch_table: Callable[[], Dict[str, Any]] = store_fetch_table,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.transport = transport
        self.fetch_table = fetch_table
        self.clock = clock

    # -- persisted state --------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        raw = self.storage.get(STATE_KEY)
        if not raw:
            return {"ops": [], "table": None, "fetched_at": None}
        try:
            state = json.loads(raw)
        except ValueError:
            logger.warning("discarding unreadable replica state")
            return {"ops": [], "table": None, "fetched_at": None}
        state.setdefault("ops", [])
        state.setdefault("table", None)
        state.setdefault("fetched_at", None)
        return state

    def _save(self, state: Dict[str, Any]) -> None:
        self.storage.set(STATE_KEY, json.dumps(state))

    def pending(self) -> List[Dict[str, Any]]:
        return list(self._load()["ops"])

    def cached_table(self) -> Optional[Dict[str, Any]]:
        return self._load()["table"]

    def cache_table(self, table: Dict[str, Any], fetched_at: Optional[float] = None) -> None:
        state = self._load()
        state["table"] = table
        state["fetched_at"] = self.clock() if fetched_at is None else fetched_at
        self._save(state)

    def is_stale(self, fetched_at: float) -> bool:
        """True when a response is older than the table already cached."""
        current = self._load()["fetched_at"]
        return current is not None and fetched_at < current

    def enqueue(self, target: str, payload: Any) -> Dict[str, Any]:
        state = self._load()
        op = {"target": target, "payload": payload, "timestamp": self.clock()}
        state["ops"].append(op)
        self._save(state)
        return op

    # -- offline edits ----------------------------------------------------

    def _edit_rows(self, state: Dict[str, Any], edit: Callable[[Dict[str, Any]], None]) -> None:
        table = state.get("table")
        if not table:
            raise ReplicaError("No cached table to edit")
        for row in table["rows"]:
            edit(row)
        state["table"] = recompute_table(table)

    def _queue(self, state: Dict[str, Any], target: str, payload: Any, ts: float) -> None:
        state["ops"].append({"target": target, "payload": payload, "timestamp": ts})

    def apply_local_config(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        validated = validate_config(fields)
        state = self._load()
        table = state.get("table")
        if not table:
            raise ReplicaError("No cached table to edit")
        for key, value in validated.items():
            table[key] = to_iso(value)
        state["table"] = recompute_table(table)
        self._queue(state, "config", _queued(fields, validated), self.clock())
        self._save(state)
        return state["table"]

    def apply_local_leg(self, leg: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        num, validated = validate_leg(leg, fields)
        state = self._load()

        def edit(row):
            if row["leg"] == num:
                row.update(validated)

        self._edit_rows(state, edit)
        self._queue(state, f"legs/{num}", _queued(fields, validated), self.clock())
        self._save(state)
        return state["table"]

    def apply_local_leg_input(self, leg: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        num, validated = validate_leg_input(leg, fields)
        state = self._load()

        def edit(row):
            if row["leg"] != num:
                return
            if "estimated_pace_override_spm" in validated:
                row["estimated_pace_override_spm"] = validated["estimated_pace_override_spm"]
            if "actual_start_time" in validated:
                row["actual_start_time"] = to_iso(validated["actual_start_time"])

        self._edit_rows(state, edit)
        self._queue(state, f"leg-inputs/{num}", _queued(fields, validated), self.clock())
        self._save(state)
        return state["table"]

    def apply_local_pace(self, leg: Any, pace: Optional[float]) -> Dict[str, Any]:
        """Offline twin of the pace-edit cascade.

        First-rotation legs queue the runner default write and, when the leg
        carried an override, the dependent override clear.
        """
        leg = validate_pace(leg, pace)
        state = self._load()
        table = state.get("table")
        if not table:
            raise ReplicaError("No cached table to edit")
        row = next((r for r in table["rows"] if r["leg"] == leg), None)
        if row is None:
            raise ReplicaError(f"Unknown leg {leg}")
        ts = self.clock()

        if leg > RUNNER_COUNT:

            def edit_override(r):
                if r["leg"] == leg:
                    r["estimated_pace_override_spm"] = pace

            self._edit_rows(state, edit_override)
            self._queue(state, f"leg-inputs/{leg}", {"estimated_pace_override_spm": pace}, ts)
        else:
            runner_number = row["runner_number"]
            had_override = row.get("estimated_pace_override_spm") is not None

            def edit(r):
                if r["runner_number"] != runner_number:
                    return
                r["runner_default_pace_spm"] = pace
                if r["leg"] == leg:
                    r["estimated_pace_override_spm"] = None

            self._edit_rows(state, edit)
            self._queue(state, f"runners/{runner_number}", {"default_estimated_pace_spm": pace}, ts)
            if had_override:
                self._queue(state, f"leg-inputs/{leg}", {"estimated_pace_override_spm": None}, ts)
        self._save(state)
        return state["table"]

    def apply_local_reset_actuals(self) -> Dict[str, Any]:
        state = self._load()
        self._edit_rows(state, lambda r: r.update(actual_start_time=None))
        ts = self.clock()
        for row in state["table"]["rows"]:
            self._queue(state, f"leg-inputs/{row['leg']}", {"actual_start_time": None}, ts)
        self._save(state)
        return state["table"]

    # -- sync -------------------------------------------------------------

    def refresh(self) -> Dict[str, Any]:
        table = self.fetch_table()
        self.cache_table(table)
        return table

    def replay(self) -> ReplayResult:
        """Send queued writes in enqueue order, then refresh from the server.

        Failed items stay queued, in their original order, for the next
        attempt. If the refresh itself fails the queue is left untouched;
        writes are idempotent per field so re-sending them is safe.
        """
        ops = self.pending()
        if not ops:
            return ReplayResult(0, 0)

        failed: List[Dict[str, Any]] = []
        for op in ops:
            try:
                ok = bool(self.transport(op["target"], op["payload"]))
            except Exception:
                logger.exception("replay of %s failed", op.get("target"))
                ok = False
            if not ok:
                failed.append(op)

        table = self.fetch_table()
        state = self._load()
        # Keep anything enqueued while the replay was running
        state["ops"] = failed + state["ops"][len(ops):]
        state["table"] = table
        state["fetched_at"] = self.clock()
        self._save(state)
        logger.info("replayed offline writes sent=%s failed=%s", len(ops) - len(failed), len(failed))
        return ReplayResult(len(ops) - len(failed), len(failed))


__all__ = [
    "ReplicaError",
    "ReplayResult",
    "MemoryStorage",
    "JsonFileStorage",
    "LocalReplica",
    "store_transport",
    "store_fetch_table",
]
