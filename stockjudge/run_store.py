"""
In-memory run records.

Every streamed run is observed on its way to the client and its stage outputs
are kept under its run_id, so a finished judgement can be fetched again
without re-running the pipeline.
"""

from __future__ import annotations
import secrets
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterator, Optional

from stockjudge.events import PipelineEvent

MAX_STORED_RUNS = 200

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# event type -> key in the stored record
_RECORDED_EVENTS = {
    "rag": None,
    "rag_bundle": "rag",
    "signal": "signals",
    "story": "story",
    "market_check": "marketCheck",
    "peer_adjust": "peerAdjust",
    "final": "final",
    "error": "error",
}


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def new_run_id(kind: str) -> str:
    return f"{kind}_{_base36(int(time.time() * 1000))}_{secrets.token_hex(3)}"


class RunStore:
    """Bounded, thread-safe run_id -> record map. Oldest runs are evicted first."""

    def __init__(self, max_runs: int = MAX_STORED_RUNS):
        self._runs: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._max_runs = max_runs
        self._lock = threading.Lock()

    def save(self, run_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._runs[run_id] = record
            self._runs.move_to_end(run_id)
            while len(self._runs) > self._max_runs:
                self._runs.popitem(last=False)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._runs.get(run_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


def record_run(events: Iterator[PipelineEvent], store: RunStore, kind: str) -> Iterator[PipelineEvent]:
    """Pass events through unchanged, saving the run once the stream ends."""
    record: Dict[str, Any] = {"kind": kind, "status": "running", "created_at": time.time()}
    run_id = None
    try:
        for ev in events:
            if ev.type == "status" and ev.data.get("stage") == "start" and ev.data.get("run_id"):
                run_id = ev.data["run_id"]
                record["run_id"] = run_id
                record["prompt_v"] = ev.data.get("prompt_v")
            elif ev.type == "rag":
                record["input_hash"] = ev.data.get("input_hash")
                record["rag_meta"] = ev.data.get("rag_meta")
            elif ev.type in _RECORDED_EVENTS:
                key = _RECORDED_EVENTS[ev.type]
                value = ev.data if ev.type in ("final", "error") else next(iter(ev.data.values()), None)
                record[key] = value
            elif ev.type == "done":
                record["metrics"] = ev.data.get("metrics")
                record["status"] = "failed" if "error" in record else "completed"
            yield ev
    finally:
        if record["status"] == "running":
            record["status"] = "incomplete"
        if run_id:
            store.save(run_id, record)
