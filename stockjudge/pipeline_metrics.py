"""
Instrumentation counters and timing utilities for the judgement and chat pipelines.

Provides a lightweight PipelineMetrics context that tracks:
- LLM call counts (primary, secondary verifier, grounding)
- Yahoo collaborator calls
- Cache hit/miss counts
- Generation attempts and verifier failures
- Stage timings
"""

from __future__ import annotations
import time
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict

log = logging.getLogger("stockjudge.metrics")


class PipelineMetrics:
    """Mutable counter bag passed through a single pipeline run."""

    def __init__(self):
        self.llm_calls: int = 0
        self.secondary_llm_calls: int = 0
        self.grounding_calls: int = 0
        self.yahoo_calls: int = 0
        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.attempts: int = 0
        self.verifier_failures: int = 0
        self.source_failures: int = 0
        self.stage_timings: Dict[str, float] = {}
        self._stage_stack: Dict[str, float] = {}
        self._start = time.time()

    def start_stage(self, name: str) -> None:
        self._stage_stack[name] = time.time()

    def end_stage(self, name: str) -> None:
        t0 = self._stage_stack.pop(name, None)
        if t0 is not None:
            self.stage_timings[name] = (time.time() - t0) * 1000

    @contextmanager
    def stage(self, name: str):
        self.start_stage(name)
        try:
            yield
        finally:
            self.end_stage(name)

    def inc_llm(self, n: int = 1) -> None:
        self.llm_calls += n

    def inc_secondary(self, n: int = 1) -> None:
        self.secondary_llm_calls += n

    def inc_grounding(self, n: int = 1) -> None:
        self.grounding_calls += n

    def inc_yahoo(self, n: int = 1) -> None:
        self.yahoo_calls += n

    def inc_cache_hit(self) -> None:
        self.cache_hits += 1

    def inc_cache_miss(self) -> None:
        self.cache_misses += 1

    def inc_attempt(self) -> None:
        self.attempts += 1

    def inc_verifier_failure(self) -> None:
        self.verifier_failures += 1

    def inc_source_failure(self) -> None:
        self.source_failures += 1

    def total_elapsed_ms(self) -> float:
        return (time.time() - self._start) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "llm_calls": self.llm_calls,
            "secondary_llm_calls": self.secondary_llm_calls,
            "grounding_calls": self.grounding_calls,
            "yahoo_calls": self.yahoo_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "attempts": self.attempts,
            "verifier_failures": self.verifier_failures,
            "source_failures": self.source_failures,
            "stage_timings_ms": self.stage_timings,
            "total_elapsed_ms": self.total_elapsed_ms(),
        }

    def log_summary(self, run_id: str = "") -> None:
        d = self.to_dict()
        log.info(
            "pipeline_metrics run=%s llm=%d secondary=%d grounding=%d yahoo=%d "
            "cache_hits=%d cache_misses=%d attempts=%d verifier_failures=%d "
            "source_failures=%d total_ms=%.0f stages=%s",
            run_id, d["llm_calls"], d["secondary_llm_calls"], d["grounding_calls"],
            d["yahoo_calls"], d["cache_hits"], d["cache_misses"],
            d["attempts"], d["verifier_failures"], d["source_failures"],
            d["total_elapsed_ms"],
            {k: f"{v:.0f}ms" for k, v in d["stage_timings_ms"].items()},
        )


def count_calls(fn: Callable[..., Any], inc: Callable[[], None]) -> Callable[..., Any]:
    """Wrap a provider call so every invocation bumps one counter."""
    def call(*args, **kwargs):
        inc()
        return fn(*args, **kwargs)
    return call
