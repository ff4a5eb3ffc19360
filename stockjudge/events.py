"""
Server-push event envelope shared by the judgement and chat pipelines.

Events are named (``event: status``) rather than typed inside the payload,
so the browser can attach one listener per stage.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator

log = logging.getLogger("stockjudge.events")


@dataclass
class PipelineEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False, default=str)
        return f"event: {self.type}\ndata: {payload}\n\n"


def status(stage: str, **extra: Any) -> PipelineEvent:
    return PipelineEvent("status", {"stage": stage, **extra})


def error(error_code: str, details: str) -> PipelineEvent:
    return PipelineEvent("error", {"error": error_code, "details": details})


def done(**extra: Any) -> PipelineEvent:
    return PipelineEvent("done", dict(extra))


def terminate_on_error(events: Iterator[PipelineEvent], error_code: str) -> Iterator[PipelineEvent]:
    """Pass events through; any exception becomes error{...} followed by done{}."""
    try:
        yield from events
    except Exception as e:
        log.exception("%s: %s", error_code, e)
        details = getattr(e, "details", "") or str(e) or type(e).__name__
        yield error(error_code, str(details))
        yield done()
