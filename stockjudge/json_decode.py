"""
Strict decoding of JSON-shaped LLM replies.

Every structured stage goes: call -> raw text -> decode_model() -> Ok | ParseError.
The caller decides whether a ParseError is fatal, degraded, or fail-closed.
"""

from __future__ import annotations
import json
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = ""


DecodeResult = Union[Ok[T], ParseError]


def extract_json_object(text: str) -> Optional[Any]:
    """Pull the outermost {...} out of an LLM reply, tolerating markdown fences."""
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass
    s = cleaned.find("{")
    e = cleaned.rfind("}")
    if s >= 0 and e > s:
        try:
            parsed = json.loads(cleaned[s:e + 1])
        except ValueError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def decode_model(raw: str, model: Type[T]) -> DecodeResult:
    obj = extract_json_object(raw)
    if obj is None:
        return ParseError("no_json_object", (raw or "")[:500])
    try:
        return Ok(model.model_validate(obj))
    except ValidationError as e:
        return ParseError(f"schema_mismatch: {e.error_count()} error(s)", (raw or "")[:500])
