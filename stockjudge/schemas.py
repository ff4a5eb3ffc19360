"""
Stage output contracts and HTTP request bodies.
"""

from __future__ import annotations
import re
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

AGREE = "동의"
PARTIAL = "부분 동의"
DISAGREE = "불일치"

# Keys are lowercased with whitespace, "_" and "-" removed.
_AGREEMENT_ALIASES = {
    "동의": AGREE,
    "agree": AGREE,
    "agreement": AGREE,
    "부분동의": PARTIAL,
    "partial": PARTIAL,
    "partiallyagree": PARTIAL,
    "partialagreement": PARTIAL,
    "불일치": DISAGREE,
    "disagree": DISAGREE,
    "disagreement": DISAGREE,
    "mismatch": DISAGREE,
}


def _as_text(v: Any) -> str:
    if v is None:
        return ""
    return v if isinstance(v, str) else str(v)


def _as_text_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, (str, dict)):
        v = [v]
    return [_as_text(x) for x in v if x is not None]


# ---------------------------------------------------------------------------
# Judgement stages
# ---------------------------------------------------------------------------

class Signals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    financial_signal: str = ""
    event_signal: str = ""
    market_signal: str = ""
    peer_signal: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        return _as_text(v)


class MarketCheck(BaseModel):
    agreement: Literal["동의", "부분 동의", "불일치"]
    reason: str = ""

    @field_validator("agreement", mode="before")
    @classmethod
    def _normalize(cls, v):
        text = _as_text(v).strip()
        return _AGREEMENT_ALIASES.get(re.sub(r"[\s_-]+", "", text).lower(), text)

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, v):
        return _as_text(v)


class PeerAdjust(BaseModel):
    adjustment: str
    industry_vs_company: str = ""

    @field_validator("adjustment", "industry_vs_company", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        return _as_text(v)


# ---------------------------------------------------------------------------
# Verifiers
# ---------------------------------------------------------------------------

class Violation(BaseModel):
    type: str = ""
    sentence: str = ""
    reason: str = ""

    @field_validator("type", "sentence", "reason", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        return _as_text(v)


class PolicyVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    verdict: Literal["PASS", "WARN", "FAIL"]
    violations: List[Violation] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    suggestion: str = Field(default="", validation_alias=AliasChoices("suggestion", "rewrite_hint"))

    @field_validator("verdict", mode="before")
    @classmethod
    def _upper(cls, v):
        return _as_text(v).strip().upper()

    @field_validator("violations", mode="before")
    @classmethod
    def _violations(cls, v):
        if v is None:
            return []
        out = []
        for item in v if isinstance(v, list) else [v]:
            out.append(item if isinstance(item, dict) else {"type": "", "sentence": _as_text(item), "reason": ""})
        return out

    @field_validator("reasons", mode="before")
    @classmethod
    def _reasons(cls, v):
        return _as_text_list(v)

    @field_validator("suggestion", mode="before")
    @classmethod
    def _suggestion(cls, v):
        return _as_text(v)

    @property
    def passed(self) -> bool:
        return self.verdict == "PASS"

    def issues(self) -> List[str]:
        items = [f"{v.type}: {v.sentence} ({v.reason})".strip() for v in self.violations]
        return items + list(self.reasons)


class ConsistencyVerdict(BaseModel):
    ok: bool
    numeric_or_period_issues: List[str] = Field(default_factory=list)
    logic_direction_issues: List[str] = Field(default_factory=list)
    notes: str = ""

    @field_validator("numeric_or_period_issues", "logic_direction_issues", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_text_list(v)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, v):
        return _as_text(v)

    @property
    def has_issues(self) -> bool:
        return bool(self.numeric_or_period_issues or self.logic_direction_issues)


class ChatConsistencyVerdict(BaseModel):
    has_numbers: bool
    risk_phrases: List[str] = Field(default_factory=list)
    format_issues: List[str] = Field(default_factory=list)

    @field_validator("risk_phrases", "format_issues", mode="before")
    @classmethod
    def _lists(cls, v):
        return _as_text_list(v)


# ---------------------------------------------------------------------------
# Chat grounding
# ---------------------------------------------------------------------------

class GroundingSource(BaseModel):
    title: str = ""
    url: str = ""

    @field_validator("title", "url", mode="before")
    @classmethod
    def _coerce_text(cls, v):
        return _as_text(v)


class Grounding(BaseModel):
    topics: List[str] = Field(default_factory=list)
    sources: List[GroundingSource] = Field(default_factory=list)
    notes: str = ""

    @field_validator("topics", mode="before")
    @classmethod
    def _topics(cls, v):
        return _as_text_list(v)

    @field_validator("sources", mode="before")
    @classmethod
    def _sources(cls, v):
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, dict)]

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, v):
        return _as_text(v)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class JudgeRequest(BaseModel):
    symbol: str = "NASDAQ:AAPL"
    question: Optional[str] = ""


class ChatRequest(BaseModel):
    symbol: str = "NASDAQ:AAPL"
    interval: str = "D"
    view: str = "chart"
    question: Optional[str] = ""
    ohlcv: Optional[str] = None
    screener: Optional[str] = None
    consensus: Optional[str] = None
