"""
Single-call LLM stages of the judgement and chat pipelines.

Every stage takes its inputs explicitly plus an injected ``call_llm(prompt,
system, max_tokens) -> str``; nothing here touches a provider or global state.
Structured stages decode through json_decode and decide per stage whether a
ParseError is fatal (signal extraction) or degraded (market, peer, grounding).
"""

from __future__ import annotations
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from stockjudge import prompts as P
from stockjudge.documents import RagBundle, bundle_for_prompt, bundle_reference
from stockjudge.guardrails import has_numbers
from stockjudge.json_decode import Ok, decode_model
from stockjudge.retry_controller import VerifierFeedback
from stockjudge.schemas import PARTIAL, Grounding, MarketCheck, PeerAdjust, Signals

log = logging.getLogger("stockjudge.stages")

CallLLM = Callable[[str, str, int], str]

SIGNAL_MAX_TOKENS = 700
STORY_MAX_TOKENS = 700
MARKET_MAX_TOKENS = 450
PEER_MAX_TOKENS = 550
FINAL_MAX_TOKENS = 1400
GROUNDING_MAX_TOKENS = 700
EXPLAIN_MAX_TOKENS = 900

STORY_MAX_ATTEMPTS = 2
MAX_GROUNDING_TOPICS = 12
MAX_GROUNDING_SOURCES = 8

MARKET_PARSE_FALLBACK_REASON = "JSON 파싱 실패로 보수적으로 처리"

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


class PipelineError(Exception):
    """A stage failure that aborts the run."""


class SignalExtractionError(PipelineError):
    def __init__(self, reason: str, raw: str = ""):
        super().__init__(f"Signal JSON parse failed: {reason}")
        self.reason = reason
        self.raw = raw


# ---------------------------------------------------------------------------
# Judgement stages
# ---------------------------------------------------------------------------

def extract_signals(symbol: str, question: str, bundle: RagBundle, *, call_llm: CallLLM) -> Signals:
    """Reduce the full bundle to four hedged signal strings. Unparseable output is fatal."""
    prompt = P.build_signal_prompt(symbol, question, bundle_for_prompt(bundle))
    raw = call_llm(prompt, P.SYSTEM_SIGNAL_EXTRACTION, SIGNAL_MAX_TOKENS)
    result = decode_model(raw, Signals)
    if isinstance(result, Ok):
        return result.value
    log.error("signal extraction returned unusable output: %s", result.reason)
    raise SignalExtractionError(result.reason, result.raw)


def link_story(symbol: str, signals: Signals, *, call_llm: CallLLM) -> str:
    """Cause-effect bullets from the signals.

    A whitespace-only reply is retried once; if it is still empty a hedged
    placeholder is used so downstream stages never see an empty story.
    """
    prompt = P.build_story_prompt(symbol, signals.model_dump())
    for attempt in range(1, STORY_MAX_ATTEMPTS + 1):
        story = (call_llm(prompt, P.SYSTEM_STORY_LINKING, STORY_MAX_TOKENS) or "").strip()
        if story:
            return story
        log.warning("story linker returned empty text (attempt %d/%d)", attempt, STORY_MAX_ATTEMPTS)
    return P.EMPTY_STORY_PLACEHOLDER


def check_market_agreement(symbol: str, signals: Signals, story: str, *, call_llm: CallLLM) -> MarketCheck:
    prompt = P.build_market_prompt(symbol, signals.market_signal, story)
    raw = call_llm(prompt, P.SYSTEM_MARKET_AGREEMENT, MARKET_MAX_TOKENS)
    result = decode_model(raw, MarketCheck)
    if isinstance(result, Ok):
        return result.value
    log.warning("market check parse failed (%s); using conservative default", result.reason)
    return MarketCheck(agreement=PARTIAL, reason=MARKET_PARSE_FALLBACK_REASON)


def adjust_for_peers(symbol: str, signals: Signals, story: str, *, call_llm: CallLLM) -> PeerAdjust:
    prompt = P.build_peer_prompt(symbol, signals.peer_signal, story)
    raw = call_llm(prompt, P.SYSTEM_PEER_ADJUSTMENT, PEER_MAX_TOKENS)
    result = decode_model(raw, PeerAdjust)
    if isinstance(result, Ok):
        return result.value
    log.warning("peer adjust parse failed (%s); passing raw text through", result.reason)
    return PeerAdjust(adjustment=raw or "", industry_vs_company="")


def generate_final_judgement(
    symbol: str,
    signals: Signals,
    story: str,
    market_check: MarketCheck,
    peer_adjust: PeerAdjust,
    bundle: RagBundle,
    feedback: Optional[VerifierFeedback] = None,
    *,
    call_llm: CallLLM,
) -> str:
    prompt = P.build_final_prompt(
        symbol,
        signals.model_dump(),
        story,
        market_check.model_dump(),
        peer_adjust.model_dump(),
        bundle_reference(bundle),
        feedback,
    )
    return call_llm(prompt, P.SYSTEM_FINAL_JUDGEMENT, FINAL_MAX_TOKENS) or ""


# ---------------------------------------------------------------------------
# Chat stages
# ---------------------------------------------------------------------------

def sanitize_grounding(g: Grounding) -> Grounding:
    """Drop anything numeric and non-http from a grounding reply."""
    topics = [t.strip() for t in g.topics if t.strip() and not has_numbers(t)][:MAX_GROUNDING_TOPICS]
    sources = [s for s in g.sources if _HTTP_URL.match(s.url or "")][:MAX_GROUNDING_SOURCES]
    notes = "" if has_numbers(g.notes) else g.notes
    return Grounding(topics=topics, sources=[s.model_dump() for s in sources], notes=notes)


def collect_grounding(
    symbol: str,
    view: str,
    question: str,
    *,
    call_grounding: Optional[CallLLM],
) -> Grounding:
    """Topic/source collection. Never aborts the chat run."""
    if call_grounding is None:
        return Grounding(notes="자료 수집 단계가 설정되지 않았습니다.")
    prompt = P.build_grounding_prompt(symbol, view, question)
    try:
        raw = call_grounding(prompt, P.SYSTEM_GROUNDING, GROUNDING_MAX_TOKENS)
    except Exception as e:
        log.warning("grounding call failed: %s", e)
        return Grounding(notes="자료 수집 호출에 실패했습니다.")
    result = decode_model(raw, Grounding)
    if not isinstance(result, Ok):
        log.warning("grounding parse failed: %s", result.reason)
        return Grounding(notes="자료 수집 결과를 해석하지 못했습니다.")
    return sanitize_grounding(result.value)


def explain_draft(
    symbol: str,
    interval: str,
    view: str,
    question: str,
    grounding: Grounding,
    context: Dict[str, Any],
    feedback: Optional[VerifierFeedback] = None,
    *,
    call_llm: CallLLM,
) -> str:
    prompt = P.build_explain_prompt(
        symbol,
        interval,
        view,
        question,
        grounding.model_dump(),
        has_ohlcv=bool(context.get("ohlcv")),
        has_screener=bool(context.get("screener")),
        has_consensus=bool(context.get("consensus")),
        feedback=feedback,
    )
    return (call_llm(prompt, P.SYSTEM_EXPLAIN, EXPLAIN_MAX_TOKENS) or "").strip()


def grounding_sources(g: Grounding) -> List[Dict[str, str]]:
    return [s.model_dump() for s in g.sources]
