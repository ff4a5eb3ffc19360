"""StockJudge API routes.

Streaming endpoints for the judgement and chat pipelines, plus run lookup
and a health check. Collaborators are resolved through FastAPI dependencies
so tests can swap in fakes with ``app.dependency_overrides``.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from stockjudge.chat_pipeline import CHAT_ERROR_CODE, run_chat_pipeline
from stockjudge.collector import DocumentCollector
from stockjudge.config import Settings
from stockjudge.events import PipelineEvent, terminate_on_error
from stockjudge.judge_pipeline import JUDGE_ERROR_CODE, run_judge_pipeline
from stockjudge.llm_client import LLMClient
from stockjudge.retry_controller import DEFAULT_MAX_ATTEMPTS
from stockjudge.run_store import RunStore, record_run
from stockjudge.schemas import ChatRequest, JudgeRequest
from stockjudge.ttl_cache import TTLCache
from stockjudge.yahoo_client import YahooClient, is_safe_symbol, to_yahoo_symbol

router = APIRouter(prefix="/api", tags=["stockjudge"])

MAX_QUESTION_CHARS = 2000
MAX_CONTEXT_CHARS = 200_000
MAX_CONSENSUS_CHARS = 12_000
MAX_SHORT_FIELD_CHARS = 16

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_llm() -> LLMClient:
    return LLMClient(get_settings())


@lru_cache(maxsize=1)
def get_collector() -> DocumentCollector:
    s = get_settings()
    return DocumentCollector(YahooClient(cache=TTLCache(default_ttl=300), timeout=s.http_timeout_seconds))


@lru_cache(maxsize=1)
def get_run_store() -> RunStore:
    return RunStore()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def clamp(value, max_chars: int) -> str:
    return str(value or "")[:max_chars]


def resolve_symbol(raw: str) -> str:
    """Map a TradingView-style symbol to the data-provider symbol, or 400."""
    symbol = to_yahoo_symbol(raw)
    if not is_safe_symbol(symbol):
        raise HTTPException(status_code=400, detail="Invalid symbol")
    return symbol


def sse_response(events: Iterator[PipelineEvent]) -> StreamingResponse:
    def event_stream():
        for event in events:
            yield event.to_sse()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Judgement (SSE Stream)
# ---------------------------------------------------------------------------

@router.post("/judge_stream")
def api_judge_stream(
    req: JudgeRequest,
    settings: Settings = Depends(get_settings),
    llm: LLMClient = Depends(get_llm),
    collector: DocumentCollector = Depends(get_collector),
    store: RunStore = Depends(get_run_store),
):
    """Run the staged judgement pipeline for one symbol as a server-sent event stream."""
    symbol = resolve_symbol(req.symbol)
    question = clamp(req.question, MAX_QUESTION_CHARS)
    events = run_judge_pipeline(
        symbol, question, llm=llm, collector=collector, max_attempts=settings.max_attempts,
    )
    return sse_response(record_run(terminate_on_error(events, JUDGE_ERROR_CODE), store, "judge"))


# ---------------------------------------------------------------------------
# Chat (SSE Stream)
# ---------------------------------------------------------------------------

@router.post("/chat_stream")
def api_chat_stream(
    req: ChatRequest,
    settings: Settings = Depends(get_settings),
    llm: LLMClient = Depends(get_llm),
    store: RunStore = Depends(get_run_store),
):
    symbol = resolve_symbol(req.symbol)
    context = {
        "ohlcv": clamp(req.ohlcv, MAX_CONTEXT_CHARS),
        "screener": clamp(req.screener, MAX_CONTEXT_CHARS),
        "consensus": clamp(req.consensus, MAX_CONSENSUS_CHARS),
    }
    events = run_chat_pipeline(
        symbol,
        clamp(req.question, MAX_QUESTION_CHARS),
        llm=llm,
        interval=clamp(req.interval or "D", MAX_SHORT_FIELD_CHARS),
        view=clamp(req.view or "chart", MAX_SHORT_FIELD_CHARS),
        context=context,
        max_attempts=settings.max_attempts,
    )
    return sse_response(record_run(terminate_on_error(events, CHAT_ERROR_CODE), store, "chat"))


# ---------------------------------------------------------------------------
# Runs / health
# ---------------------------------------------------------------------------

@router.get("/runs/{run_id}")
def api_get_run(run_id: str, store: RunStore = Depends(get_run_store)):
    record = store.get(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.get("/health")
def api_health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "service": "stockjudge",
        "primary_llm": settings.primary_llm_enabled,
        "openai_model": settings.openai_model if settings.openai_api_key else None,
        "anthropic": bool(settings.anthropic_api_key),
        "secondary_llm": settings.secondary_llm_enabled,
        "grounding": settings.grounding_enabled,
        "max_attempts": min(settings.max_attempts, DEFAULT_MAX_ATTEMPTS),
    }
