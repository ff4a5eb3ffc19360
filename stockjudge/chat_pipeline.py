"""
Chat-answer pipeline: grounding -> explain <-> (local gate, verify) -> final.

Unlike the judgement pipeline, a draft that still fails after the last attempt
is never shown: it is replaced by fixed safe text that only lists the
grounding links.
"""

from __future__ import annotations
import logging
from typing import Dict, Generator, List, Optional

from stockjudge import prompts as P
from stockjudge import stages
from stockjudge.events import PipelineEvent, done, status
from stockjudge.guardrails import local_gate_issues
from stockjudge.llm_client import LLMClient
from stockjudge.pipeline_metrics import PipelineMetrics, count_calls
from stockjudge.retry_controller import DEFAULT_MAX_ATTEMPTS, GuardedGenerator, TerminalPolicy
from stockjudge.run_store import new_run_id
from stockjudge.verifiers import verify_chat

log = logging.getLogger("stockjudge.chat")

CHAT_ERROR_CODE = "chat_stream_failed"


def chat_local_gate(draft: str) -> List[str]:
    if not (draft or "").strip():
        return ["empty_draft"]
    return local_gate_issues(draft)


def run_chat_pipeline(
    symbol: str,
    question: str,
    *,
    llm: LLMClient,
    interval: str = "D",
    view: str = "chart",
    context: Optional[Dict[str, str]] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    run_id: Optional[str] = None,
    metrics: Optional[PipelineMetrics] = None,
) -> Generator[PipelineEvent, None, None]:
    run_id = run_id or new_run_id("chat")
    metrics = metrics or PipelineMetrics()
    context = context or {}
    question = question or ""

    yield status("start", run_id=run_id)

    yield status("grounding")
    call_grounding = count_calls(llm.grounding, metrics.inc_grounding) if llm.grounding_available else None
    with metrics.stage("grounding"):
        grounding = stages.collect_grounding(symbol, view, question, call_grounding=call_grounding)
    sources = stages.grounding_sources(grounding)

    def fallback() -> str:
        return P.chat_safe_fallback(sources)

    verifier = None
    attempts = 0
    if not llm.primary_available:
        log.warning("run %s: no primary LLM configured; answering with safe fallback", run_id)
        answer, fallback_used = fallback(), True
    else:
        call_llm = count_calls(llm.chat, metrics.inc_llm)
        call_verifier = count_calls(llm.verifier_chat, metrics.inc_llm)
        call_secondary = count_calls(llm.secondary, metrics.inc_secondary) if llm.secondary_available else None

        controller = GuardedGenerator(
            generate=lambda attempt, feedback: stages.explain_draft(
                symbol, interval, view, question, grounding, context, feedback, call_llm=call_llm,
            ),
            verify=lambda draft: verify_chat(draft, call_llm=call_verifier, call_secondary=call_secondary),
            local_gate=chat_local_gate,
            terminal_policy=TerminalPolicy.SUBSTITUTE,
            fallback=fallback,
            max_attempts=max_attempts,
            generate_stage="explain",
            verify_stage="verify",
            metrics=metrics,
        )
        with metrics.stage("explain"):
            outcome = yield from controller.run()
        answer, fallback_used, attempts = outcome.text, outcome.fallback_used, outcome.attempts
        if outcome.verification:
            verifier = outcome.verification.details or None

    yield PipelineEvent("final", {
        "run_id": run_id,
        "answer": f"{answer}{P.CHAT_DISCLAIMER}",
        "grounding": {"sources": sources},
        "verifier": verifier,
        "attempts": attempts,
        "fallback_used": fallback_used,
    })
    metrics.log_summary(run_id)
    yield done(metrics=metrics.to_dict())
