"""
Research-judgement pipeline.

  collect -> bundle -> signal_extract -> story_link
          -> (market_check || peer_adjust)
          -> final_judgement <-> verify   (bounded retry, emit-anyway)

Each stage's output is threaded explicitly into the next and is also emitted
as its own event. Errors are not caught here; terminate_on_error() turns them
into error/done events for the stream.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Generator, Optional

from stockjudge import prompts as P
from stockjudge import stages
from stockjudge.collector import DocumentCollector
from stockjudge.documents import build_rag_bundle, compute_input_hash, minimize_rag_bundle
from stockjudge.events import PipelineEvent, done, status
from stockjudge.llm_client import LLMClient
from stockjudge.pipeline_metrics import PipelineMetrics, count_calls
from stockjudge.retry_controller import DEFAULT_MAX_ATTEMPTS, GuardedGenerator, TerminalPolicy
from stockjudge.run_store import new_run_id
from stockjudge.verifiers import verify_judgement

log = logging.getLogger("stockjudge.judge")

JUDGE_ERROR_CODE = "judge_stream_failed"


def run_judge_pipeline(
    symbol: str,
    question: str = "",
    *,
    llm: LLMClient,
    collector: DocumentCollector,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    run_id: Optional[str] = None,
    metrics: Optional[PipelineMetrics] = None,
) -> Generator[PipelineEvent, None, None]:
    run_id = run_id or new_run_id("judge")
    metrics = metrics or PipelineMetrics()
    question = question or ""

    yield status("start", run_id=run_id, prompt_v=P.JUDGE_PROMPT_VERSION)

    # 1) documents
    yield status("collect")
    with metrics.stage("collect"):
        collected = collector.collect(symbol, metrics=metrics)
    bundle = build_rag_bundle(symbol, collected.documents)
    input_hash = compute_input_hash(symbol, question, bundle)
    rag_meta = {**bundle.meta(), "failures": dict(collected.failures)}
    yield PipelineEvent("rag", {"run_id": run_id, "input_hash": input_hash, "rag_meta": rag_meta})
    yield PipelineEvent("rag_bundle", {"rag": minimize_rag_bundle(bundle).to_dict()})

    if not llm.primary_available:
        log.warning("run %s: no primary LLM configured; emitting notice", run_id)
        yield PipelineEvent("final", {
            "run_id": run_id,
            "input_hash": input_hash,
            "answer": P.ensure_disclaimer(P.NO_PRIMARY_LLM_ANSWER),
            "verifier": None,
        })
        metrics.log_summary(run_id)
        yield done(metrics=metrics.to_dict())
        return

    call_llm = count_calls(llm.chat, metrics.inc_llm)
    call_verifier = count_calls(llm.verifier_chat, metrics.inc_llm)
    call_secondary = count_calls(llm.secondary, metrics.inc_secondary) if llm.secondary_available else None

    # 2) signals
    yield status("signal_extract")
    with metrics.stage("signal_extract"):
        signals = stages.extract_signals(symbol, question, bundle, call_llm=call_llm)
    yield PipelineEvent("signal", {"signals": signals.model_dump()})

    # 3) story
    yield status("story_link")
    with metrics.stage("story_link"):
        story = stages.link_story(symbol, signals, call_llm=call_llm)
    yield PipelineEvent("story", {"story": story})

    # 4) market check and peer adjustment are independent given the story
    yield status("market_check")
    with ThreadPoolExecutor(max_workers=2) as pool:
        market_f = pool.submit(stages.check_market_agreement, symbol, signals, story, call_llm=call_llm)
        peer_f = pool.submit(stages.adjust_for_peers, symbol, signals, story, call_llm=call_llm)
        market_check = market_f.result()
        yield PipelineEvent("market_check", {"marketCheck": market_check.model_dump()})
        yield status("peer_adjust")
        peer_adjust = peer_f.result()
        yield PipelineEvent("peer_adjust", {"peerAdjust": peer_adjust.model_dump()})

    # 5) final judgement with verification
    controller = GuardedGenerator(
        generate=lambda attempt, feedback: stages.generate_final_judgement(
            symbol, signals, story, market_check, peer_adjust, bundle, feedback, call_llm=call_llm,
        ),
        verify=lambda draft: verify_judgement(draft, call_llm=call_verifier, call_secondary=call_secondary),
        terminal_policy=TerminalPolicy.EMIT_ANYWAY,
        max_attempts=max_attempts,
        generate_stage="final_judgement",
        verify_stage="verify",
        metrics=metrics,
    )
    with metrics.stage("final_judgement"):
        outcome = yield from controller.run()

    details = outcome.verification.details if outcome.verification else {}
    yield PipelineEvent("final", {
        "run_id": run_id,
        "input_hash": input_hash,
        "answer": P.ensure_disclaimer(outcome.text),
        "verifier": {"policy": details.get("policy"), "consistency": details.get("consistency")},
        "attempts": outcome.attempts,
        "passed": outcome.passed,
    })
    metrics.log_summary(run_id)
    yield done(metrics=metrics.to_dict())
