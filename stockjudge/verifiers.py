"""
Dual verification of generated text.

Judgement: policy verifier (primary LLM) + consistency verifier (Gemini, or a
disabled no-op). Chat: policy verifier + consistency verifier (Gemini, or the
regex detectors). Both pairs run concurrently and are fail-closed: a verifier
that cannot be called or parsed never lets a draft through silently.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from stockjudge import prompts as P
from stockjudge.guardrails import (
    has_disallowed_analysis_word, has_disallowed_finance_advice, has_numbers,
)
from stockjudge.json_decode import Ok, decode_model
from stockjudge.retry_controller import VerificationResult, VerifierFeedback
from stockjudge.schemas import ChatConsistencyVerdict, ConsistencyVerdict, PolicyVerdict

log = logging.getLogger("stockjudge.verifiers")

CallLLM = Callable[[str, str, int], str]
CallSecondary = Callable[[str, int], str]

POLICY_MAX_TOKENS = 450
CONSISTENCY_MAX_TOKENS = 450

REWRITE_HINT = "출력 재작성 필요"


# ---------------------------------------------------------------------------
# Judgement verifiers
# ---------------------------------------------------------------------------

def verify_policy(draft: str, *, call_llm: CallLLM) -> PolicyVerdict:
    try:
        raw = call_llm(P.build_policy_prompt(draft), P.SYSTEM_POLICY_VERIFIER, POLICY_MAX_TOKENS)
    except Exception as e:
        log.warning("policy verifier call failed: %s", e)
        return PolicyVerdict(verdict="FAIL", reasons=["policy_verifier_call_failed"], suggestion=REWRITE_HINT)
    result = decode_model(raw, PolicyVerdict)
    if isinstance(result, Ok):
        return result.value
    log.warning("policy verifier parse failed: %s", result.reason)
    return PolicyVerdict(verdict="FAIL", reasons=["policy_verifier_parse_failed"], suggestion=REWRITE_HINT)


def verify_consistency(draft: str, *, call_secondary: Optional[CallSecondary]) -> ConsistencyVerdict:
    if call_secondary is None:
        return ConsistencyVerdict(ok=True, notes="GEMINI_API_KEY 미설정으로 Gemini 검증 생략")
    try:
        raw = call_secondary(P.build_consistency_prompt(draft), CONSISTENCY_MAX_TOKENS)
    except Exception as e:
        log.warning("consistency verifier call failed: %s", e)
        return ConsistencyVerdict(ok=False, numeric_or_period_issues=["gemini_call_failed"], notes=str(e)[:200])
    result = decode_model(raw, ConsistencyVerdict)
    if isinstance(result, Ok):
        return result.value
    log.warning("consistency verifier parse failed: %s", result.reason)
    return ConsistencyVerdict(ok=False, numeric_or_period_issues=["gemini_parse_failed"])


def judgement_failed(policy: PolicyVerdict, consistency: ConsistencyVerdict) -> bool:
    """fail = policy != PASS, or (consistency not ok AND it lists at least one issue)."""
    if consistency.ok and consistency.has_issues:
        log.warning(
            "consistency verifier returned ok=true with issues; treated as passing: %s",
            consistency.numeric_or_period_issues + consistency.logic_direction_issues,
        )
    consistency_fail = (not consistency.ok) and consistency.has_issues
    return (not policy.passed) or consistency_fail


def verify_judgement(
    draft: str,
    *,
    call_llm: CallLLM,
    call_secondary: Optional[CallSecondary],
) -> VerificationResult:
    with ThreadPoolExecutor(max_workers=2) as pool:
        policy_f = pool.submit(verify_policy, draft, call_llm=call_llm)
        consistency_f = pool.submit(verify_consistency, draft, call_secondary=call_secondary)
        policy = policy_f.result()
        consistency = consistency_f.result()

    failed = judgement_failed(policy, consistency)
    feedback = VerifierFeedback()
    if failed:
        consistency_issues: List[str] = []
        if not consistency.ok:
            consistency_issues = [f"수치/기간: {i}" for i in consistency.numeric_or_period_issues]
            consistency_issues += [f"논리: {i}" for i in consistency.logic_direction_issues]
        feedback = VerifierFeedback(
            policy_issues=[] if policy.passed else (policy.issues() or [f"verdict={policy.verdict}"]),
            consistency_issues=consistency_issues,
            rewrite_hint="" if policy.passed else policy.suggestion,
        )
    return VerificationResult(
        failed=failed,
        feedback=feedback,
        details={"policy": policy.model_dump(), "consistency": consistency.model_dump()},
    )


# ---------------------------------------------------------------------------
# Chat verifiers
# ---------------------------------------------------------------------------

def verify_chat_policy(draft: str, *, call_llm: Optional[CallLLM]) -> PolicyVerdict:
    if call_llm is None:
        return PolicyVerdict(verdict="WARN", suggestion="OPENAI_API_KEY 없음")
    try:
        raw = call_llm(P.build_policy_prompt(draft), P.SYSTEM_CHAT_POLICY_VERIFIER, POLICY_MAX_TOKENS)
    except Exception as e:
        log.warning("chat policy verifier call failed: %s", e)
        return PolicyVerdict(verdict="WARN", suggestion=f"검증기 호출 실패: {e}"[:300])
    result = decode_model(raw, PolicyVerdict)
    if isinstance(result, Ok):
        return result.value
    log.warning("chat policy verifier parse failed: %s", result.reason)
    return PolicyVerdict(verdict="WARN", suggestion="검증기 JSON 파싱 실패")


def regex_chat_consistency(draft: str) -> ChatConsistencyVerdict:
    risk = []
    if has_disallowed_finance_advice(draft):
        risk.append("finance_advice_like")
    if has_disallowed_analysis_word(draft):
        risk.append("analysis_word")
    return ChatConsistencyVerdict(has_numbers=has_numbers(draft), risk_phrases=risk)


def verify_chat_consistency(draft: str, *, call_secondary: Optional[CallSecondary]) -> ChatConsistencyVerdict:
    if call_secondary is None:
        return regex_chat_consistency(draft)
    try:
        raw = call_secondary(P.build_chat_consistency_prompt(draft), CONSISTENCY_MAX_TOKENS)
    except Exception as e:
        log.warning("chat consistency verifier call failed: %s", e)
        return ChatConsistencyVerdict(has_numbers=True, risk_phrases=["gemini_call_failed"])
    result = decode_model(raw, ChatConsistencyVerdict)
    if isinstance(result, Ok):
        return result.value
    return ChatConsistencyVerdict(has_numbers=True, risk_phrases=["gemini_parse_failed"])


def chat_failed(draft: str, policy: PolicyVerdict, consistency: ChatConsistencyVerdict) -> bool:
    return (
        policy.verdict == "FAIL"
        or consistency.has_numbers
        or has_disallowed_finance_advice(draft)
        or has_disallowed_analysis_word(draft)
    )


def verify_chat(
    draft: str,
    *,
    call_llm: Optional[CallLLM],
    call_secondary: Optional[CallSecondary],
) -> VerificationResult:
    with ThreadPoolExecutor(max_workers=2) as pool:
        policy_f = pool.submit(verify_chat_policy, draft, call_llm=call_llm)
        consistency_f = pool.submit(verify_chat_consistency, draft, call_secondary=call_secondary)
        policy = policy_f.result()
        consistency = consistency_f.result()

    failed = chat_failed(draft, policy, consistency)
    feedback = VerifierFeedback()
    if failed:
        consistency_issues = list(consistency.risk_phrases) + list(consistency.format_issues)
        if consistency.has_numbers:
            consistency_issues.insert(0, "has_numbers")
        feedback = VerifierFeedback(
            policy_issues=policy.issues() if policy.verdict == "FAIL" else [],
            consistency_issues=consistency_issues,
            rewrite_hint=policy.suggestion if policy.verdict == "FAIL" else "",
        )
    return VerificationResult(
        failed=failed,
        feedback=feedback,
        details={"policy": policy.model_dump(), "consistency": consistency.model_dump()},
    )
