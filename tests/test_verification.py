"""
Tests for the retry controller, the dual verifiers and the single-call stages.
"""

import sys
import os
import json

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from stockjudge import prompts as P
from stockjudge.pipeline_metrics import PipelineMetrics
from stockjudge.retry_controller import (
    GuardedGenerator,
    TerminalPolicy,
    VerificationResult,
    VerifierFeedback,
)
from stockjudge.schemas import ConsistencyVerdict, PolicyVerdict, Signals
from stockjudge.stages import (
    MARKET_PARSE_FALLBACK_REASON,
    SignalExtractionError,
    adjust_for_peers,
    check_market_agreement,
    collect_grounding,
    extract_signals,
    link_story,
)
from stockjudge.documents import build_rag_bundle
from stockjudge.verifiers import (
    judgement_failed,
    verify_chat,
    verify_chat_consistency,
    verify_chat_policy,
    verify_consistency,
    verify_judgement,
    verify_policy,
)


def _drain(gen):
    """Collect yielded events and the generator's return value."""
    events = []
    while True:
        try:
            events.append(next(gen))
        except StopIteration as stop:
            return events, stop.value


def _fails(*flags):
    """verify() stub: one failing/passing flag per attempt."""
    flags = list(flags)

    def verify(draft):
        failed = flags.pop(0)
        fb = VerifierFeedback(policy_issues=["bad"]) if failed else VerifierFeedback()
        return VerificationResult(failed=failed, feedback=fb, details={"draft": draft})
    return verify


# ──────────────────────────────────────────────────────────────────────────────
# GuardedGenerator
# ──────────────────────────────────────────────────────────────────────────────

class TestGuardedGenerator:
    def test_pass_on_first_attempt(self):
        ctrl = GuardedGenerator(generate=lambda n, fb: f"draft {n}", verify=_fails(False))
        events, outcome = _drain(ctrl.run())
        assert outcome.text == "draft 1"
        assert outcome.passed and outcome.attempts == 1
        assert [e.data["stage"] for e in events] == ["generate", "verify"]

    def test_feedback_threads_into_next_attempt(self):
        seen = []

        def generate(n, fb):
            seen.append(fb)
            return f"draft {n}"

        ctrl = GuardedGenerator(generate=generate, verify=_fails(True, False))
        _, outcome = _drain(ctrl.run())
        assert outcome.text == "draft 2"
        assert seen[0] is None
        assert seen[1].policy_issues == ["bad"]

    def test_emit_anyway_after_three_failures(self):
        ctrl = GuardedGenerator(generate=lambda n, fb: f"draft {n}", verify=_fails(True, True, True, True))
        events, outcome = _drain(ctrl.run())
        assert outcome.text == "draft 3"
        assert not outcome.passed
        assert outcome.attempts == 3
        assert outcome.verification.failed
        assert [e.data.get("attempt") for e in events] == [1, 1, 2, 2, 3, 3]

    def test_max_attempts_is_clamped_to_three(self):
        ctrl = GuardedGenerator(
            generate=lambda n, fb: f"draft {n}",
            verify=_fails(*([True] * 6)),
            max_attempts=6,
        )
        _, outcome = _drain(ctrl.run())
        assert outcome.attempts == 3
        assert outcome.text == "draft 3"

    def test_substitute_after_failures(self):
        ctrl = GuardedGenerator(
            generate=lambda n, fb: "bad",
            verify=_fails(True, True, True),
            terminal_policy=TerminalPolicy.SUBSTITUTE,
            fallback=lambda: "safe",
        )
        _, outcome = _drain(ctrl.run())
        assert outcome.text == "safe"
        assert outcome.fallback_used

    def test_substitute_requires_fallback(self):
        with pytest.raises(ValueError):
            GuardedGenerator(generate=lambda n, fb: "", verify=_fails(), terminal_policy=TerminalPolicy.SUBSTITUTE)

    def test_local_gate_skips_verifier(self):
        verify_calls = []

        def verify(draft):
            verify_calls.append(draft)
            return VerificationResult(failed=False)

        drafts = iter(["12% 상승", "깨끗한 설명"])
        ctrl = GuardedGenerator(
            generate=lambda n, fb: next(drafts),
            verify=verify,
            local_gate=lambda d: ["numbers"] if "%" in d else [],
        )
        _, outcome = _drain(ctrl.run())
        assert outcome.text == "깨끗한 설명"
        assert verify_calls == ["깨끗한 설명"]

    def test_local_gate_on_last_attempt_is_terminal(self):
        metrics = PipelineMetrics()
        ctrl = GuardedGenerator(
            generate=lambda n, fb: "10%",
            verify=_fails(),
            local_gate=lambda d: ["numbers"],
            terminal_policy=TerminalPolicy.SUBSTITUTE,
            fallback=lambda: "safe",
            metrics=metrics,
        )
        _, outcome = _drain(ctrl.run())
        assert outcome.text == "safe"
        assert outcome.verification.feedback.policy_issues == ["local_gate:numbers"]
        assert metrics.attempts == 3
        assert metrics.verifier_failures == 3


# ──────────────────────────────────────────────────────────────────────────────
# Judgement verifiers
# ──────────────────────────────────────────────────────────────────────────────

def _raise(exc):
    def call(*args):
        raise exc
    return call


class TestJudgementVerifiers:
    def test_policy_call_failure_is_fail_closed(self):
        v = verify_policy("draft", call_llm=_raise(RuntimeError("down")))
        assert v.verdict == "FAIL"
        assert v.reasons == ["policy_verifier_call_failed"]

    def test_policy_parse_failure_is_fail_closed(self):
        v = verify_policy("draft", call_llm=lambda p, s, m: "looks fine to me")
        assert v.verdict == "FAIL"
        assert v.reasons == ["policy_verifier_parse_failed"]

    def test_policy_pass_with_null_violation_fields(self):
        reply = json.dumps({"verdict": "PASS", "violations": [{"type": "none", "sentence": None, "reason": None}]})
        v = verify_policy("draft", call_llm=lambda p, s, m: reply)
        assert v.verdict == "PASS"
        assert v.reasons == []

    def test_consistency_disabled_is_ok(self):
        v = verify_consistency("draft", call_secondary=None)
        assert v.ok and not v.has_issues

    def test_consistency_call_failure(self):
        v = verify_consistency("draft", call_secondary=_raise(RuntimeError("x")))
        assert not v.ok
        assert v.numeric_or_period_issues == ["gemini_call_failed"]

    @pytest.mark.parametrize("verdict,ok,issues,expected", [
        ("PASS", True, [], False),
        ("WARN", True, [], True),
        ("FAIL", True, [], True),
        ("PASS", False, ["분기 혼동"], True),
        ("PASS", False, [], False),
        ("PASS", True, ["분기 혼동"], False),
    ])
    def test_failure_predicate(self, verdict, ok, issues, expected):
        policy = PolicyVerdict(verdict=verdict)
        consistency = ConsistencyVerdict(ok=ok, numeric_or_period_issues=issues)
        assert judgement_failed(policy, consistency) is expected

    def test_dual_verify_builds_structured_feedback(self):
        policy_raw = json.dumps({
            "verdict": "FAIL",
            "violations": [{"type": "investment_directive", "sentence": "사세요", "reason": "권유"}],
            "suggestion": "권유 제거",
        })
        consistency_raw = json.dumps({"ok": False, "logic_direction_issues": ["인과 단정"]})
        result = verify_judgement(
            "draft",
            call_llm=lambda p, s, m: policy_raw,
            call_secondary=lambda p, m: consistency_raw,
        )
        assert result.failed
        assert "investment_directive" in result.feedback.policy_issues[0]
        assert result.feedback.consistency_issues == ["논리: 인과 단정"]
        assert result.feedback.rewrite_hint == "권유 제거"
        assert result.details["policy"]["verdict"] == "FAIL"
        assert result.details["consistency"]["ok"] is False

    def test_feedback_is_formatted_by_prompt_builder(self):
        fb = VerifierFeedback(policy_issues=["a"], consistency_issues=["b"], rewrite_hint="h")
        text = P.format_feedback(fb)
        assert "정책 위반 가능: a" in text
        assert "힌트: h" in text
        assert "일관성 검증 이슈: b" in text
        assert P.format_feedback(VerifierFeedback()) == ""


# ──────────────────────────────────────────────────────────────────────────────
# Chat verifiers
# ──────────────────────────────────────────────────────────────────────────────

class TestChatVerifiers:
    def test_policy_call_failure_is_warn(self):
        v = verify_chat_policy("draft", call_llm=_raise(RuntimeError("x")))
        assert v.verdict == "WARN"

    def test_regex_consistency_without_gemini(self):
        v = verify_chat_consistency("이번 분석은 매수 관점", call_secondary=None)
        assert not v.has_numbers
        assert v.risk_phrases == ["finance_advice_like", "analysis_word"]

    def test_gemini_failure_is_fail_closed(self):
        v = verify_chat_consistency("draft", call_secondary=_raise(RuntimeError("x")))
        assert v.has_numbers
        assert v.risk_phrases == ["gemini_call_failed"]

    def test_warn_policy_with_clean_text_passes(self):
        result = verify_chat(
            "관점이 여럿 언급됩니다",
            call_llm=lambda p, s, m: json.dumps({"verdict": "WARN"}),
            call_secondary=None,
        )
        assert not result.failed

    def test_fail_policy_fails(self):
        result = verify_chat(
            "관점이 여럿 언급됩니다",
            call_llm=lambda p, s, m: json.dumps({"verdict": "FAIL", "suggestion": "표현 완화"}),
            call_secondary=None,
        )
        assert result.failed
        assert result.feedback.rewrite_hint == "표현 완화"


# ──────────────────────────────────────────────────────────────────────────────
# Stages
# ──────────────────────────────────────────────────────────────────────────────

class TestStages:
    def test_signal_parse_failure_is_fatal(self):
        with pytest.raises(SignalExtractionError):
            extract_signals("AAPL", "", build_rag_bundle("AAPL", []),
                            call_llm=lambda p, s, m: "```\nsorry, no json\n```")

    def test_signal_prompt_truncates_question(self):
        prompts = []

        def call(p, s, m):
            prompts.append(p)
            return "{}"

        signals = extract_signals("AAPL", "q" * 2000, build_rag_bundle("AAPL", []), call_llm=call)
        assert signals == Signals()
        assert "q" * 800 in prompts[0]
        assert "q" * 801 not in prompts[0]

    def test_empty_story_retried_then_placeholder(self):
        calls = []

        def call(p, s, m):
            calls.append(p)
            return "   "

        story = link_story("AAPL", Signals(), call_llm=call)
        assert story == P.EMPTY_STORY_PLACEHOLDER
        assert len(calls) == 2

    def test_empty_story_recovers_on_retry(self):
        replies = iter(["", "- 가설"])
        story = link_story("AAPL", Signals(), call_llm=lambda p, s, m: next(replies))
        assert story == "- 가설"

    def test_market_parse_failure_defaults_to_partial(self):
        mc = check_market_agreement("AAPL", Signals(), "story", call_llm=lambda p, s, m: "동의합니다")
        assert mc.agreement == "부분 동의"
        assert mc.reason == MARKET_PARSE_FALLBACK_REASON

    def test_market_call_failure_propagates(self):
        with pytest.raises(RuntimeError):
            check_market_agreement("AAPL", Signals(), "story", call_llm=_raise(RuntimeError("http 500")))

    def test_peer_parse_failure_passes_raw_text(self):
        pa = adjust_for_peers("AAPL", Signals(), "story", call_llm=lambda p, s, m: "그냥 텍스트")
        assert pa.adjustment == "그냥 텍스트"
        assert pa.industry_vs_company == ""

    def test_grounding_filters_numbers_and_non_http(self):
        raw = json.dumps({
            "topics": ["공급망 관점", "매출 12% 증가", " "],
            "sources": [
                {"title": "a", "url": "https://a.test"},
                {"title": "b", "url": "ftp://b.test"},
                "junk",
            ],
            "notes": "상충 관점 있음",
        }, ensure_ascii=False)
        g = collect_grounding("AAPL", "chart", "q", call_grounding=lambda p, s, m: raw)
        assert g.topics == ["공급망 관점"]
        assert [s.url for s in g.sources] == ["https://a.test"]
        assert g.notes == "상충 관점 있음"

    def test_grounding_caps(self):
        raw = json.dumps({
            "topics": [f"관점 {chr(0xAC00 + i)}" for i in range(20)],
            "sources": [{"title": "t", "url": f"https://s.test/{chr(97 + i)}"} for i in range(20)],
        }, ensure_ascii=False)
        g = collect_grounding("AAPL", "chart", "q", call_grounding=lambda p, s, m: raw)
        assert len(g.topics) == 12
        assert len(g.sources) == 8

    def test_grounding_never_aborts(self):
        assert collect_grounding("AAPL", "chart", "q", call_grounding=None).sources == []
        g = collect_grounding("AAPL", "chart", "q", call_grounding=_raise(RuntimeError("x")))
        assert g.topics == [] and g.notes
