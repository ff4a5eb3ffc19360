"""
Unit tests for the pure building blocks: TTL cache, JSON decoding, output
guardrails, market-behavior summary and the RAG bundle.
"""

import sys
import os
import json

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from stockjudge.pipeline_metrics import PipelineMetrics
from stockjudge.ttl_cache import TTLCache, cache_key
from stockjudge.json_decode import Ok, ParseError, decode_model, extract_json_object
from stockjudge.schemas import MarketCheck, PolicyVerdict, Signals
from stockjudge.guardrails import (
    has_disallowed_analysis_word,
    has_disallowed_finance_advice,
    has_numbers,
    local_gate_issues,
)
from stockjudge.market_behavior import (
    INSUFFICIENT_DATA_LABEL,
    Trend,
    Volatility,
    classify_trend,
    derive_market_behavior,
)
from stockjudge.documents import (
    STORED_MAX_CANDLES,
    STORED_MAX_NEWS,
    TRUNCATION_MARKER,
    DocType,
    Document,
    build_rag_bundle,
    bundle_for_prompt,
    bundle_reference,
    compute_input_hash,
    make_doc_id,
    minimize_rag_bundle,
)
from stockjudge.events import PipelineEvent, terminate_on_error


def _candles(closes):
    return [{"t": str(i), "o": c, "h": c, "l": c, "c": c, "v": 1} for i, c in enumerate(closes)]


# ──────────────────────────────────────────────────────────────────────────────
# TTLCache
# ──────────────────────────────────────────────────────────────────────────────

class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_set_get(self):
        cache = TTLCache(default_ttl=60)
        cache.set("k", {"a": 1})
        assert cache.get("k") == {"a": 1}
        assert cache.size == 1

    def test_missing_key(self):
        assert TTLCache().get("nope") is None

    def test_expired_entry_is_evicted(self):
        clock = _Clock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 1011.0
        assert cache.get("k") is None
        assert cache.size == 0

    def test_per_key_ttl(self):
        clock = _Clock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)
        clock.now = 1005.0
        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_set_purges_expired_entries(self):
        clock = _Clock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("old", 1, ttl=1)
        clock.now = 1002.0
        cache.set("new", 2)
        assert cache.size == 1

    def test_clear(self):
        cache = TTLCache()
        cache.set("a", 1)
        cache.clear()
        assert cache.size == 0

    def test_cache_key(self):
        assert cache_key("quotes", "AAPL", "MSFT") == "quotes:AAPL:MSFT"
        assert cache_key("news", "AAPL", 12) == "news:AAPL:12"

    def test_get_or_fetch_counts_hits_and_misses(self):
        calls = []
        metrics = PipelineMetrics()
        cache = TTLCache()

        def fetch():
            calls.append(1)
            return {"v": 1}

        assert cache.get_or_fetch("k", fetch, metrics=metrics) == {"v": 1}
        assert cache.get_or_fetch("k", fetch, metrics=metrics) == {"v": 1}
        assert len(calls) == 1
        assert metrics.cache_misses == 1 and metrics.cache_hits == 1

    def test_get_or_fetch_does_not_keep_empty_results(self):
        cache = TTLCache()
        assert cache.get_or_fetch("k", lambda: []) == []
        assert cache.size == 0


# ──────────────────────────────────────────────────────────────────────────────
# JSON decoding
# ──────────────────────────────────────────────────────────────────────────────

class TestExtractJsonObject:
    def test_plain(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_in_prose(self):
        assert extract_json_object('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}

    def test_no_braces(self):
        assert extract_json_object("```\njust text\n```") is None

    def test_array_is_not_an_object(self):
        assert extract_json_object("[1, 2]") is None

    def test_invalid_json(self):
        assert extract_json_object("{not: json}") is None


class TestDecodeModel:
    def test_ok(self):
        result = decode_model('{"agreement": "동의", "reason": "r"}', MarketCheck)
        assert isinstance(result, Ok)
        assert result.value.agreement == "동의"

    def test_no_object(self):
        result = decode_model("nothing here", Signals)
        assert isinstance(result, ParseError)
        assert result.reason == "no_json_object"

    def test_schema_mismatch(self):
        result = decode_model('{"agreement": "maybe"}', MarketCheck)
        assert isinstance(result, ParseError)
        assert result.reason.startswith("schema_mismatch")

    def test_signals_always_have_four_string_keys(self):
        result = decode_model('{"financial_signal": 3, "extra": "x"}', Signals)
        assert isinstance(result, Ok)
        assert result.value.model_dump() == {
            "financial_signal": "3",
            "event_signal": "",
            "market_signal": "",
            "peer_signal": "",
        }

    def test_policy_verdict_normalises_case_and_hint_alias(self):
        raw = json.dumps({"verdict": "fail", "reasons": "x", "rewrite_hint": "고쳐"})
        result = decode_model(raw, PolicyVerdict)
        assert isinstance(result, Ok)
        v = result.value
        assert v.verdict == "FAIL"
        assert v.reasons == ["x"]
        assert v.suggestion == "고쳐"
        assert not v.passed

    def test_policy_violation_nulls_become_empty_text(self):
        raw = json.dumps({"verdict": "PASS", "violations": [{"type": "none", "sentence": None, "reason": None}]})
        result = decode_model(raw, PolicyVerdict)
        assert isinstance(result, Ok)
        assert result.value.passed
        assert result.value.violations[0].sentence == ""
        assert result.value.violations[0].reason == ""

    def test_policy_violation_text_survives_into_issues(self):
        raw = json.dumps({"verdict": "FAIL", "violations": [{"type": "directive", "sentence": "사세요", "reason": 1}]})
        result = decode_model(raw, PolicyVerdict)
        assert isinstance(result, Ok)
        assert result.value.issues() == ["directive: 사세요 (1)"]

    @pytest.mark.parametrize("label,expected", [
        ("부분동의", "부분 동의"),
        (" 부분  동의 ", "부분 동의"),
        ("Agree", "동의"),
        ("partially_agree", "부분 동의"),
        ("DISAGREE", "불일치"),
    ])
    def test_market_agreement_near_misses_keep_reason(self, label, expected):
        result = decode_model(json.dumps({"agreement": label, "reason": "근거"}), MarketCheck)
        assert isinstance(result, Ok)
        assert result.value.agreement == expected
        assert result.value.reason == "근거"


# ──────────────────────────────────────────────────────────────────────────────
# Guardrails
# ──────────────────────────────────────────────────────────────────────────────

class TestGuardrails:
    def test_numbers(self):
        assert has_numbers("매출이 12% 늘었다")
        assert has_numbers("가격은 $ 기준")
        assert not has_numbers("관점이 여럿 언급됩니다")

    def test_finance_advice(self):
        assert has_disallowed_finance_advice("지금 매수하세요")
        assert has_disallowed_finance_advice("목표가를 제시")
        assert not has_disallowed_finance_advice("맥락을 정리합니다")

    def test_analysis_word(self):
        assert has_disallowed_analysis_word("이번 분석에 따르면")
        assert not has_disallowed_analysis_word("설명에 따르면")

    def test_local_gate_issue_list(self):
        assert local_gate_issues("깨끗한 설명") == []
        assert local_gate_issues("분석 결과 10% 매수") == ["numbers", "finance_advice", "analysis_word"]


# ──────────────────────────────────────────────────────────────────────────────
# Market behavior
# ──────────────────────────────────────────────────────────────────────────────

class TestMarketBehavior:
    def test_fewer_than_ten_candles(self):
        mb = derive_market_behavior(_candles([100.0] * 9))
        assert mb.label == INSUFFICIENT_DATA_LABEL
        assert not mb.sufficient
        assert mb.to_dict()["stats"] is None

    def test_non_finite_closes_do_not_count(self):
        rows = _candles([100.0] * 8) + [{"c": None}, {"c": "abc"}, {"c": float("nan")}]
        mb = derive_market_behavior(rows)
        assert mb.label == INSUFFICIENT_DATA_LABEL
        assert mb.notes == "종가 데이터가 부족합니다."

    def test_flat_series(self):
        mb = derive_market_behavior(_candles([100.0] * 12))
        assert mb.trend == Trend.SIDEWAYS
        assert mb.volatility == Volatility.LOW
        assert mb.trend_pct == 0
        assert mb.label == "횡보 추세 / 변동성 낮음"

    def test_exactly_four_percent_is_sideways(self):
        closes = [100.0] * 10 + [104.0]
        assert derive_market_behavior(_candles(closes)).trend == Trend.SIDEWAYS

    def test_above_four_percent_is_up(self):
        closes = [100.0] * 10 + [104.5]
        assert derive_market_behavior(_candles(closes)).trend == Trend.UP

    def test_below_minus_four_percent_is_down(self):
        closes = [100.0] * 10 + [95.0]
        assert derive_market_behavior(_candles(closes)).trend == Trend.DOWN

    def test_classify_trend_boundaries(self):
        assert classify_trend(0.04) == Trend.SIDEWAYS
        assert classify_trend(-0.04) == Trend.SIDEWAYS
        assert classify_trend(0.0401) == Trend.UP
        assert classify_trend(-0.0401) == Trend.DOWN

    def test_high_volatility(self):
        closes = [100.0, 110.0] * 6
        mb = derive_market_behavior(_candles(closes))
        assert mb.volatility == Volatility.HIGH
        assert mb.to_dict()["stats"]["n"] == 12


# ──────────────────────────────────────────────────────────────────────────────
# RAG bundle
# ──────────────────────────────────────────────────────────────────────────────

def _doc(t, period="recent", as_of="2026-01-01T00:00:00Z", payload=None, symbol="AAPL"):
    return Document(make_doc_id(symbol, t, period), symbol, t, period, "yahoo", as_of, payload)


class TestRagBundle:
    def test_doc_id_format(self):
        assert make_doc_id("AAPL", DocType.INCOME_STATEMENT, "quarterly") == "AAPL/income_statement/quarterly"

    def test_dedupes_and_orders_by_type(self):
        docs = [_doc(DocType.NEWS), _doc(DocType.COMPANY_PROFILE, "current"), _doc(DocType.NEWS)]
        bundle = build_rag_bundle("AAPL", docs, as_of="t")
        assert bundle.doc_ids == ["AAPL/company_profile/current", "AAPL/news/recent"]
        assert bundle.rag_version == "rag_v1.0"

    def test_empty_bundle(self):
        bundle = build_rag_bundle("AAPL", [])
        assert bundle.docs == ()
        assert bundle.meta()["doc_ids"] == []

    def test_input_hash_ignores_collection_order(self):
        a = [_doc(DocType.NEWS), _doc(DocType.CASHFLOW, "quarterly")]
        h1 = compute_input_hash("AAPL", "q", build_rag_bundle("AAPL", a, as_of="x"))
        h2 = compute_input_hash("AAPL", "q", build_rag_bundle("AAPL", list(reversed(a)), as_of="y"))
        assert h1 == h2

    def test_input_hash_changes_with_question_and_as_of(self):
        docs = [_doc(DocType.NEWS)]
        base = compute_input_hash("AAPL", "q", build_rag_bundle("AAPL", docs))
        assert compute_input_hash("AAPL", "other", build_rag_bundle("AAPL", docs)) != base
        later = [_doc(DocType.NEWS, as_of="2026-02-01T00:00:00Z")]
        assert compute_input_hash("AAPL", "q", build_rag_bundle("AAPL", later)) != base

    def test_input_hash_ignores_payload(self):
        h1 = compute_input_hash("AAPL", "", build_rag_bundle("AAPL", [_doc(DocType.NEWS, payload=[1])]))
        h2 = compute_input_hash("AAPL", "", build_rag_bundle("AAPL", [_doc(DocType.NEWS, payload=[2])]))
        assert h1 == h2

    def test_minimize_caps_news_and_candles(self):
        docs = [
            _doc(DocType.NEWS, payload=[{"title": str(i)} for i in range(40)]),
            _doc(DocType.MARKET_BEHAVIOR, payload={"summary": {"label": "x"}, "candles": list(range(200))}),
        ]
        bundle = build_rag_bundle("AAPL", docs)
        small = minimize_rag_bundle(bundle)
        assert len(small.doc(DocType.NEWS).payload) == STORED_MAX_NEWS
        mb = small.doc(DocType.MARKET_BEHAVIOR).payload
        assert mb["candles"] == list(range(200))[-STORED_MAX_CANDLES:]
        assert mb["summary"] == {"label": "x"}
        # original bundle untouched
        assert len(bundle.doc(DocType.NEWS).payload) == 40

    def test_prompt_truncation(self):
        docs = [_doc(DocType.NEWS, payload=["x" * 500])]
        text = bundle_for_prompt(build_rag_bundle("AAPL", docs), max_chars=100)
        assert text.endswith(TRUNCATION_MARKER)
        assert len(text) == 100 + len(TRUNCATION_MARKER)

    def test_reference_has_ids_not_payloads(self):
        docs = [_doc(DocType.NEWS, payload=["secret payload"])]
        ref = bundle_reference(build_rag_bundle("AAPL", docs, as_of="t"))
        assert "AAPL/news/recent" in ref
        assert "secret payload" not in ref


# ──────────────────────────────────────────────────────────────────────────────
# Event envelope
# ──────────────────────────────────────────────────────────────────────────────

class TestEvents:
    def test_sse_framing(self):
        ev = PipelineEvent("status", {"stage": "start", "msg": "한글"})
        assert ev.to_sse() == 'event: status\ndata: {"stage": "start", "msg": "한글"}\n\n'

    def test_terminate_on_error(self):
        def boom():
            yield PipelineEvent("status", {"stage": "start"})
            raise RuntimeError("kaput")

        events = list(terminate_on_error(boom(), "judge_stream_failed"))
        assert [e.type for e in events] == ["status", "error", "done"]
        assert events[1].data == {"error": "judge_stream_failed", "details": "kaput"}
