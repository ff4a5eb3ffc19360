"""
Shared fakes: a scripted LLM keyed by system prompt and a canned collector.
"""

import json
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from stockjudge import prompts as P
from stockjudge.collector import CollectionResult
from stockjudge.documents import DocType, Document, make_doc_id

SECONDARY = "__secondary__"


class ScriptedLLM:
    """Replies are looked up by system prompt (or SECONDARY for Gemini calls).

    A reply may be a string, a list of strings consumed in order (the last one
    repeats), a callable taking the user prompt, or an exception instance.
    """

    def __init__(self, replies=None, *, primary=True, secondary=False, grounding=False):
        self.replies = dict(replies or {})
        self.primary_available = primary
        self.secondary_available = secondary
        self.grounding_available = grounding
        self.calls = []
        self._lock = threading.Lock()

    def _reply(self, key, prompt):
        with self._lock:
            self.calls.append((key, prompt))
            reply = self.replies.get(key, "")
            if isinstance(reply, list):
                reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def chat(self, prompt, system, max_tokens, temperature=0.3, model=None):
        return self._reply(system, prompt)

    def verifier_chat(self, prompt, system, max_tokens):
        return self._reply(system, prompt)

    def secondary(self, prompt, max_tokens=450):
        return self._reply(SECONDARY, prompt)

    def grounding(self, prompt, system, max_tokens=700):
        return self._reply(system, prompt)

    def calls_for(self, key):
        return [p for k, p in self.calls if k == key]


class FakeCollector:
    def __init__(self, documents=None, failures=None):
        self.documents = list(documents or [])
        self.failures = dict(failures or {})
        self.symbols = []

    def collect(self, symbol, *, metrics=None):
        self.symbols.append(symbol)
        return CollectionResult(documents=list(self.documents), failures=dict(self.failures))


def sample_documents(symbol="AAPL", as_of="2026-01-02T00:00:00Z", with_news=True):
    docs = [
        Document(make_doc_id(symbol, DocType.COMPANY_PROFILE, "current"), symbol,
                 DocType.COMPANY_PROFILE, "current", "yahoo", as_of, {"profile": {"sector": "Technology"}}),
        Document(make_doc_id(symbol, DocType.INCOME_STATEMENT, "quarterly"), symbol,
                 DocType.INCOME_STATEMENT, "quarterly_recent", "yahoo", as_of, [{"totalRevenue": 100}]),
        Document(make_doc_id(symbol, DocType.MARKET_BEHAVIOR, "recent"), symbol,
                 DocType.MARKET_BEHAVIOR, "6mo_1d", "yahoo", as_of,
                 {"summary": {"label": "횡보 추세 / 변동성 보통"}, "candles": []}),
    ]
    if with_news:
        docs.append(Document(make_doc_id(symbol, DocType.NEWS, "recent"), symbol, DocType.NEWS,
                             "recent", "yahoo", as_of, [{"title": "Apple event", "link": "https://x.test/a"}]))
    return docs


SIGNALS_JSON = json.dumps({
    "financial_signal": "매출 흐름이 안정적인 것으로 해석될 수 있음",
    "event_signal": "최근 이벤트 자료가 확인되지 않음",
    "market_signal": "횡보 흐름일 가능성",
    "peer_signal": "동종 업계와 비슷한 흐름일 수 있음",
}, ensure_ascii=False)

PASS_POLICY = json.dumps({"verdict": "PASS", "violations": [], "suggestion": ""})
FAIL_POLICY = json.dumps({
    "verdict": "FAIL",
    "violations": [{"type": "investment_directive", "sentence": "지금 사세요", "reason": "매수 권유"}],
    "suggestion": "권유 표현 제거",
})


def judge_replies(**overrides):
    replies = {
        P.SYSTEM_SIGNAL_EXTRACTION: SIGNALS_JSON,
        P.SYSTEM_STORY_LINKING: "- 실적 흐름과 이벤트가 연결될 가능성이 있음",
        P.SYSTEM_MARKET_AGREEMENT: json.dumps({"agreement": "동의", "reason": "방향이 비슷함"}, ensure_ascii=False),
        P.SYSTEM_PEER_ADJUSTMENT: json.dumps({"adjustment": "과도한 해석은 아님", "industry_vs_company": "산업 전반 흐름"},
                                             ensure_ascii=False),
        P.SYSTEM_FINAL_JUDGEMENT: "## 1. 기업 현재 상황 요약\n조건부로 해석될 수 있습니다.",
        P.SYSTEM_POLICY_VERIFIER: PASS_POLICY,
    }
    replies.update(overrides)
    return replies


@pytest.fixture
def collector():
    return FakeCollector(sample_documents())
