"""
Document Collector: parallel, independently fault-tolerant source fetches.

Four sources are fetched concurrently for one symbol:
  1. quote summary (profile + quarterly statements + earnings)
  2. recent news headlines
  3. recent daily candles (reduced to a market-behavior summary)
  4. quotes for a small static peer list

A failing source contributes no documents; the others are unaffected.
There is no retry at this layer.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from stockjudge.documents import (
    BUNDLE_MAX_CANDLES, BUNDLE_MAX_NEWS, DocType, Document, make_doc_id, utc_now_iso,
)
from stockjudge.market_behavior import derive_market_behavior
from stockjudge.pipeline_metrics import PipelineMetrics
from stockjudge.yahoo_client import YahooClient, peers_for_symbol, pick_raw

log = logging.getLogger("stockjudge.collector")

QUOTE_SUMMARY_MODULES = [
    "price",
    "summaryProfile",
    "defaultKeyStatistics",
    "calendarEvents",
    "earnings",
    "earningsHistory",
    "incomeStatementHistoryQuarterly",
    "balanceSheetHistoryQuarterly",
    "cashflowStatementHistoryQuarterly",
]

_PROFILE_KEYS = ["sector", "industry", "country", "website", "longBusinessSummary", "fullTimeEmployees"]
_KEY_STAT_KEYS = [
    "marketCap", "enterpriseValue", "trailingPE", "forwardPE",
    "priceToBook", "beta", "sharesOutstanding",
]


@dataclass
class CollectionResult:
    documents: List[Document] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Shaping helpers
# ---------------------------------------------------------------------------

def pick_fields(obj: Any, keys: List[str]) -> Dict[str, Any]:
    o = obj if isinstance(obj, dict) else {}
    return {k: pick_raw(o.get(k)) for k in keys}


def slim_quarterly_statements(rows: Any, max_rows: int = 6) -> List[Dict[str, Any]]:
    out = []
    for r in (rows if isinstance(rows, list) else [])[:max_rows]:
        r = r if isinstance(r, dict) else {}
        raw = lambda k: pick_raw(r.get(k))  # noqa: E731
        out.append({
            "endDate": raw("endDate"),
            "totalRevenue": raw("totalRevenue"),
            "costOfRevenue": raw("costOfRevenue"),
            "grossProfit": raw("grossProfit"),
            "researchDevelopment": raw("researchDevelopment"),
            "sellingGeneralAdministrative": raw("sellingGeneralAdministrative"),
            "totalOperatingExpenses": raw("totalOperatingExpenses"),
            "operatingIncome": raw("operatingIncome"),
            "netIncome": raw("netIncome"),
            "operatingCashflow": _first_present(raw("totalCashFromOperatingActivities"), raw("operatingCashflow")),
            "capitalExpenditures": raw("capitalExpenditures"),
            "freeCashFlow": raw("freeCashFlow"),
            "totalAssets": raw("totalAssets"),
            "totalLiab": raw("totalLiab"),
            "cash": _first_present(raw("cash"), raw("cashAndCashEquivalents")),
            "longTermDebt": raw("longTermDebt"),
        })
    return out


def _first_present(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def shape_financials(summary: Dict[str, Any]) -> Dict[str, Any]:
    price = summary.get("price") or {}
    calendar = (summary.get("calendarEvents") or {}).get("earnings") or {}
    dates = calendar.get("earningsDate") if isinstance(calendar.get("earningsDate"), list) else []
    history = (summary.get("earningsHistory") or {}).get("history")
    history = history if isinstance(history, list) else []
    return {
        "price": {
            "shortName": price.get("shortName"),
            "longName": price.get("longName"),
            "exchangeName": price.get("exchangeName"),
            "currency": price.get("currency"),
            "marketState": price.get("marketState"),
            "regularMarketPrice": pick_raw(price.get("regularMarketPrice")),
            "regularMarketTime": pick_raw(price.get("regularMarketTime")),
        },
        "profile": pick_fields(summary.get("summaryProfile"), _PROFILE_KEYS),
        "keyStats": pick_fields(summary.get("defaultKeyStatistics"), _KEY_STAT_KEYS),
        "calendarEvents": {"earnings": [d for d in (pick_raw(x) for x in dates) if d][:4]},
        "earningsHistory": [
            {
                "quarter": pick_raw(h.get("quarter")),
                "period": h.get("period"),
                "epsActual": pick_raw(h.get("epsActual")),
                "epsEstimate": pick_raw(h.get("epsEstimate")),
                "surprisePercent": pick_raw(h.get("surprisePercent")),
            }
            for h in history[:8] if isinstance(h, dict)
        ],
        "statements": {
            "incomeQuarterly": slim_quarterly_statements(
                (summary.get("incomeStatementHistoryQuarterly") or {}).get("incomeStatementHistory")),
            "balanceQuarterly": slim_quarterly_statements(
                (summary.get("balanceSheetHistoryQuarterly") or {}).get("balanceSheetStatements")),
            "cashflowQuarterly": slim_quarterly_statements(
                (summary.get("cashflowStatementHistoryQuarterly") or {}).get("cashflowStatements")),
        },
    }


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------

def financial_documents(symbol: str, fin: Dict[str, Any], as_of: str) -> List[Document]:
    def doc(t: DocType, period: str, id_period: str, payload: Any) -> Document:
        return Document(make_doc_id(symbol, t, id_period), symbol, t, period, "yahoo", as_of, payload)

    statements = fin.get("statements") or {}
    return [
        doc(DocType.COMPANY_PROFILE, "current", "current", {
            "price": fin.get("price"), "profile": fin.get("profile"), "keyStats": fin.get("keyStats"),
        }),
        doc(DocType.INCOME_STATEMENT, "quarterly_recent", "quarterly", statements.get("incomeQuarterly") or []),
        doc(DocType.BALANCE_SHEET, "quarterly_recent", "quarterly", statements.get("balanceQuarterly") or []),
        doc(DocType.CASHFLOW, "quarterly_recent", "quarterly", statements.get("cashflowQuarterly") or []),
        doc(DocType.EARNINGS_EVENT, "recent", "recent", {
            "calendarEvents": fin.get("calendarEvents") or {},
            "earningsHistory": fin.get("earningsHistory") or [],
        }),
    ]


def news_document(symbol: str, items: List[Dict[str, Any]], as_of: str) -> Document:
    return Document(
        make_doc_id(symbol, DocType.NEWS, "recent"), symbol, DocType.NEWS,
        "recent", "yahoo", as_of, list(items)[:BUNDLE_MAX_NEWS],
    )


def market_behavior_document(symbol: str, chart: Dict[str, Any], as_of: str) -> Document:
    candles = chart.get("candles") or []
    summary = derive_market_behavior(candles)
    period = f"{chart.get('range') or 'recent'}_{chart.get('interval') or ''}".strip("_")
    return Document(
        make_doc_id(symbol, DocType.MARKET_BEHAVIOR, "recent"), symbol, DocType.MARKET_BEHAVIOR,
        period, "yahoo", as_of,
        {"summary": summary.to_dict(), "candles": candles[-BUNDLE_MAX_CANDLES:]},
    )


def peer_document(symbol: str, peers: List[str], quotes: List[Dict[str, Any]], as_of: str) -> Document:
    return Document(
        make_doc_id(symbol, DocType.PEER_COMPARISON, "industry"), symbol, DocType.PEER_COMPARISON,
        "current", "yahoo", as_of, {"peers": peers, "quotes": quotes},
    )


# ---------------------------------------------------------------------------
# DocumentCollector
# ---------------------------------------------------------------------------

class DocumentCollector:
    """Fetch the four sources for a symbol concurrently and normalise them into documents."""

    def __init__(self, yahoo: YahooClient, *, max_workers: int = 4, clock: Callable[[], str] = utc_now_iso):
        self._yahoo = yahoo
        self._max_workers = max_workers
        self._clock = clock

    def _financials(self, symbol: str, metrics: Optional[PipelineMetrics]) -> List[Document]:
        summary = self._yahoo.quote_summary(symbol, QUOTE_SUMMARY_MODULES, metrics=metrics)
        return financial_documents(symbol, shape_financials(summary), self._clock())

    def _news(self, symbol: str, metrics: Optional[PipelineMetrics]) -> List[Document]:
        items = self._yahoo.news(symbol, 12, metrics=metrics)
        return [news_document(symbol, items, self._clock())]

    def _market(self, symbol: str, metrics: Optional[PipelineMetrics]) -> List[Document]:
        chart = self._yahoo.ohlcv(symbol, "1d", "6mo", metrics=metrics)
        return [market_behavior_document(symbol, chart, self._clock())]

    def _peers(self, symbol: str, metrics: Optional[PipelineMetrics]) -> List[Document]:
        peers = peers_for_symbol(symbol)
        quotes = self._yahoo.quotes([symbol, *peers], metrics=metrics)
        return [peer_document(symbol, peers, quotes, self._clock())]

    def collect(self, symbol: str, *, metrics: Optional[PipelineMetrics] = None) -> CollectionResult:
        sources = {
            "financials": self._financials,
            "news": self._news,
            "ohlcv": self._market,
            "peers": self._peers,
        }
        result = CollectionResult()
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {name: pool.submit(fn, symbol, metrics) for name, fn in sources.items()}
            for name, fut in futures.items():
                try:
                    result.documents.extend(fut.result())
                except Exception as e:
                    log.warning("source %s failed for %s: %s", name, symbol, e)
                    result.failures[name] = str(e)
                    if metrics:
                        metrics.inc_source_failure()
        return result
