"""
Thin client over the public Yahoo Finance query endpoints.

Responses are cached in an injected TTLCache. Non-2xx responses raise
YahooError; the collector decides what a failed source means for the run.
"""

from __future__ import annotations
import math
import re
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from stockjudge.pipeline_metrics import PipelineMetrics
from stockjudge.ttl_cache import TTLCache, cache_key

log = logging.getLogger("stockjudge.yahoo")

QUERY1 = "https://query1.finance.yahoo.com"
QUERY2 = "https://query2.finance.yahoo.com"

_HEADERS = {"User-Agent": "Mozilla/5.0", "Accept": "application/json"}
_SAFE_SYMBOL = re.compile(r"^[A-Za-z0-9.\-^=_]{1,32}$")

MAX_CANDLES = 220
MAX_QUOTES = 12

_PEERS: Dict[str, List[str]] = {
    "AAPL": ["MSFT", "GOOGL", "AMZN", "META"],
    "MSFT": ["AAPL", "GOOGL", "AMZN", "ORCL"],
    "NVDA": ["AMD", "INTC", "AVGO", "QCOM"],
    "TSLA": ["GM", "F", "RIVN", "NIO"],
    "AMZN": ["WMT", "COST", "MSFT", "GOOGL"],
    "META": ["GOOGL", "SNAP", "PINS", "TTD"],
}


class YahooError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, details: str = ""):
        super().__init__(message)
        self.status = status
        self.details = details


def to_yahoo_symbol(symbol: str) -> str:
    """``NASDAQ:AAPL`` -> ``AAPL``; empty input falls back to AAPL."""
    s = (symbol or "").strip()
    if not s:
        return "AAPL"
    parts = s.split(":")
    return (parts[1] if len(parts) > 1 else parts[0]).strip()


def is_safe_symbol(symbol: str) -> bool:
    return bool(_SAFE_SYMBOL.match(symbol or ""))


def peers_for_symbol(symbol: str) -> List[str]:
    peers = _PEERS.get((symbol or "").upper(), [])
    return [p for p in peers if is_safe_symbol(p)][:8]


def pick_raw(v: Any) -> Any:
    """Unwrap Yahoo's ``{"raw": 1.0, "fmt": "1.00"}`` envelopes."""
    if v is None:
        return None
    if isinstance(v, dict):
        return v.get("raw")
    return v


def _finite(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


class YahooClient:
    def __init__(
        self,
        http: Optional[httpx.Client] = None,
        *,
        cache: Optional[TTLCache] = None,
        timeout: float = 15.0,
    ):
        self._http = http or httpx.Client(timeout=timeout, headers=_HEADERS, follow_redirects=True)
        self._cache = cache

    # --- internal helpers ---

    def _get_json(self, url: str, params: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            resp = self._http.get(url, params=params, headers=_HEADERS)
        except httpx.HTTPError as e:
            raise YahooError(f"Yahoo {what} request error", details=str(e)) from e
        if resp.status_code < 200 or resp.status_code >= 300:
            raise YahooError(f"Yahoo {what} request failed", status=resp.status_code, details=resp.text[:2000])
        try:
            data = resp.json()
        except ValueError as e:
            raise YahooError(f"Yahoo {what} returned invalid JSON", status=resp.status_code) from e
        return data if isinstance(data, dict) else {}

    def _cached(self, key: str, ttl: int, fetch, metrics: Optional[PipelineMetrics]):
        def counted():
            if metrics:
                metrics.inc_yahoo()
            return fetch()

        if self._cache is None:
            if metrics:
                metrics.inc_cache_miss()
            return counted()
        return self._cache.get_or_fetch(key, counted, ttl=ttl, metrics=metrics)

    # --- endpoints ---

    def quote_summary(self, symbol: str, modules: List[str], *, metrics: Optional[PipelineMetrics] = None) -> Dict[str, Any]:
        mods = ",".join(modules)

        def fetch():
            data = self._get_json(
                f"{QUERY2}/v10/finance/quoteSummary/{symbol}", {"modules": mods}, "quoteSummary"
            )
            result = (data.get("quoteSummary") or {}).get("result") or [{}]
            return result[0] or {}

        return self._cached(cache_key("quote_summary", symbol, mods), 300, fetch, metrics)

    def news(self, query: str, count: int = 12, *, metrics: Optional[PipelineMetrics] = None) -> List[Dict[str, Any]]:
        def fetch():
            data = self._get_json(
                f"{QUERY1}/v1/finance/search", {"q": query, "newsCount": str(count)}, "news"
            )
            items = []
            for n in data.get("news") or []:
                if not isinstance(n, dict):
                    continue
                link = n.get("link") or ""
                if not str(link).startswith("http"):
                    continue
                items.append({
                    "title": n.get("title") or "",
                    "link": link,
                    "publisher": n.get("publisher") or (n.get("provider") or {}).get("displayName") or "",
                    "providerPublishTime": n.get("providerPublishTime"),
                })
            return items[:count]

        return self._cached(cache_key("news", query, count), 300, fetch, metrics)

    def ohlcv(
        self,
        symbol: str,
        interval: str = "1d",
        range_: str = "6mo",
        *,
        metrics: Optional[PipelineMetrics] = None,
    ) -> Dict[str, Any]:
        def fetch():
            data = self._get_json(
                f"{QUERY1}/v8/finance/chart/{symbol}",
                {"interval": interval, "range": range_, "includePrePost": "false", "events": "div|split"},
                "OHLCV",
            )
            result = ((data.get("chart") or {}).get("result") or [{}])[0] or {}
            timestamps = result.get("timestamp") or []
            quote = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}
            candles = []
            for i, ts in enumerate(timestamps):
                if len(candles) >= MAX_CANDLES:
                    break
                o, h, l, c, v = (
                    _at(quote.get("open"), i), _at(quote.get("high"), i),
                    _at(quote.get("low"), i), _at(quote.get("close"), i),
                    _at(quote.get("volume"), i),
                )
                if not all(_finite(x) for x in (o, h, l, c)):
                    continue
                candles.append({
                    "t": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
                    "o": o, "h": h, "l": l, "c": c,
                    "v": v if _finite(v) else None,
                })
            return {"symbol": symbol, "interval": interval, "range": range_, "candles": candles}

        return self._cached(cache_key("ohlcv", symbol, interval, range_), 120, fetch, metrics)

    def quotes(self, symbols: List[str], *, metrics: Optional[PipelineMetrics] = None) -> List[Dict[str, Any]]:
        wanted = [s for s in symbols if s][:MAX_QUOTES]
        if not wanted:
            return []

        def fetch():
            data = self._get_json(
                f"{QUERY1}/v7/finance/quote", {"symbols": ",".join(wanted)}, "quotes"
            )
            rows = (data.get("quoteResponse") or {}).get("result") or []
            return [
                {
                    "symbol": q.get("symbol") or "",
                    "shortName": q.get("shortName") or q.get("longName") or "",
                    "currency": q.get("currency") or "",
                    "regularMarketPrice": q.get("regularMarketPrice"),
                    "regularMarketChangePercent": q.get("regularMarketChangePercent"),
                    "marketCap": q.get("marketCap"),
                }
                for q in rows if isinstance(q, dict)
            ]

        return self._cached(cache_key("quotes", *wanted), 60, fetch, metrics)


def _at(seq: Any, i: int) -> Any:
    if isinstance(seq, list) and i < len(seq):
        return seq[i]
    return None
