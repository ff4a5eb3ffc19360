"""
Market-behavior summary derived from recent candles.

Only this summary feeds the market signal; raw candles ride along in the
document payload for traceability.
"""

from __future__ import annotations
import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

MIN_CLOSES = 10
TREND_THRESHOLD = 0.04
HIGH_VOL_THRESHOLD = 0.03
LOW_VOL_THRESHOLD = 0.012

INSUFFICIENT_DATA_LABEL = "데이터 부족"


class Trend(str, Enum):
    UP = "상승"
    DOWN = "하락"
    SIDEWAYS = "횡보"


class Volatility(str, Enum):
    HIGH = "높음"
    MEDIUM = "보통"
    LOW = "낮음"


@dataclass(frozen=True)
class MarketBehavior:
    label: str
    notes: str
    trend: Optional[Trend] = None
    volatility: Optional[Volatility] = None
    trend_pct: Optional[float] = None
    vol: Optional[float] = None
    n: int = 0

    @property
    def sufficient(self) -> bool:
        return self.trend is not None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["trend"] = self.trend.value if self.trend else None
        d["volatility"] = self.volatility.value if self.volatility else None
        d["stats"] = (
            {"trendPctApprox": self.trend_pct, "volApprox": self.vol, "n": self.n}
            if self.sufficient else None
        )
        return d


def _finite_close(row: Any) -> Optional[float]:
    if not isinstance(row, dict):
        return None
    try:
        c = float(row.get("c"))
    except (TypeError, ValueError):
        return None
    return c if math.isfinite(c) else None


def classify_trend(pct: float) -> Trend:
    if pct > TREND_THRESHOLD:
        return Trend.UP
    if pct < -TREND_THRESHOLD:
        return Trend.DOWN
    return Trend.SIDEWAYS


def classify_volatility(vol: float) -> Volatility:
    if vol > HIGH_VOL_THRESHOLD:
        return Volatility.HIGH
    if vol < LOW_VOL_THRESHOLD:
        return Volatility.LOW
    return Volatility.MEDIUM


def derive_market_behavior(candles: List[Dict[str, Any]]) -> MarketBehavior:
    """Trend and volatility labels from consecutive closes.

    Fewer than MIN_CLOSES usable closes yields the insufficient-data label,
    never a guess.
    """
    rows = candles if isinstance(candles, list) else []
    if len(rows) < MIN_CLOSES:
        return MarketBehavior(INSUFFICIENT_DATA_LABEL, "캔들 수가 충분하지 않습니다.", n=len(rows))
    closes = [c for c in (_finite_close(r) for r in rows) if c is not None]
    if len(closes) < MIN_CLOSES:
        return MarketBehavior(INSUFFICIENT_DATA_LABEL, "종가 데이터가 부족합니다.", n=len(closes))

    first, last = closes[0], closes[-1]
    pct = (last - first) / first if first else 0.0

    rets = [(b - a) / a for a, b in zip(closes, closes[1:]) if a]
    count = len(rets) or 1
    mean = sum(rets) / count
    variance = sum((x - mean) ** 2 for x in rets) / count
    vol = math.sqrt(variance)

    trend = classify_trend(pct)
    volatility = classify_volatility(vol)
    return MarketBehavior(
        label=f"{trend.value} 추세 / 변동성 {volatility.value}",
        notes="최근 캔들 기반의 간단 요약(정규화된 시장 신호).",
        trend=trend,
        volatility=volatility,
        trend_pct=pct,
        vol=vol,
        n=len(closes),
    )
