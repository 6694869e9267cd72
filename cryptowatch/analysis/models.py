"""Analysis data models — typed representations of indicator and detector outputs.

All of these are value types: produced once per tick by a pure function
and never mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Verdict(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class Vote(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class AnomalyType(str, Enum):
    SPIKE = "SPIKE"
    DROP = "DROP"


class Severity(str, Enum):
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# ── Indicators ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MACDResult:
    """MACD line, its signal line, and the histogram between them."""

    macd: list[float] = field(default_factory=list)
    signal: list[float] = field(default_factory=list)
    histogram: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class BollingerBands:
    upper: list[float] = field(default_factory=list)
    middle: list[float] = field(default_factory=list)
    lower: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class StochasticResult:
    k: list[float] = field(default_factory=list)
    d: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class SRLevel:
    """A local extremum in the close series."""

    price: float
    index: int
    strength: int = 1


@dataclass(frozen=True)
class SupportResistance:
    support: list[SRLevel] = field(default_factory=list)
    resistance: list[SRLevel] = field(default_factory=list)


# ── Signals ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SignalComponent:
    """One indicator's vote and the human-readable reason for it."""

    indicator: str  # "RSI", "MACD", "Bollinger"
    direction: Vote
    reason: str


@dataclass(frozen=True)
class Signal:
    """Aggregated directional verdict with a confidence in [0, 1]."""

    overall: Verdict = Verdict.NEUTRAL
    strength: float = 0.0
    components: list[SignalComponent] = field(default_factory=list)


@dataclass(frozen=True)
class IndicatorSet:
    """Snapshot of every indicator computed from one CandleSeries state."""

    symbol: str
    sma: dict[int, list[float]]
    ema: dict[int, list[float]]
    rsi: list[float]
    macd: MACDResult
    bollinger: BollingerBands
    stochastic: StochasticResult
    atr: list[float]
    williams_r: list[float]
    cci: list[float]
    support_resistance: SupportResistance
    signal: Signal
    candle_count: int
    timestamp: str

    def latest(self) -> dict:
        """Return the most recent value of each series (``None`` when empty)."""

        def _last(values: list[float]) -> Optional[float]:
            return values[-1] if values else None

        return {
            "sma": {p: _last(v) for p, v in self.sma.items()},
            "ema": {p: _last(v) for p, v in self.ema.items()},
            "rsi": _last(self.rsi),
            "macd": _last(self.macd.macd),
            "macd_signal": _last(self.macd.signal),
            "macd_histogram": _last(self.macd.histogram),
            "bollinger_upper": _last(self.bollinger.upper),
            "bollinger_middle": _last(self.bollinger.middle),
            "bollinger_lower": _last(self.bollinger.lower),
            "stochastic_k": _last(self.stochastic.k),
            "stochastic_d": _last(self.stochastic.d),
            "atr": _last(self.atr),
            "williams_r": _last(self.williams_r),
            "cci": _last(self.cci),
        }


# ── Detectors ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Anomaly:
    """A close that lies unusually far from its recent mean."""

    symbol: str
    current_price: float
    avg_price: float
    z_score: Optional[float]  # None when the baseline was perfectly flat
    threshold: float
    type: AnomalyType
    severity: Severity
    timestamp: str


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """A cross-exchange spread for one symbol at one instant."""

    symbol: str
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    price_difference: float
    percentage: float
    timestamp: str


@dataclass(frozen=True)
class PriceChangeStats:
    """Price movement summary over a trailing window of candles."""

    symbol: str
    timeframe: str
    current_price: float
    start_price: float
    change: float
    change_percent: float
    high: float
    low: float
    volume: float
    timestamp: str
