"""Market data models — typed representations of exchange quotes and candles."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar.  ``timestamp_ms`` is the bar open time in epoch ms."""

    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ohlcv(cls, row) -> "Candle":
        """Build from a ``[ts, open, high, low, close, volume]`` row."""
        ts, o, h, l, c, v = row[:6]
        return cls(
            timestamp_ms=int(ts),
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v or 0.0),
        )


@dataclass(frozen=True)
class ExchangeQuote:
    """Top-of-book snapshot for one symbol on one exchange."""

    exchange: str
    price: float
    bid: Optional[float]
    ask: Optional[float]
    volume: Optional[float]
    timestamp: int  # epoch ms reported by the exchange


@dataclass(frozen=True)
class FetchFailure:
    """Explicit "no data" marker for a fetch that failed or timed out."""

    exchange: str
    symbol: str
    reason: str


class DataSourceFailure(Exception):
    """A single exchange/symbol fetch failed.

    Raised by market data sources; the scheduler never lets it escape a
    tick.
    """

    def __init__(self, exchange: str, symbol: str, reason: str) -> None:
        super().__init__(f"{exchange} {symbol}: {reason}")
        self.exchange = exchange
        self.symbol = symbol
        self.reason = reason
