"""Price change statistics over a trailing window of candles."""

from datetime import datetime, timezone
from typing import Optional, Sequence

from cryptowatch.analysis.models import PriceChangeStats
from cryptowatch.market.models import Candle

# Window length in minutes per stats timeframe label
TIMEFRAME_MINUTES: dict[str, int] = {
    "1h": 60,
    "4h": 240,
    "24h": 1440,
}

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080}


def bar_minutes(candle_timeframe: str) -> int:
    """Minutes per candle for a CCXT timeframe label such as ``5m`` or ``1h``.

    Raises ``ValueError`` for labels that are not ``<n><m|h|d|w>``.
    """
    count, unit = candle_timeframe[:-1], candle_timeframe[-1:]
    if unit not in _UNIT_MINUTES or not count.isdigit() or int(count) < 1:
        raise ValueError(f"Unsupported candle timeframe: {candle_timeframe!r}")
    return int(count) * _UNIT_MINUTES[unit]


def window_bars(timeframe: str, candle_timeframe: str = "1m") -> int:
    """Number of *candle_timeframe* bars spanning the stats *timeframe*.

    Never fewer than two, so the newest bar is always compared with at
    least one earlier bar.
    """
    return max(2, TIMEFRAME_MINUTES[timeframe] // bar_minutes(candle_timeframe))


def price_change_stats(
    symbol: str,
    candles: Sequence[Candle],
    timeframe: str = "24h",
    now: Optional[datetime] = None,
    candle_timeframe: str = "1m",
) -> Optional[PriceChangeStats]:
    """Summarise price movement over the last ``1h``, ``4h`` or ``24h``.

    *candle_timeframe* is the duration of each candle in *candles*; the
    window spans as many bars as fit in *timeframe*.  Unknown timeframe
    labels fall back to ``24h``.  When the history is shorter than the
    window, the whole history is used.  Returns ``None`` with fewer than
    two candles.
    """
    if len(candles) < 2:
        return None
    if timeframe not in TIMEFRAME_MINUTES:
        timeframe = "24h"
    if now is None:
        now = datetime.now(timezone.utc)

    start = max(0, len(candles) - window_bars(timeframe, candle_timeframe))
    window = candles[start:]

    current = window[-1].close
    start_price = window[0].close
    change = current - start_price
    change_pct = round(change / start_price * 100.0, 2) if start_price else 0.0

    return PriceChangeStats(
        symbol=symbol,
        timeframe=timeframe,
        current_price=current,
        start_price=start_price,
        change=change,
        change_percent=change_pct,
        high=max(c.high for c in window),
        low=min(c.low for c in window),
        volume=sum(c.volume for c in window),
        timestamp=now.isoformat(),
    )
