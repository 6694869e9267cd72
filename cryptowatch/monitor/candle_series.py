"""Bounded per-symbol candle history.

A fixed-capacity ring buffer of ``Candle`` objects.  Timestamps are
strictly increasing except that the last bar may be replaced in place
while it is still forming.
"""

import logging
from collections import deque
from enum import Enum
from typing import Iterable, Optional

from cryptowatch.market.models import Candle

logger = logging.getLogger("cryptowatch.series")

DEFAULT_MAX_LENGTH = 1000


class AppendResult(str, Enum):
    APPENDED = "appended"
    REPLACED = "replaced"
    DISCARDED = "discarded"


class CandleSeries:
    """Sliding window of the most recent candles for one symbol.

    Args:
        symbol: Symbol this series belongs to (used for log context).
        max_length: Capacity; the oldest candle is evicted when exceeded.
    """

    def __init__(self, symbol: str, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {max_length}")
        self._symbol = symbol
        self._candles: deque[Candle] = deque(maxlen=max_length)

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def max_length(self) -> int:
        return self._candles.maxlen

    @property
    def last(self) -> Optional[Candle]:
        """Most recent candle, or ``None`` when empty."""
        return self._candles[-1] if self._candles else None

    def __len__(self) -> int:
        return len(self._candles)

    # ── Mutation ─────────────────────────────────────────────────────────

    def append(self, candle: Candle) -> AppendResult:
        """Add *candle* to the series.

        - Newer timestamp than the last bar → appended (evicting the
          oldest bar when full).
        - Same timestamp as the last bar → replaces it (in-progress bar).
        - Older timestamp → discarded and logged; never raises.
        """
        last = self.last
        if last is None or candle.timestamp_ms > last.timestamp_ms:
            self._candles.append(candle)
            return AppendResult.APPENDED
        if candle.timestamp_ms == last.timestamp_ms:
            self._candles[-1] = candle
            return AppendResult.REPLACED

        logger.debug(
            "Discarded out-of-order candle for %s: %d < last %d",
            self._symbol, candle.timestamp_ms, last.timestamp_ms,
        )
        return AppendResult.DISCARDED

    def extend(self, candles: Iterable[Candle]) -> int:
        """Append many candles in order; return how many were kept."""
        kept = 0
        for candle in candles:
            if self.append(candle) is not AppendResult.DISCARDED:
                kept += 1
        return kept

    def clear(self) -> None:
        self._candles.clear()

    # ── Queries ──────────────────────────────────────────────────────────

    def latest(self, n: int) -> list[Candle]:
        """Return the last *n* candles, oldest first."""
        if n <= 0:
            return []
        if n >= len(self._candles):
            return list(self._candles)
        return list(self._candles)[-n:]

    def all(self) -> list[Candle]:
        """Return a copy of every stored candle, oldest first."""
        return list(self._candles)

    def closes(self) -> list[float]:
        return [c.close for c in self._candles]

    def highs(self) -> list[float]:
        return [c.high for c in self._candles]

    def lows(self) -> list[float]:
        return [c.low for c in self._candles]

    def volumes(self) -> list[float]:
        return [c.volume for c in self._candles]
