"""Market data source protocol and fan-out helpers.

Defines the interface every exchange adapter must implement, plus the
timeout-bounded, partial-failure-tolerant quote snapshot used by the
scheduler on every tick.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence, Union, runtime_checkable

from cryptowatch.market.models import (
    Candle,
    DataSourceFailure,
    ExchangeQuote,
    FetchFailure,
)

logger = logging.getLogger("cryptowatch.source")

QuoteResult = Union[ExchangeQuote, FetchFailure]


@runtime_checkable
class MarketDataSource(Protocol):
    """Interface that all market data adapters must satisfy.

    Both methods raise ``DataSourceFailure`` when the venue cannot answer.
    """

    async def fetch_quote(self, exchange: str, symbol: str) -> ExchangeQuote:
        """Return the current quote for *symbol* on *exchange*."""
        ...

    async def fetch_candles(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        limit: int,
    ) -> list[Candle]:
        """Return up to *limit* candles, oldest-first."""
        ...


async def fetch_quote_result(
    source: MarketDataSource,
    exchange: str,
    symbol: str,
    timeout: float,
) -> QuoteResult:
    """Fetch one quote, converting every failure into a ``FetchFailure``.

    A fetch that exceeds *timeout* seconds counts as a failure for this
    tick; it is not retried here.
    """
    try:
        return await asyncio.wait_for(source.fetch_quote(exchange, symbol), timeout)
    except asyncio.TimeoutError:
        reason = f"timed out after {timeout:.1f}s"
    except DataSourceFailure as exc:
        reason = exc.reason
    except Exception as exc:  # adapter bug or unexpected transport error
        reason = f"{type(exc).__name__}: {exc}"

    logger.warning("Quote fetch failed [%s %s]: %s", exchange, symbol, reason)
    return FetchFailure(exchange=exchange, symbol=symbol, reason=reason)


async def fetch_quote_snapshot(
    source: MarketDataSource,
    exchanges: Sequence[str],
    symbol: str,
    timeout: float,
) -> dict[str, QuoteResult]:
    """Fetch *symbol* from every exchange concurrently.

    Returns ``{exchange: ExchangeQuote | FetchFailure}`` in *exchanges*
    order.  Any subset may fail without affecting the others.
    """
    results = await asyncio.gather(
        *(fetch_quote_result(source, ex, symbol, timeout) for ex in exchanges)
    )
    return dict(zip(exchanges, results))


def available_quotes(snapshot) -> dict[str, ExchangeQuote]:
    """Keep only successfully fetched quotes."""
    return {
        ex: q for ex, q in snapshot.items() if isinstance(q, ExchangeQuote)
    }
