"""Cross-exchange arbitrage scanning.  Pure functions, no I/O.

Compares simultaneous quotes for one symbol across exchanges and reports
every pair whose spread exceeds a minimum profit percentage.
"""

import math
from datetime import datetime, timezone
from itertools import combinations
from typing import Iterable, Mapping, Optional

from cryptowatch.analysis.models import ArbitrageOpportunity
from cryptowatch.market.models import ExchangeQuote


def _usable_prices(quotes: Mapping[str, object]) -> list[tuple[str, float]]:
    """Extract (exchange, price) for successful quotes with a real price.

    Failures and ``None`` entries are skipped; they are never treated as
    a price of zero.
    """
    prices: list[tuple[str, float]] = []
    for exchange, quote in quotes.items():
        if not isinstance(quote, ExchangeQuote):
            continue
        if not math.isfinite(quote.price) or quote.price <= 0:
            continue
        prices.append((exchange, quote.price))
    return prices


def scan_arbitrage(
    symbol: str,
    quotes: Mapping[str, object],
    min_profit_percentage: float = 0.1,
    now: Optional[datetime] = None,
) -> list[ArbitrageOpportunity]:
    """Find every exchange pair whose spread beats *min_profit_percentage*.

    For each unordered pair:
        diff = |p1 − p2|
        avg  = (p1 + p2) / 2
        pct  = diff / avg × 100

    The cheaper venue is the buy side.  Results are sorted by percentage,
    highest first.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    ts = now.isoformat()

    opportunities: list[ArbitrageOpportunity] = []
    for (ex1, p1), (ex2, p2) in combinations(_usable_prices(quotes), 2):
        diff = abs(p1 - p2)
        avg = (p1 + p2) / 2.0
        pct = diff / avg * 100.0
        if pct <= min_profit_percentage:
            continue

        if p1 < p2:
            buy_ex, buy_p, sell_ex, sell_p = ex1, p1, ex2, p2
        else:
            buy_ex, buy_p, sell_ex, sell_p = ex2, p2, ex1, p1

        opportunities.append(
            ArbitrageOpportunity(
                symbol=symbol,
                buy_exchange=buy_ex,
                sell_exchange=sell_ex,
                buy_price=buy_p,
                sell_price=sell_p,
                price_difference=diff,
                percentage=pct,
                timestamp=ts,
            )
        )

    opportunities.sort(key=lambda o: o.percentage, reverse=True)
    return opportunities


def rank_opportunities(
    opportunities: Iterable[ArbitrageOpportunity],
    max_count: int = 10,
) -> list[ArbitrageOpportunity]:
    """Merge opportunities from many symbols and keep the top *max_count*."""
    ranked = sorted(opportunities, key=lambda o: o.percentage, reverse=True)
    return ranked[:max_count]
