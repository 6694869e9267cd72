"""Signal aggregation.  Pure functions, no I/O.

Given an indicator snapshot and the close series, collects BUY/SELL
votes from RSI, the MACD histogram and the Bollinger bands, then turns
the vote split into a directional verdict with a strength in [0, 1].
"""

from typing import Optional, Sequence

from cryptowatch.analysis.models import (
    IndicatorSet,
    Signal,
    SignalComponent,
    Verdict,
    Vote,
)


def _rsi_vote(
    rsi: Sequence[float], buy_below: float, sell_above: float
) -> Optional[SignalComponent]:
    if not rsi:
        return None
    last = rsi[-1]
    if last < buy_below:
        return SignalComponent("RSI", Vote.BUY, f"RSI oversold ({last:.1f})")
    if last > sell_above:
        return SignalComponent("RSI", Vote.SELL, f"RSI overbought ({last:.1f})")
    return None


def _macd_vote(histogram: Sequence[float]) -> Optional[SignalComponent]:
    if len(histogram) < 2:
        return None
    prev, current = histogram[-2], histogram[-1]
    if current > 0 and prev <= 0:
        return SignalComponent("MACD", Vote.BUY, "MACD bullish cross")
    if current < 0 and prev >= 0:
        return SignalComponent("MACD", Vote.SELL, "MACD bearish cross")
    return None


def _bollinger_vote(
    upper: Sequence[float], lower: Sequence[float], closes: Sequence[float]
) -> Optional[SignalComponent]:
    if not upper or not lower or not closes:
        return None
    price = closes[-1]
    if price <= lower[-1]:
        return SignalComponent(
            "Bollinger", Vote.BUY, "Price touched the lower Bollinger band"
        )
    if price >= upper[-1]:
        return SignalComponent(
            "Bollinger", Vote.SELL, "Price touched the upper Bollinger band"
        )
    return None


def aggregate_signals(
    indicators: IndicatorSet,
    closes: Sequence[float],
    rsi_buy: float = 30.0,
    rsi_sell: float = 70.0,
    bullish_threshold: float = 0.6,
    bearish_threshold: float = 0.4,
) -> Signal:
    """Combine RSI, MACD and Bollinger votes into one ``Signal``.

    Votes:
        - RSI below *rsi_buy* → BUY, above *rsi_sell* → SELL.
        - MACD histogram crossing from ≤0 to >0 → BUY, ≥0 to <0 → SELL.
        - Last close at/below the lower band → BUY, at/above upper → SELL.

    strength = |bullish / (bullish + bearish) − 0.5| × 2, clamped to
    [0, 1].  The verdict is BULLISH when the bullish ratio exceeds
    *bullish_threshold*, BEARISH when it is below *bearish_threshold*,
    NEUTRAL otherwise.  No votes at all gives NEUTRAL with strength 0.

    Indicators with no data cast no vote.
    """
    components = [
        c for c in (
            _rsi_vote(indicators.rsi, rsi_buy, rsi_sell),
            _macd_vote(indicators.macd.histogram),
            _bollinger_vote(
                indicators.bollinger.upper, indicators.bollinger.lower, closes
            ),
        )
        if c is not None
    ]

    bullish = sum(1 for c in components if c.direction is Vote.BUY)
    bearish = sum(1 for c in components if c.direction is Vote.SELL)
    total = bullish + bearish
    if total == 0:
        return Signal(overall=Verdict.NEUTRAL, strength=0.0, components=components)

    ratio = bullish / total
    strength = min(max(abs(ratio - 0.5) * 2.0, 0.0), 1.0)

    if ratio > bullish_threshold:
        overall = Verdict.BULLISH
    elif ratio < bearish_threshold:
        overall = Verdict.BEARISH
    else:
        overall = Verdict.NEUTRAL

    return Signal(overall=overall, strength=strength, components=components)
