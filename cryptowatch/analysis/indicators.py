"""Technical indicators — SMA, EMA, RSI, MACD, Bollinger, Stochastic, ATR,
Williams %R, CCI and support/resistance levels.  Pure functions, no I/O.

Every series function returns a list aligned to the *end* of its input
and returns ``[]`` when the input is shorter than the indicator's
minimum window.  Degenerate windows (zero range, zero deviation) map to
a finite sentinel; no function ever emits NaN or infinity for finite
input.
"""

import logging
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Sequence

from cryptowatch.analysis.models import (
    BollingerBands,
    IndicatorSet,
    MACDResult,
    Signal,
    SRLevel,
    StochasticResult,
    SupportResistance,
)
from cryptowatch.analysis.signals import aggregate_signals
from cryptowatch.market.models import Candle
from cryptowatch.models.indicator_config import IndicatorConfig

logger = logging.getLogger("cryptowatch.indicators")


def _check_period(name: str, period: int) -> None:
    if period < 1:
        raise ValueError(f"{name} period must be at least 1, got {period}")


def _check_hlc(
    high: Sequence[float], low: Sequence[float], close: Sequence[float]
) -> None:
    if not (len(high) == len(low) == len(close)):
        raise ValueError(
            "high/low/close must have equal lengths, got "
            f"{len(high)}/{len(low)}/{len(close)}"
        )


# ── Moving averages ──────────────────────────────────────────────────────


def calculate_sma(data: Sequence[float], period: int = 20) -> list[float]:
    """Simple Moving Average over a trailing window, slid one bar at a time.

    Returns ``len(data) - period + 1`` values.
    """
    _check_period("SMA", period)
    if len(data) < period:
        return []

    sma: list[float] = []
    for i in range(period - 1, len(data)):
        window = data[i - period + 1 : i + 1]
        sma.append(sum(window) / period)
    return sma


def calculate_ema(data: Sequence[float], period: int = 20) -> list[float]:
    """Exponential Moving Average.

    ``EMA_today = value × k + EMA_yesterday × (1 - k)`` with
    ``k = 2 / (period + 1)``.

    The series is seeded with the first data point (no SMA warm-up), so
    the output has the same length as *data*.  Still requires at least
    *period* points so a too-short history yields ``[]``.
    """
    _check_period("EMA", period)
    if len(data) < period:
        return []

    k = 2.0 / (period + 1)
    ema: list[float] = [float(data[0])]
    for value in data[1:]:
        ema.append(value * k + ema[-1] * (1 - k))
    return ema


# ── RSI ──────────────────────────────────────────────────────────────────


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_rsi(data: Sequence[float], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = mean of the first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RS = avg_gain / avg_loss
        6. RSI = 100 - 100 / (1 + RS); a zero average loss gives 100.

    Requires at least ``period + 2`` values.  Returns
    ``len(data) - period - 1`` values, one per smoothing step after the
    seed averages.
    """
    _check_period("RSI", period)
    if len(data) < period + 2:
        return []

    deltas = [data[i] - data[i - 1] for i in range(1, len(data))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    rsi: list[float] = []

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        rsi.append(_rsi_from_avgs(avg_gain, avg_loss))

    return rsi


# ── MACD ─────────────────────────────────────────────────────────────────


def _left_pad(values: list[float], length: int) -> list[float]:
    if len(values) >= length:
        return values
    return [values[0]] * (length - len(values)) + values


def calculate_macd(
    data: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    """Moving Average Convergence Divergence.

    MACD      = EMA(fast) − EMA(slow)
    Signal    = EMA(MACD, *signal_period*)
    Histogram = MACD − Signal

    The two EMA series are aligned by left-padding the shorter one with
    its first value.  Returns an empty ``MACDResult`` when either EMA is
    unavailable.
    """
    _check_period("MACD signal", signal_period)
    fast = calculate_ema(data, fast_period)
    slow = calculate_ema(data, slow_period)
    if not fast or not slow:
        return MACDResult()

    length = max(len(fast), len(slow))
    fast = _left_pad(fast, length)
    slow = _left_pad(slow, length)

    macd_line = [f - s for f, s in zip(fast, slow)]
    signal_line = calculate_ema(macd_line, signal_period)
    histogram = [m - s for m, s in zip(macd_line, signal_line)]

    return MACDResult(macd=macd_line, signal=signal_line, histogram=histogram)


# ── Bollinger Bands ──────────────────────────────────────────────────────


def calculate_bollinger(
    data: Sequence[float],
    period: int = 20,
    multiplier: float = 2.0,
) -> BollingerBands:
    """Calculate Bollinger Bands.

    Middle = SMA(close, *period*)
    Upper  = middle + *multiplier* × σ
    Lower  = middle − *multiplier* × σ

    σ is the population standard deviation of the same trailing window.
    Each band has ``len(data) - period + 1`` values.
    """
    _check_period("Bollinger", period)
    if len(data) < period:
        return BollingerBands()

    upper: list[float] = []
    middle: list[float] = []
    lower: list[float] = []

    for i in range(period - 1, len(data)):
        window = data[i - period + 1 : i + 1]
        sma = sum(window) / period
        variance = sum((x - sma) ** 2 for x in window) / period
        sigma = math.sqrt(variance)

        middle.append(sma)
        upper.append(sma + multiplier * sigma)
        lower.append(sma - multiplier * sigma)

    return BollingerBands(upper=upper, middle=middle, lower=lower)


# ── Oscillators ──────────────────────────────────────────────────────────


def calculate_stochastic(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    k_period: int = 14,
    d_period: int = 3,
) -> StochasticResult:
    """Stochastic oscillator.

    %K = (close − lowest low) / (highest high − lowest low) × 100
    %D = SMA(%K, *d_period*)

    A window with no range (highest high == lowest low) gives %K = 50.
    """
    _check_hlc(high, low, close)
    _check_period("Stochastic %K", k_period)
    _check_period("Stochastic %D", d_period)
    if len(close) < k_period:
        return StochasticResult()

    k_values: list[float] = []
    for i in range(k_period - 1, len(close)):
        highest = max(high[i - k_period + 1 : i + 1])
        lowest = min(low[i - k_period + 1 : i + 1])
        span = highest - lowest
        if span == 0:
            k_values.append(50.0)
        else:
            k_values.append((close[i] - lowest) / span * 100.0)

    return StochasticResult(k=k_values, d=calculate_sma(k_values, d_period))


def calculate_williams_r(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Williams %R = (highest high − close) / (highest high − lowest low) × −100.

    Ranges from −100 (close at the low) to 0 (close at the high); a
    window with no range gives −50.
    """
    _check_hlc(high, low, close)
    _check_period("Williams %R", period)
    if len(close) < period:
        return []

    values: list[float] = []
    for i in range(period - 1, len(close)):
        highest = max(high[i - period + 1 : i + 1])
        lowest = min(low[i - period + 1 : i + 1])
        span = highest - lowest
        if span == 0:
            values.append(-50.0)
        else:
            values.append((highest - close[i]) / span * -100.0)
    return values


def calculate_cci(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    period: int = 20,
) -> list[float]:
    """Commodity Channel Index.

    typical = (H + L + C) / 3
    CCI     = (typical − SMA(typical)) / (0.015 × mean absolute deviation)

    A window whose mean deviation is zero gives 0.
    """
    _check_hlc(high, low, close)
    _check_period("CCI", period)
    if len(close) < period:
        return []

    typical = [(h + l + c) / 3.0 for h, l, c in zip(high, low, close)]
    sma = calculate_sma(typical, period)

    cci: list[float] = []
    for j, mean in enumerate(sma):
        i = j + period - 1
        window = typical[i - period + 1 : i + 1]
        mean_deviation = sum(abs(tp - mean) for tp in window) / period
        if mean_deviation == 0:
            cci.append(0.0)
        else:
            cci.append((typical[i] - mean) / (0.015 * mean_deviation))
    return cci


# ── Volatility ───────────────────────────────────────────────────────────


def calculate_atr(
    high: Sequence[float],
    low: Sequence[float],
    close: Sequence[float],
    period: int = 14,
) -> list[float]:
    """Average True Range.

    TR = max(high − low, |high − prev_close|, |low − prev_close|)

    The ATR series is a plain SMA(*period*) of the true ranges, not
    Wilder's smoothing.  Requires ``period + 1`` bars.
    """
    _check_hlc(high, low, close)
    _check_period("ATR", period)

    true_ranges: list[float] = []
    for i in range(1, len(close)):
        true_ranges.append(
            max(
                high[i] - low[i],
                abs(high[i] - close[i - 1]),
                abs(low[i] - close[i - 1]),
            )
        )
    return calculate_sma(true_ranges, period)


# ── Support / Resistance ─────────────────────────────────────────────────


def detect_support_resistance(
    data: Sequence[float],
    lookback: int = 20,
) -> SupportResistance:
    """Find local extrema in *data*.

    A point is resistance when every value within ±*lookback* bars is
    ``<=`` it, and support when every such value is ``>=`` it.  Only
    indices with a full window on both sides are considered.
    """
    _check_period("Support/resistance lookback", lookback)
    support: list[SRLevel] = []
    resistance: list[SRLevel] = []

    for i in range(lookback, len(data) - lookback):
        price = data[i]
        left = data[i - lookback : i]
        right = data[i + 1 : i + lookback + 1]

        if all(p <= price for p in left) and all(p <= price for p in right):
            resistance.append(SRLevel(price=price, index=i))
        if all(p >= price for p in left) and all(p >= price for p in right):
            support.append(SRLevel(price=price, index=i))

    return SupportResistance(support=support, resistance=resistance)


# ── Full snapshot ────────────────────────────────────────────────────────


def calculate_all(
    symbol: str,
    candles: Sequence[Candle],
    config: Optional[IndicatorConfig] = None,
    now: Optional[datetime] = None,
) -> IndicatorSet:
    """Compute every indicator and the aggregated signal for *candles*.

    Indicators without enough history come back empty and are logged at
    debug level; they cast no vote in the signal.
    """
    if config is None:
        config = IndicatorConfig()
    if now is None:
        now = datetime.now(timezone.utc)

    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]

    sma = {p: calculate_sma(closes, p) for p in config.sma_periods}
    ema = {p: calculate_ema(closes, p) for p in config.ema_periods}
    rsi = calculate_rsi(closes, config.rsi_period)
    macd = calculate_macd(
        closes, config.macd_fast, config.macd_slow, config.macd_signal
    )
    bollinger = calculate_bollinger(
        closes, config.bollinger_period, config.bollinger_multiplier
    )
    stochastic = calculate_stochastic(
        highs, lows, closes, config.stochastic_k, config.stochastic_d
    )
    atr = calculate_atr(highs, lows, closes, config.atr_period)
    williams_r = calculate_williams_r(highs, lows, closes, config.williams_r_period)
    cci = calculate_cci(highs, lows, closes, config.cci_period)
    levels = detect_support_resistance(closes, config.sr_lookback)

    skipped = [name for name, series in (
        *((f"SMA({p})", v) for p, v in sma.items()),
        *((f"EMA({p})", v) for p, v in ema.items()),
        ("RSI", rsi),
        ("MACD", macd.histogram),
        ("Bollinger", bollinger.middle),
        ("Stochastic", stochastic.k),
        ("ATR", atr),
        ("Williams %R", williams_r),
        ("CCI", cci),
    ) if not series]
    if skipped:
        logger.debug(
            "Insufficient history for %s (%d candles): %s",
            symbol, len(closes), ", ".join(skipped),
        )

    snapshot = IndicatorSet(
        symbol=symbol,
        sma=sma,
        ema=ema,
        rsi=rsi,
        macd=macd,
        bollinger=bollinger,
        stochastic=stochastic,
        atr=atr,
        williams_r=williams_r,
        cci=cci,
        support_resistance=levels,
        signal=Signal(),
        candle_count=len(closes),
        timestamp=now.isoformat(),
    )
    signal = aggregate_signals(
        snapshot,
        closes,
        rsi_buy=config.rsi_buy_threshold,
        rsi_sell=config.rsi_sell_threshold,
        bullish_threshold=config.bullish_threshold,
        bearish_threshold=config.bearish_threshold,
    )
    return replace(snapshot, signal=signal)
