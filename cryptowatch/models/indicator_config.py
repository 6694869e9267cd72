"""Indicator configuration dataclass.

Holds every period and vote threshold consumed by the indicator library
and the signal aggregator.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class IndicatorConfig:
    """Periods and thresholds for one ``calculate_all`` run.

    Defaults match the classic textbook settings (RSI 14, MACD 12/26/9,
    Bollinger 20/2, Stochastic 14/3, ATR 14, Williams %R 14, CCI 20).
    """

    sma_periods: tuple[int, ...] = (20, 50)
    ema_periods: tuple[int, ...] = (12, 26)
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bollinger_period: int = 20
    bollinger_multiplier: float = 2.0
    stochastic_k: int = 14
    stochastic_d: int = 3
    atr_period: int = 14
    williams_r_period: int = 14
    cci_period: int = 20
    sr_lookback: int = 20
    rsi_buy_threshold: float = 30.0
    rsi_sell_threshold: float = 70.0
    bullish_threshold: float = 0.6
    bearish_threshold: float = 0.4

    def periods(self) -> dict[str, int]:
        """Return every integer period keyed by its setting name."""
        named = {
            "rsi_period": self.rsi_period,
            "macd_fast": self.macd_fast,
            "macd_slow": self.macd_slow,
            "macd_signal": self.macd_signal,
            "bollinger_period": self.bollinger_period,
            "stochastic_k": self.stochastic_k,
            "stochastic_d": self.stochastic_d,
            "atr_period": self.atr_period,
            "williams_r_period": self.williams_r_period,
            "cci_period": self.cci_period,
            "sr_lookback": self.sr_lookback,
        }
        for p in self.sma_periods:
            named[f"sma_{p}"] = p
        for p in self.ema_periods:
            named[f"ema_{p}"] = p
        return named
