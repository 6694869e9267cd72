"""cryptowatch — application configuration.

Loads .env variables into a typed config object.
Validates the monitoring parameters before the scheduler starts.
"""

import math
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from cryptowatch.analysis.stats import bar_minutes
from cryptowatch.models.indicator_config import IndicatorConfig


_DEFAULT_SYMBOLS = "BTC/USDT,ETH/USDT,BNB/USDT,ADA/USDT,SOL/USDT"
_DEFAULT_EXCHANGES = "binance,okx"


class ConfigurationError(ValueError):
    """Raised when a configuration value is missing, unparseable or out of range."""


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    exchanges: tuple[str, ...] = ("binance", "okx")
    primary_exchange: str = "binance"
    watched_symbols: tuple[str, ...] = (
        "BTC/USDT", "ETH/USDT", "BNB/USDT", "ADA/USDT", "SOL/USDT",
    )
    candle_timeframe: str = "1m"
    quote_interval_seconds: float = 30.0
    indicator_interval_seconds: float = 300.0
    max_history_length: int = 1000
    backfill_limit: int = 100
    fetch_timeout_seconds: float = 10.0
    anomaly_threshold: float = 5.0
    arbitrage_min_profit_pct: float = 0.1
    arbitrage_max_opportunities: int = 10
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    log_level: str = "INFO"
    api_port: int = 8080


# ── Env parsing helpers ──────────────────────────────────────────────────


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _env_list(name: str, default: str, transform=str.strip) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(transform(v) for v in raw.split(",") if v.strip())


def _env_int_list(name: str, default: str) -> tuple[int, ...]:
    raw = os.environ.get(name, default)
    try:
        return tuple(int(v) for v in raw.split(",") if v.strip())
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a comma-separated list of integers, got {raw!r}"
        ) from None


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Every variable is optional.  Raises ``ConfigurationError`` naming the
    variable when a value cannot be parsed.  Range checks are left to
    :func:`validate_config` so the scheduler can fail fast at start.
    """
    load_dotenv(dotenv_path=env_path)

    exchanges = _env_list(
        "EXCHANGES", _DEFAULT_EXCHANGES, transform=lambda v: v.strip().lower()
    )
    primary = os.environ.get("PRIMARY_EXCHANGE", "").strip().lower()
    if not primary:
        primary = exchanges[0] if exchanges else ""

    indicators = IndicatorConfig(
        sma_periods=_env_int_list("SMA_PERIODS", "20,50"),
        ema_periods=_env_int_list("EMA_PERIODS", "12,26"),
        rsi_period=_env_int("RSI_PERIOD", "14"),
        macd_fast=_env_int("MACD_FAST", "12"),
        macd_slow=_env_int("MACD_SLOW", "26"),
        macd_signal=_env_int("MACD_SIGNAL", "9"),
        bollinger_period=_env_int("BOLLINGER_PERIOD", "20"),
        bollinger_multiplier=_env_float("BOLLINGER_MULTIPLIER", "2"),
        stochastic_k=_env_int("STOCHASTIC_K", "14"),
        stochastic_d=_env_int("STOCHASTIC_D", "3"),
        atr_period=_env_int("ATR_PERIOD", "14"),
        williams_r_period=_env_int("WILLIAMS_R_PERIOD", "14"),
        cci_period=_env_int("CCI_PERIOD", "20"),
        sr_lookback=_env_int("SR_LOOKBACK", "20"),
        rsi_buy_threshold=_env_float("RSI_BUY_THRESHOLD", "30"),
        rsi_sell_threshold=_env_float("RSI_SELL_THRESHOLD", "70"),
        bullish_threshold=_env_float("BULLISH_SIGNAL_THRESHOLD", "0.6"),
        bearish_threshold=_env_float("BEARISH_SIGNAL_THRESHOLD", "0.4"),
    )

    return Config(
        exchanges=exchanges,
        primary_exchange=primary,
        watched_symbols=_env_list(
            "WATCHED_SYMBOLS", _DEFAULT_SYMBOLS,
            transform=lambda v: v.strip().upper(),
        ),
        candle_timeframe=os.environ.get("CANDLE_TIMEFRAME", "1m"),
        quote_interval_seconds=_env_float("PRICE_UPDATE_INTERVAL", "30"),
        indicator_interval_seconds=_env_float("INDICATORS_UPDATE_INTERVAL", "300"),
        max_history_length=_env_int("MAX_PRICE_HISTORY_LENGTH", "1000"),
        backfill_limit=_env_int("HISTORY_BACKFILL_LIMIT", "100"),
        fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", "10"),
        anomaly_threshold=_env_float("PRICE_ANOMALY_THRESHOLD", "5"),
        arbitrage_min_profit_pct=_env_float("MIN_PROFIT_PERCENTAGE", "0.1"),
        arbitrage_max_opportunities=_env_int("MAX_OPPORTUNITIES", "10"),
        indicators=indicators,
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_env_int("API_PORT", "8080"),
    )


def validate_config(config: Config) -> None:
    """Check every monitoring parameter; raise ``ConfigurationError`` listing all problems."""
    problems: list[str] = []

    if not config.watched_symbols:
        problems.append("at least one watched symbol is required")
    if not config.exchanges:
        problems.append("at least one exchange is required")
    elif config.primary_exchange not in config.exchanges:
        problems.append(
            f"primary exchange '{config.primary_exchange}' is not in "
            f"exchanges ({', '.join(config.exchanges)})"
        )

    try:
        bar_minutes(config.candle_timeframe)
    except ValueError as exc:
        problems.append(str(exc))

    if config.quote_interval_seconds <= 0:
        problems.append("quote interval must be positive")
    if config.indicator_interval_seconds <= 0:
        problems.append("indicator interval must be positive")
    if config.fetch_timeout_seconds <= 0:
        problems.append("fetch timeout must be positive")
    if config.max_history_length < 1:
        problems.append("history cap must be at least 1")
    if config.backfill_limit < 0 or config.backfill_limit > config.max_history_length:
        problems.append(
            f"backfill limit must be between 0 and the history cap "
            f"({config.max_history_length}), got {config.backfill_limit}"
        )
    if not (config.anomaly_threshold > 0 and math.isfinite(config.anomaly_threshold)):
        problems.append("anomaly z-score threshold must be a positive number")
    if config.arbitrage_min_profit_pct < 0:
        problems.append("arbitrage minimum profit percentage must not be negative")
    if config.arbitrage_max_opportunities < 1:
        problems.append("arbitrage max opportunities must be at least 1")

    ind = config.indicators
    for name, value in ind.periods().items():
        if value < 1:
            problems.append(f"{name} must be at least 1, got {value}")
    if ind.macd_fast >= ind.macd_slow:
        problems.append(
            f"MACD fast period ({ind.macd_fast}) must be below slow period ({ind.macd_slow})"
        )
    if ind.bollinger_multiplier <= 0:
        problems.append("Bollinger multiplier must be positive")
    if not (0.0 <= ind.bearish_threshold < ind.bullish_threshold <= 1.0):
        problems.append(
            "signal thresholds must satisfy 0 <= bearish < bullish <= 1, got "
            f"bearish={ind.bearish_threshold}, bullish={ind.bullish_threshold}"
        )
    if not (0.0 <= ind.rsi_buy_threshold < ind.rsi_sell_threshold <= 100.0):
        problems.append(
            "RSI thresholds must satisfy 0 <= buy < sell <= 100, got "
            f"buy={ind.rsi_buy_threshold}, sell={ind.rsi_sell_threshold}"
        )

    if problems:
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
