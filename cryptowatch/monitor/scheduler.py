"""MonitoringScheduler — orchestrates the quote and indicator loops.

Owns every ``CandleSeries`` and the ``AlertRegistry``.  Two loops run as
concurrent ``asyncio`` tasks:

- the quote loop (default 30 s) fetches a multi-exchange snapshot per
  symbol, appends the latest candle, checks alerts, detects anomalies
  and scans for arbitrage;
- the indicator loop (default 5 min) recomputes the full
  ``IndicatorSet`` and signal per symbol.

Both can also be driven one cycle at a time via :meth:`run_quote_tick`
and :meth:`run_indicator_tick`.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from cryptowatch.analysis.anomaly import detect_anomaly
from cryptowatch.analysis.arbitrage import rank_opportunities, scan_arbitrage
from cryptowatch.analysis.indicators import calculate_all
from cryptowatch.analysis.models import (
    ArbitrageOpportunity,
    IndicatorSet,
    PriceChangeStats,
)
from cryptowatch.analysis.stats import price_change_stats
from cryptowatch.config import Config, validate_config
from cryptowatch.market.models import Candle
from cryptowatch.market.source import (
    MarketDataSource,
    available_quotes,
    fetch_quote_snapshot,
)
from cryptowatch.monitor.alerts import (
    AlertDirection,
    AlertRegistry,
    PriceAlert,
)
from cryptowatch.monitor.candle_series import AppendResult, CandleSeries
from cryptowatch.monitor.events import (
    ARBITRAGE_OPPORTUNITIES,
    INDICATORS_UPDATE,
    PRICE_ALERT,
    PRICE_ANOMALY,
    PRICE_UPDATE,
    EventBus,
)

logger = logging.getLogger("cryptowatch.scheduler")


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class MonitoringScheduler:
    """Lifecycle manager for the monitoring loops.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        source: Any ``MarketDataSource`` implementation.
        bus:    ``EventBus`` receiving every emitted event.  A private bus
                is created when omitted.
    """

    def __init__(
        self,
        config: Config,
        source: MarketDataSource,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config
        self._source = source
        self._bus = bus if bus is not None else EventBus()
        self._alerts = AlertRegistry(config.primary_exchange)

        self._series: dict[str, CandleSeries] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._indicators: dict[str, IndicatorSet] = {}
        self._opportunities: list[ArbitrageOpportunity] = []

        self._state = SchedulerState.STOPPED
        self._shutdown = asyncio.Event()
        self._start_done = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        # Bumped on every stop(); a tick that started under an older
        # generation discards its results.
        self._generation = 0

        self._started_at: Optional[str] = None
        self._quote_tick_count = 0
        self._indicator_tick_count = 0
        self._last_quote_tick_at: Optional[str] = None
        self._last_indicator_tick_at: Optional[str] = None

        for symbol in config.watched_symbols:
            self._register(symbol)

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def alerts(self) -> AlertRegistry:
        return self._alerts

    @property
    def watched_symbols(self) -> list[str]:
        return list(self._series)

    @property
    def latest_opportunities(self) -> list[ArbitrageOpportunity]:
        """Ranked opportunities from the most recent quote tick."""
        return list(self._opportunities)

    def history(self, symbol: str, limit: int = 100) -> list[Candle]:
        """Return the last *limit* candles for *symbol*.

        Raises ``KeyError`` for a symbol that is not watched.
        """
        return self._series[symbol].latest(limit)

    def price_stats(self, symbol: str, timeframe: str = "24h") -> Optional[PriceChangeStats]:
        return price_change_stats(
            symbol,
            self._series[symbol].all(),
            timeframe,
            candle_timeframe=self._config.candle_timeframe,
        )

    def latest_indicators(self, symbol: str) -> Optional[IndicatorSet]:
        """IndicatorSet from the most recent indicator tick, if any."""
        return self._indicators.get(symbol)

    def status(self) -> dict:
        """Return scheduler metadata for the status endpoint."""
        return {
            "state": self._state.value,
            "running": self._state is SchedulerState.RUNNING,
            "started_at": self._started_at,
            "exchanges": list(self._config.exchanges),
            "primary_exchange": self._config.primary_exchange,
            "watched_symbols": self.watched_symbols,
            "history_lengths": {s: len(series) for s, series in self._series.items()},
            "active_alerts": len(self._alerts.active()),
            "quote_tick_count": self._quote_tick_count,
            "indicator_tick_count": self._indicator_tick_count,
            "last_quote_tick_at": self._last_quote_tick_at,
            "last_indicator_tick_at": self._last_indicator_tick_at,
        }

    # ── Symbols & alerts ─────────────────────────────────────────────────

    async def add_symbol(self, symbol: str) -> bool:
        """Start watching *symbol* and backfill its history.

        Returns ``False`` when the symbol is already watched.
        """
        if symbol in self._series:
            return False
        self._register(symbol)
        logger.info("Added watched symbol: %s", symbol)
        await self._backfill(symbol)
        return True

    def remove_symbol(self, symbol: str) -> bool:
        """Stop watching *symbol*, dropping its history, alerts and indicators."""
        if symbol not in self._series:
            return False
        del self._series[symbol]
        self._locks.pop(symbol, None)
        self._indicators.pop(symbol, None)
        dropped = self._alerts.clear_symbol(symbol)
        self._opportunities = [o for o in self._opportunities if o.symbol != symbol]
        logger.info("Removed watched symbol: %s (%d alert(s) dropped)", symbol, dropped)
        return True

    def set_alert(
        self,
        symbol: str,
        target_price: float,
        direction: AlertDirection = AlertDirection.ABOVE,
    ) -> str:
        """Create a price alert on a watched symbol and return its id."""
        if symbol not in self._series:
            raise KeyError(symbol)
        return self._alerts.set(symbol, target_price, direction)

    def remove_alert(self, alert_id: str) -> bool:
        return self._alerts.remove(alert_id)

    def active_alerts(self, symbol: Optional[str] = None) -> list[PriceAlert]:
        return self._alerts.active(symbol)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Validate config, backfill every series, then launch both loops.

        Raises ``ConfigurationError`` on invalid settings; the scheduler
        stays STOPPED in that case.
        """
        if self._state is not SchedulerState.STOPPED:
            logger.warning("start() ignored: scheduler is %s.", self._state.value)
            return

        validate_config(self._config)
        self._state = SchedulerState.STARTING
        self._shutdown = asyncio.Event()
        self._start_done = asyncio.Event()

        try:
            await asyncio.gather(*(self._backfill(s) for s in list(self._series)))
            # stop() or request_stop() arrived during the backfill
            aborted = (
                self._state is not SchedulerState.STARTING
                or self._shutdown.is_set()
            )
            if not aborted:
                self._tasks = [
                    asyncio.create_task(
                        self._run_loop("quote", self.run_quote_tick,
                                       self._config.quote_interval_seconds)
                    ),
                    asyncio.create_task(
                        self._run_loop("indicator", self.run_indicator_tick,
                                       self._config.indicator_interval_seconds)
                    ),
                ]
                self._started_at = datetime.now(timezone.utc).isoformat()
                self._state = SchedulerState.RUNNING
        finally:
            if self._state is SchedulerState.STARTING:
                self._state = SchedulerState.STOPPED
            self._start_done.set()

        if aborted:
            logger.info("Start aborted: stop requested during backfill.")
            return
        logger.info(
            "Monitoring started: %d symbol(s) on %s (primary: %s).",
            len(self._series),
            ", ".join(self._config.exchanges),
            self._config.primary_exchange,
        )

    def request_stop(self) -> None:
        """Signal both loops to stop after their current cycle."""
        self._shutdown.set()

    async def stop(self) -> None:
        """Stop both loops and wait for them to finish.

        Fetches already in flight are allowed to complete; their results
        are discarded.  Called during ``start()``, waits for the backfill
        to finish and prevents the loops from launching.
        """
        if self._state in (SchedulerState.STOPPED, SchedulerState.STOPPING):
            return
        starting = self._state is SchedulerState.STARTING
        self._state = SchedulerState.STOPPING
        self._generation += 1
        self._shutdown.set()

        if starting:
            await self._start_done.wait()

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Monitoring loop exited with error: %s", result)
        self._tasks = []
        self._state = SchedulerState.STOPPED
        logger.info("Monitoring stopped.")

    async def run(self) -> None:
        """Start, block until a stop is requested, then shut down cleanly."""
        await self.start()
        await self._shutdown.wait()
        await self.stop()

    # ── Quote tick ───────────────────────────────────────────────────────

    async def run_quote_tick(self, utc_now: Optional[datetime] = None) -> dict:
        """Execute one quote cycle across every watched symbol.

        Returns a summary dict, or ``{"action": "discarded"}`` when the
        scheduler was stopped while the fetches were in flight.
        """
        generation = self._generation
        now = utc_now or datetime.now(timezone.utc)
        ts = now.isoformat()
        symbols = list(self._series)

        fetched = await asyncio.gather(*(self._fetch_symbol(s) for s in symbols))

        if generation != self._generation:
            logger.info("Quote tick results discarded: scheduler stopped mid-tick.")
            return {"action": "discarded"}

        prices: dict[str, dict] = {}
        fired = []
        anomalies = []
        opportunities: list[ArbitrageOpportunity] = []
        failures = 0

        for symbol, (snapshot, candle) in zip(symbols, fetched):
            series = self._series.get(symbol)
            if series is None:
                continue  # removed while fetching

            quotes = available_quotes(snapshot)
            failures += len(snapshot) - len(quotes)
            if quotes:
                prices[symbol] = quotes

            appended = AppendResult.DISCARDED
            if candle is not None:
                async with self._lock(symbol):
                    appended = series.append(candle)
                    closes = series.closes()

            fired.extend(self._alerts.check(symbol, snapshot, now))

            if appended is not AppendResult.DISCARDED:
                anomaly = detect_anomaly(
                    symbol, closes,
                    threshold=self._config.anomaly_threshold,
                    now=now,
                )
                if anomaly is not None:
                    anomalies.append(anomaly)

            opportunities.extend(
                scan_arbitrage(
                    symbol, snapshot,
                    min_profit_percentage=self._config.arbitrage_min_profit_pct,
                    now=now,
                )
            )

        ranked = rank_opportunities(
            opportunities, self._config.arbitrage_max_opportunities
        )
        self._opportunities = ranked
        self._quote_tick_count += 1
        self._last_quote_tick_at = ts

        await self._bus.publish(PRICE_UPDATE, {"timestamp": ts, "prices": prices})
        for message in fired:
            await self._bus.publish(PRICE_ALERT, message)
        for anomaly in anomalies:
            await self._bus.publish(PRICE_ANOMALY, anomaly)
        if ranked:
            await self._bus.publish(
                ARBITRAGE_OPPORTUNITIES,
                {"timestamp": ts, "opportunities": ranked},
            )

        return {
            "action": "quote_tick",
            "symbols": len(prices),
            "failures": failures,
            "alerts": len(fired),
            "anomalies": len(anomalies),
            "opportunities": len(ranked),
        }

    async def _fetch_symbol(self, symbol: str):
        """Fetch the quote snapshot and the latest candle concurrently."""
        snapshot, candle = await asyncio.gather(
            fetch_quote_snapshot(
                self._source,
                self._config.exchanges,
                symbol,
                self._config.fetch_timeout_seconds,
            ),
            self._fetch_latest_candle(symbol),
        )
        return snapshot, candle

    async def _fetch_latest_candle(self, symbol: str) -> Optional[Candle]:
        candles = await self._fetch_candles(symbol, 1)
        return candles[-1] if candles else None

    # ── Indicator tick ───────────────────────────────────────────────────

    async def run_indicator_tick(self, utc_now: Optional[datetime] = None) -> dict:
        """Recompute indicators and signals for every watched symbol."""
        generation = self._generation
        now = utc_now or datetime.now(timezone.utc)
        computed: dict[str, IndicatorSet] = {}

        for symbol in list(self._series):
            series = self._series.get(symbol)
            if series is None:
                continue
            async with self._lock(symbol):
                candles = series.all()
            if not candles:
                logger.debug("Indicator tick skipped for %s: empty history", symbol)
                continue
            try:
                computed[symbol] = calculate_all(
                    symbol, candles, self._config.indicators, now
                )
            except Exception as exc:
                logger.error("Indicator calculation failed for %s: %s", symbol, exc)

        if generation != self._generation:
            logger.info("Indicator tick results discarded: scheduler stopped mid-tick.")
            return {"action": "discarded"}

        signals: dict[str, str] = {}
        for symbol, indicators in computed.items():
            if symbol not in self._series:
                continue
            self._indicators[symbol] = indicators
            signals[symbol] = indicators.signal.overall.value
            await self._bus.publish(
                INDICATORS_UPDATE,
                {"symbol": symbol, "indicators": indicators, "timestamp": now.isoformat()},
            )

        self._indicator_tick_count += 1
        self._last_indicator_tick_at = now.isoformat()
        return {"action": "indicator_tick", "symbols": len(signals), "signals": signals}

    # ── Internals ────────────────────────────────────────────────────────

    def _register(self, symbol: str) -> None:
        self._series[symbol] = CandleSeries(symbol, self._config.max_history_length)
        self._locks[symbol] = asyncio.Lock()

    def _lock(self, symbol: str) -> asyncio.Lock:
        return self._locks.setdefault(symbol, asyncio.Lock())

    async def _fetch_candles(self, symbol: str, limit: int) -> list[Candle]:
        """Fetch candles from the primary exchange; failures yield ``[]``."""
        exchange = self._config.primary_exchange
        try:
            return await asyncio.wait_for(
                self._source.fetch_candles(
                    exchange, symbol, self._config.candle_timeframe, limit
                ),
                self._config.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"timed out after {self._config.fetch_timeout_seconds:.1f}s"
        except Exception as exc:
            reason = str(exc)
        logger.warning("Candle fetch failed [%s %s]: %s", exchange, symbol, reason)
        return []

    async def _backfill(self, symbol: str) -> None:
        """Load recent history for *symbol* from the primary exchange.

        Quote ticks may append live candles while the fetch is in
        flight.  Those are replayed on top of the backfill, so they
        replace a bar with the same timestamp and extend past the
        fetched range instead of pushing the history out of order.
        """
        limit = self._config.backfill_limit
        if limit <= 0:
            return
        candles = await self._fetch_candles(symbol, limit)
        series = self._series.get(symbol)
        if series is None:
            return
        async with self._lock(symbol):
            live = series.all()
            series.clear()
            kept = series.extend(candles)
            series.extend(live)
        logger.info(
            "Backfilled %s: %d candle(s), %d live candle(s) merged.",
            symbol, kept, len(live),
        )

    async def _run_loop(
        self,
        name: str,
        tick: Callable[[], Awaitable[dict]],
        interval: float,
    ) -> None:
        """Run *tick* every *interval* seconds until shutdown is signalled."""
        while not self._shutdown.is_set():
            try:
                result = await tick()
                logger.debug("%s tick: %s", name.capitalize(), result)
            except Exception as exc:
                logger.error("%s tick error: %s", name.capitalize(), exc)

            # Interruptible sleep, woken early by request_stop()/stop()
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
