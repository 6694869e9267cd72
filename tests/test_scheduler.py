"""Tests for cryptowatch.monitor.scheduler — ticks, lifecycle and symbols.

Verifies:
  - Quote tick: price_update, alerts, anomalies, arbitrage emission
  - Partial exchange failure never aborts a tick
  - Indicator tick: indicators_update and the cached IndicatorSet
  - Lifecycle: start/stop, double start, config errors, stale ticks,
    stop while the startup backfill is in flight
  - Runtime symbol add/remove
"""

import asyncio

import pytest

from cryptowatch.analysis.models import IndicatorSet
from cryptowatch.config import Config, ConfigurationError
from cryptowatch.market.models import Candle, DataSourceFailure, ExchangeQuote
from cryptowatch.monitor.alerts import AlertDirection
from cryptowatch.monitor.events import (
    ARBITRAGE_OPPORTUNITIES,
    INDICATORS_UPDATE,
    PRICE_ALERT,
    PRICE_ANOMALY,
    PRICE_UPDATE,
    EventBus,
)
from cryptowatch.monitor.scheduler import MonitoringScheduler, SchedulerState


# ── Helpers ──────────────────────────────────────────────────────────────


class _FakeSource:
    """In-memory MarketDataSource.

    ``prices`` maps ``(exchange, symbol)`` to a last price; ``candles`` maps
    a symbol to its full history on the primary exchange.
    """

    def __init__(self, prices=None, candles=None, failing=()):
        self.prices = dict(prices or {})
        self.candles = dict(candles or {})
        self.failing = set(failing)
        self.candle_calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        # Blocks backfill fetches (limit > 1) until set
        self.candle_gate: asyncio.Event | None = None

    async def fetch_quote(self, exchange, symbol):
        if self.gate is not None:
            await self.gate.wait()
        if exchange in self.failing:
            raise DataSourceFailure(exchange, symbol, "exchange down")
        price = self.prices.get((exchange, symbol))
        if price is None:
            raise DataSourceFailure(exchange, symbol, "no market")
        return ExchangeQuote(exchange, price, None, None, None, 0)

    async def fetch_candles(self, exchange, symbol, timeframe, limit):
        self.candle_calls.append((exchange, symbol, timeframe, limit))
        if self.candle_gate is not None and limit > 1:
            await self.candle_gate.wait()
        if exchange in self.failing:
            raise DataSourceFailure(exchange, symbol, "exchange down")
        return self.candles.get(symbol, [])[-limit:]


def _make_config(**overrides) -> Config:
    defaults = dict(
        exchanges=("binance", "okx"),
        primary_exchange="binance",
        watched_symbols=("BTC/USDT",),
        quote_interval_seconds=0.01,
        indicator_interval_seconds=0.01,
        backfill_limit=100,
        fetch_timeout_seconds=1.0,
        anomaly_threshold=5.0,
    )
    defaults.update(overrides)
    return Config(**defaults)


def _make_candles(closes, start_ts: int = 0) -> list[Candle]:
    return [
        Candle(start_ts + 60_000 * i, c, c + 1.0, c - 1.0, c, 1.0)
        for i, c in enumerate(closes)
    ]


def _wave(n: int) -> list[float]:
    return [100.0 + ((i * 7) % 11) - 5 for i in range(n)]


def _make_scheduler(source, **overrides):
    bus = EventBus()
    events: list[tuple[str, dict]] = []
    bus.subscribe_all(lambda event, payload: events.append((event, payload)))
    scheduler = MonitoringScheduler(_make_config(**overrides), source, bus)
    return scheduler, events


def _named(events, name):
    return [payload for event, payload in events if event == name]


# ── Quote tick ───────────────────────────────────────────────────────────


class TestQuoteTick:
    @pytest.mark.asyncio
    async def test_price_update_contains_only_successful_quotes(self):
        source = _FakeSource(prices={("binance", "BTC/USDT"): 100.0}, failing={"okx"})
        scheduler, events = _make_scheduler(source)

        result = await scheduler.run_quote_tick()

        assert result["action"] == "quote_tick"
        assert result["failures"] == 1
        updates = _named(events, PRICE_UPDATE)
        assert len(updates) == 1
        prices = updates[0]["prices"]
        assert list(prices["BTC/USDT"]) == ["binance"]
        assert prices["BTC/USDT"]["binance"]["price"] == 100.0

    @pytest.mark.asyncio
    async def test_latest_candle_appended(self):
        source = _FakeSource(
            prices={("binance", "BTC/USDT"): 100.0},
            candles={"BTC/USDT": _make_candles([99.0, 100.0])},
        )
        scheduler, _ = _make_scheduler(source)

        await scheduler.run_quote_tick()

        assert ("binance", "BTC/USDT", "1m", 1) in source.candle_calls
        history = scheduler.history("BTC/USDT")
        assert [c.close for c in history] == [100.0]

    @pytest.mark.asyncio
    async def test_alert_fires_once(self):
        source = _FakeSource(prices={("binance", "BTC/USDT"): 99.0})
        scheduler, events = _make_scheduler(source)
        alert_id = scheduler.set_alert("BTC/USDT", 100.0, AlertDirection.ABOVE)

        await scheduler.run_quote_tick()
        assert _named(events, PRICE_ALERT) == []

        source.prices[("binance", "BTC/USDT")] = 100.0
        await scheduler.run_quote_tick()
        source.prices[("binance", "BTC/USDT")] = 101.0
        await scheduler.run_quote_tick()

        alerts = _named(events, PRICE_ALERT)
        assert len(alerts) == 1
        assert alerts[0]["id"] == alert_id
        assert alerts[0]["direction"] == "above"
        assert scheduler.active_alerts() == []

    @pytest.mark.asyncio
    async def test_alert_uses_primary_exchange_only(self):
        source = _FakeSource(
            prices={("okx", "BTC/USDT"): 150.0}, failing={"binance"}
        )
        scheduler, events = _make_scheduler(source)
        scheduler.set_alert("BTC/USDT", 100.0)

        await scheduler.run_quote_tick()

        assert _named(events, PRICE_ALERT) == []
        assert len(scheduler.active_alerts("BTC/USDT")) == 1

    @pytest.mark.asyncio
    async def test_arbitrage_emitted_when_spread_exists(self):
        source = _FakeSource(prices={
            ("binance", "BTC/USDT"): 100.0,
            ("okx", "BTC/USDT"): 101.0,
        })
        scheduler, events = _make_scheduler(source)

        await scheduler.run_quote_tick()

        payloads = _named(events, ARBITRAGE_OPPORTUNITIES)
        assert len(payloads) == 1
        opp = payloads[0]["opportunities"][0]
        assert opp["buy_exchange"] == "binance"
        assert opp["sell_exchange"] == "okx"
        assert len(scheduler.latest_opportunities) == 1

    @pytest.mark.asyncio
    async def test_no_arbitrage_event_without_spread(self):
        source = _FakeSource(prices={
            ("binance", "BTC/USDT"): 100.0,
            ("okx", "BTC/USDT"): 100.0,
        })
        scheduler, events = _make_scheduler(source)

        await scheduler.run_quote_tick()

        assert _named(events, ARBITRAGE_OPPORTUNITIES) == []
        assert scheduler.latest_opportunities == []

    @pytest.mark.asyncio
    async def test_arbitrage_ranked_across_symbols(self):
        source = _FakeSource(prices={
            ("binance", "BTC/USDT"): 100.0,
            ("okx", "BTC/USDT"): 101.0,
            ("binance", "ETH/USDT"): 100.0,
            ("okx", "ETH/USDT"): 105.0,
        })
        scheduler, events = _make_scheduler(
            source,
            watched_symbols=("BTC/USDT", "ETH/USDT"),
            arbitrage_max_opportunities=1,
        )

        await scheduler.run_quote_tick()

        opps = _named(events, ARBITRAGE_OPPORTUNITIES)[0]["opportunities"]
        assert [o["symbol"] for o in opps] == ["ETH/USDT"]

    @pytest.mark.asyncio
    async def test_anomaly_emitted(self):
        candles = _make_candles([10.0] * 19 + [20.0])
        source = _FakeSource(
            prices={("binance", "SOL/USDT"): 20.0},
            candles={"SOL/USDT": candles},
        )
        scheduler, events = _make_scheduler(source, watched_symbols=("BTC/USDT",))
        await scheduler.add_symbol("SOL/USDT")

        result = await scheduler.run_quote_tick()

        assert result["anomalies"] == 1
        anomalies = _named(events, PRICE_ANOMALY)
        assert anomalies[0]["symbol"] == "SOL/USDT"
        assert anomalies[0]["type"] == "SPIKE"
        assert anomalies[0]["z_score"] is None

    @pytest.mark.asyncio
    async def test_all_exchanges_failing_does_not_raise(self):
        source = _FakeSource(failing={"binance", "okx"})
        scheduler, events = _make_scheduler(source)

        result = await scheduler.run_quote_tick()

        assert result["failures"] == 2
        assert _named(events, PRICE_UPDATE)[0]["prices"] == {}


# ── Indicator tick ───────────────────────────────────────────────────────


class TestIndicatorTick:
    @pytest.mark.asyncio
    async def test_emits_and_caches_indicators(self):
        source = _FakeSource(candles={"BTC/USDT": _make_candles(_wave(80))})
        scheduler, events = _make_scheduler(source, watched_symbols=("ETH/USDT",))
        await scheduler.add_symbol("BTC/USDT")

        result = await scheduler.run_indicator_tick()

        assert result["action"] == "indicator_tick"
        assert list(result["signals"]) == ["BTC/USDT"]
        updates = _named(events, INDICATORS_UPDATE)
        assert len(updates) == 1
        assert updates[0]["symbol"] == "BTC/USDT"
        assert updates[0]["indicators"]["candle_count"] == 80
        assert isinstance(scheduler.latest_indicators("BTC/USDT"), IndicatorSet)
        assert scheduler.latest_indicators("ETH/USDT") is None

    @pytest.mark.asyncio
    async def test_empty_history_is_skipped(self):
        scheduler, events = _make_scheduler(_FakeSource())
        result = await scheduler.run_indicator_tick()
        assert result["symbols"] == 0
        assert _named(events, INDICATORS_UPDATE) == []


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_backfills_and_stop(self):
        source = _FakeSource(
            prices={("binance", "BTC/USDT"): 100.0},
            candles={"BTC/USDT": _make_candles(_wave(30))},
        )
        scheduler, events = _make_scheduler(source)

        await scheduler.start()
        assert scheduler.state is SchedulerState.RUNNING
        assert source.candle_calls[0] == ("binance", "BTC/USDT", "1m", 100)
        assert len(scheduler.history("BTC/USDT", 1000)) == 30

        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.state is SchedulerState.STOPPED
        status = scheduler.status()
        assert status["quote_tick_count"] >= 1
        assert status["indicator_tick_count"] >= 1
        assert _named(events, PRICE_UPDATE)

    @pytest.mark.asyncio
    async def test_double_start_is_ignored(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        await scheduler.start()
        tasks = list(scheduler._tasks)
        await scheduler.start()
        assert scheduler._tasks == tasks
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        await scheduler.stop()
        assert scheduler.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_invalid_config_fails_at_start(self):
        scheduler, _ = _make_scheduler(_FakeSource(), primary_exchange="kraken")
        with pytest.raises(ConfigurationError):
            await scheduler.start()
        assert scheduler.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_backfill_failure_leaves_empty_series(self):
        scheduler, _ = _make_scheduler(_FakeSource(failing={"binance"}))
        await scheduler.start()
        assert scheduler.state is SchedulerState.RUNNING
        assert scheduler.history("BTC/USDT") == []
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_results_discarded_after_stop(self):
        source = _FakeSource(prices={("binance", "BTC/USDT"): 100.0})
        source.gate = asyncio.Event()
        scheduler, events = _make_scheduler(
            source, quote_interval_seconds=60, indicator_interval_seconds=60
        )

        await scheduler.start()
        await asyncio.sleep(0)  # let the first quote tick block on the gate
        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0)
        source.gate.set()
        await stopping

        assert scheduler.state is SchedulerState.STOPPED
        assert _named(events, PRICE_UPDATE) == []
        assert scheduler.status()["quote_tick_count"] == 0

    @pytest.mark.asyncio
    async def test_stop_during_backfill_prevents_loops(self):
        source = _FakeSource(candles={"BTC/USDT": _make_candles(_wave(30))})
        source.candle_gate = asyncio.Event()
        scheduler, events = _make_scheduler(source)

        starting = asyncio.create_task(scheduler.start())
        await asyncio.sleep(0)  # start() is now waiting on the backfill
        assert scheduler.state is SchedulerState.STARTING

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0)
        assert scheduler.state is SchedulerState.STOPPING
        assert not stopping.done()

        source.candle_gate.set()
        await asyncio.wait_for(asyncio.gather(starting, stopping), timeout=1.0)

        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler._tasks == []
        assert _named(events, PRICE_UPDATE) == []

        # A later start() launches the loops normally
        await scheduler.start()
        assert scheduler.state is SchedulerState.RUNNING
        assert len(scheduler._tasks) == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_request_stop_during_backfill(self):
        source = _FakeSource(candles={"BTC/USDT": _make_candles(_wave(30))})
        source.candle_gate = asyncio.Event()
        scheduler, _ = _make_scheduler(source)

        starting = asyncio.create_task(scheduler.start())
        await asyncio.sleep(0)
        scheduler.request_stop()
        source.candle_gate.set()
        await asyncio.wait_for(starting, timeout=1.0)

        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_run_returns_after_request_stop(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.02)
        scheduler.request_stop()
        await asyncio.wait_for(runner, timeout=1.0)
        assert scheduler.state is SchedulerState.STOPPED


# ── Symbols & accessors ──────────────────────────────────────────────────


class TestSymbols:
    @pytest.mark.asyncio
    async def test_add_symbol_backfills(self):
        source = _FakeSource(candles={"ETH/USDT": _make_candles(_wave(10))})
        scheduler, _ = _make_scheduler(source)
        assert await scheduler.add_symbol("ETH/USDT") is True
        assert await scheduler.add_symbol("ETH/USDT") is False
        assert scheduler.watched_symbols == ["BTC/USDT", "ETH/USDT"]
        assert len(scheduler.history("ETH/USDT")) == 10

    @pytest.mark.asyncio
    async def test_quote_tick_during_backfill_keeps_history(self):
        source = _FakeSource(candles={"ETH/USDT": _make_candles(_wave(100))})
        source.candle_gate = asyncio.Event()
        scheduler, _ = _make_scheduler(source)

        adding = asyncio.create_task(scheduler.add_symbol("ETH/USDT"))
        await asyncio.sleep(0)  # registered, backfill waiting on the gate
        await scheduler.run_quote_tick()
        assert len(scheduler.history("ETH/USDT")) == 1

        source.candle_gate.set()
        assert await adding is True
        history = scheduler.history("ETH/USDT", 1000)
        assert len(history) == 100
        assert history[0].timestamp_ms == 0
        assert history[-1].timestamp_ms == 99 * 60_000

    @pytest.mark.asyncio
    async def test_live_candle_newer_than_backfill_is_kept(self):
        candles = _make_candles(_wave(50))
        source = _FakeSource(candles={"ETH/USDT": candles[:40]})
        source.candle_gate = asyncio.Event()
        scheduler, _ = _make_scheduler(source)

        adding = asyncio.create_task(scheduler.add_symbol("ETH/USDT"))
        await asyncio.sleep(0)
        # The exchange moves on while the backfill request is in flight
        source.candles["ETH/USDT"] = candles
        await scheduler.run_quote_tick()
        source.candles["ETH/USDT"] = candles[:40]

        source.candle_gate.set()
        await adding
        history = scheduler.history("ETH/USDT", 1000)
        assert len(history) == 41
        assert history[-2].timestamp_ms == 39 * 60_000
        assert history[-1].timestamp_ms == 49 * 60_000

    @pytest.mark.asyncio
    async def test_remove_symbol_drops_state(self):
        source = _FakeSource(candles={"BTC/USDT": _make_candles(_wave(60))})
        scheduler, _ = _make_scheduler(source, watched_symbols=("ETH/USDT",))
        await scheduler.add_symbol("BTC/USDT")
        scheduler.set_alert("BTC/USDT", 500.0)
        await scheduler.run_indicator_tick()

        assert scheduler.remove_symbol("BTC/USDT") is True
        assert scheduler.watched_symbols == ["ETH/USDT"]
        assert scheduler.active_alerts() == []
        assert scheduler.latest_indicators("BTC/USDT") is None
        with pytest.raises(KeyError):
            scheduler.history("BTC/USDT")
        assert scheduler.remove_symbol("BTC/USDT") is False

    def test_set_alert_on_unknown_symbol(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        with pytest.raises(KeyError):
            scheduler.set_alert("DOGE/USDT", 1.0)

    def test_remove_alert(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        alert_id = scheduler.set_alert("BTC/USDT", 100.0)
        assert scheduler.remove_alert(alert_id) is True
        assert scheduler.remove_alert(alert_id) is False

    @pytest.mark.asyncio
    async def test_price_stats(self):
        source = _FakeSource(candles={"ETH/USDT": _make_candles([100.0, 110.0])})
        scheduler, _ = _make_scheduler(source)
        await scheduler.add_symbol("ETH/USDT")
        stats = scheduler.price_stats("ETH/USDT", "1h")
        assert stats.change_percent == 10.0
        assert scheduler.price_stats("BTC/USDT") is None

    def test_status_shape(self):
        scheduler, _ = _make_scheduler(_FakeSource())
        status = scheduler.status()
        assert status["state"] == "stopped"
        assert status["running"] is False
        assert status["watched_symbols"] == ["BTC/USDT"]
        assert status["history_lengths"] == {"BTC/USDT": 0}
