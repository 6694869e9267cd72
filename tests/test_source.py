"""Tests for the market data layer — snapshot fan-out and the CCXT adapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from cryptowatch.config import Config
from cryptowatch.market import ccxt_source
from cryptowatch.market.ccxt_source import CcxtMarketSource
from cryptowatch.market.models import (
    Candle,
    DataSourceFailure,
    ExchangeQuote,
    FetchFailure,
)
from cryptowatch.market.source import (
    MarketDataSource,
    available_quotes,
    fetch_quote_result,
    fetch_quote_snapshot,
)


# ── Helpers ──────────────────────────────────────────────────────────────


class _StubSource:
    """Per-exchange behaviour: a price, an exception, or a hang."""

    def __init__(self, behaviour: dict):
        self._behaviour = behaviour

    async def fetch_quote(self, exchange, symbol):
        action = self._behaviour[exchange]
        if action == "hang":
            await asyncio.sleep(10)
        if isinstance(action, Exception):
            raise action
        return ExchangeQuote(exchange, float(action), None, None, None, 0)

    async def fetch_candles(self, exchange, symbol, timeframe, limit):
        return []


def _make_client(ticker=None, ohlcv=None):
    client = AsyncMock()
    client.fetch_ticker.return_value = ticker or {
        "last": 100.5,
        "bid": 100.4,
        "ask": 100.6,
        "baseVolume": 1234.0,
        "timestamp": 1_700_000_000_000,
    }
    client.fetch_ohlcv.return_value = ohlcv or []
    return client


# ── Snapshot fan-out ─────────────────────────────────────────────────────


class TestQuoteSnapshot:
    def test_stub_satisfies_protocol(self):
        assert isinstance(_StubSource({}), MarketDataSource)

    @pytest.mark.asyncio
    async def test_partial_failure(self):
        source = _StubSource({
            "binance": 100.0,
            "okx": DataSourceFailure("okx", "BTC/USDT", "maintenance"),
        })
        snapshot = await fetch_quote_snapshot(source, ["binance", "okx"], "BTC/USDT", 1.0)
        assert list(snapshot) == ["binance", "okx"]
        assert isinstance(snapshot["binance"], ExchangeQuote)
        assert snapshot["okx"] == FetchFailure("okx", "BTC/USDT", "maintenance")
        assert list(available_quotes(snapshot)) == ["binance"]

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self):
        source = _StubSource({"binance": "hang"})
        result = await fetch_quote_result(source, "binance", "BTC/USDT", 0.01)
        assert isinstance(result, FetchFailure)
        assert "timed out" in result.reason

    @pytest.mark.asyncio
    async def test_unexpected_error_is_a_failure(self):
        source = _StubSource({"binance": KeyError("last")})
        result = await fetch_quote_result(source, "binance", "BTC/USDT", 1.0)
        assert isinstance(result, FetchFailure)
        assert "KeyError" in result.reason


# ── CCXT adapter ─────────────────────────────────────────────────────────


class TestCcxtMarketSource:
    @pytest.mark.asyncio
    async def test_fetch_quote_maps_ticker(self):
        source = CcxtMarketSource({"binance": _make_client()})
        quote = await source.fetch_quote("binance", "BTC/USDT")
        assert quote == ExchangeQuote(
            exchange="binance",
            price=100.5,
            bid=100.4,
            ask=100.6,
            volume=1234.0,
            timestamp=1_700_000_000_000,
        )

    @pytest.mark.asyncio
    async def test_missing_last_price_is_failure(self):
        client = _make_client(ticker={"last": None, "bid": 1.0})
        source = CcxtMarketSource({"binance": client})
        with pytest.raises(DataSourceFailure, match="no last price"):
            await source.fetch_quote("binance", "BTC/USDT")

    @pytest.mark.asyncio
    async def test_ccxt_error_is_wrapped(self):
        client = _make_client()
        client.fetch_ticker.side_effect = ccxt.NetworkError("connection reset")
        source = CcxtMarketSource({"okx": client})
        with pytest.raises(DataSourceFailure) as exc_info:
            await source.fetch_quote("okx", "ETH/USDT")
        assert exc_info.value.exchange == "okx"
        assert "connection reset" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unknown_exchange(self):
        source = CcxtMarketSource({})
        with pytest.raises(DataSourceFailure, match="not configured"):
            await source.fetch_quote("kraken", "BTC/USDT")

    @pytest.mark.asyncio
    async def test_fetch_candles_sorted(self):
        rows = [
            [120_000, 2, 3, 1, 2.5, 10],
            [60_000, 1, 2, 0.5, 1.5, None],
        ]
        client = _make_client(ohlcv=rows)
        source = CcxtMarketSource({"binance": client})
        candles = await source.fetch_candles("binance", "BTC/USDT", "1m", 2)
        client.fetch_ohlcv.assert_awaited_once_with("BTC/USDT", "1m", None, 2)
        assert [c.timestamp_ms for c in candles] == [60_000, 120_000]
        assert candles[0] == Candle(60_000, 1.0, 2.0, 0.5, 1.5, 0.0)

    @pytest.mark.asyncio
    async def test_close_survives_client_errors(self):
        good, bad = _make_client(), _make_client()
        bad.close.side_effect = RuntimeError("already closed")
        source = CcxtMarketSource({"binance": bad, "okx": good})
        await source.close()
        good.close.assert_awaited_once()


class TestFromConfig:
    def test_builds_public_clients(self, monkeypatch):
        monkeypatch.delenv("BINANCE_API_KEY", raising=False)
        monkeypatch.delenv("BINANCE_SECRET", raising=False)
        factory = MagicMock()
        monkeypatch.setattr(ccxt_source.ccxt_async, "binance", factory)
        source = CcxtMarketSource.from_config(
            Config(exchanges=("binance",), primary_exchange="binance")
        )
        factory.assert_called_once_with({"enableRateLimit": True})
        assert source.exchanges == ["binance"]

    def test_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("OKX_API_KEY", "key")
        monkeypatch.setenv("OKX_SECRET", "secret")
        monkeypatch.setenv("OKX_PASSPHRASE", "phrase")
        factory = MagicMock()
        monkeypatch.setattr(ccxt_source.ccxt_async, "okx", factory)
        CcxtMarketSource.from_config(Config(exchanges=("okx",), primary_exchange="okx"))
        factory.assert_called_once_with({
            "enableRateLimit": True,
            "apiKey": "key",
            "secret": "secret",
            "password": "phrase",
        })

    def test_unknown_exchange_id(self):
        with pytest.raises(ValueError, match="Unknown CCXT exchange"):
            CcxtMarketSource.from_config(
                Config(exchanges=("not_an_exchange",), primary_exchange="not_an_exchange")
            )
