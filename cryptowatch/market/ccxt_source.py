"""CCXT-backed market data source.

Handles all communication with the exchanges: ticker and OHLCV fetching.
Order placement and account queries are deliberately absent; this
service only watches markets.
"""

import logging
import os
from typing import Optional

import ccxt
import ccxt.async_support as ccxt_async

from cryptowatch.config import Config
from cryptowatch.market.models import Candle, DataSourceFailure, ExchangeQuote

logger = logging.getLogger("cryptowatch.source")


def _credentials_from_env(exchange: str) -> dict:
    """Read optional ``<EXCHANGE>_API_KEY`` / ``_SECRET`` / ``_PASSPHRASE``."""
    prefix = exchange.upper()
    creds: dict = {}
    api_key = os.environ.get(f"{prefix}_API_KEY")
    secret = os.environ.get(f"{prefix}_SECRET")
    if api_key and secret:
        creds["apiKey"] = api_key
        creds["secret"] = secret
        passphrase = os.environ.get(f"{prefix}_PASSPHRASE")
        if passphrase:
            creds["password"] = passphrase
    return creds


class CcxtMarketSource:
    """Async market data source wrapping one CCXT client per exchange.

    Args:
        clients: ``{exchange_name: ccxt async exchange instance}``.  Use
            :meth:`from_config` to build them from configuration.
    """

    def __init__(self, clients: dict) -> None:
        self._clients = dict(clients)

    @classmethod
    def from_config(cls, config: Config) -> "CcxtMarketSource":
        """Instantiate a CCXT async client for every configured exchange.

        Unknown exchange ids raise ``ValueError`` so a typo in
        ``EXCHANGES`` fails at boot rather than on every tick.
        """
        clients = {}
        for name in config.exchanges:
            exchange_class = getattr(ccxt_async, name, None)
            if exchange_class is None:
                raise ValueError(f"Unknown CCXT exchange: {name}")
            params = {"enableRateLimit": True, **_credentials_from_env(name)}
            clients[name] = exchange_class(params)
            logger.info(
                "Exchange client ready: %s (%s)",
                name,
                "authenticated" if "apiKey" in params else "public",
            )
        return cls(clients)

    @property
    def exchanges(self) -> list[str]:
        """Names of the exchanges this source can query."""
        return list(self._clients.keys())

    def _client(self, exchange: str, symbol: str):
        client = self._clients.get(exchange)
        if client is None:
            raise DataSourceFailure(exchange, symbol, "exchange not configured")
        return client

    # ── Quotes ───────────────────────────────────────────────────────────

    async def fetch_quote(self, exchange: str, symbol: str) -> ExchangeQuote:
        """Fetch the ticker for *symbol* and map it to an ``ExchangeQuote``.

        A ticker without a ``last`` price is treated as a failure rather
        than a zero price.
        """
        client = self._client(exchange, symbol)
        try:
            ticker = await client.fetch_ticker(symbol)
        except ccxt.BaseError as exc:
            raise DataSourceFailure(exchange, symbol, str(exc)) from exc

        last = ticker.get("last")
        if last is None:
            raise DataSourceFailure(exchange, symbol, "ticker has no last price")

        return ExchangeQuote(
            exchange=exchange,
            price=float(last),
            bid=_optional_float(ticker.get("bid")),
            ask=_optional_float(ticker.get("ask")),
            volume=_optional_float(ticker.get("baseVolume")),
            timestamp=int(ticker.get("timestamp") or 0),
        )

    # ── Candles ──────────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        limit: int,
    ) -> list[Candle]:
        """Fetch OHLCV rows from *exchange*.

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        client = self._client(exchange, symbol)
        try:
            rows = await client.fetch_ohlcv(symbol, timeframe, None, limit)
        except ccxt.BaseError as exc:
            raise DataSourceFailure(exchange, symbol, str(exc)) from exc

        candles = [Candle.from_ohlcv(row) for row in rows or []]
        candles.sort(key=lambda c: c.timestamp_ms)
        return candles

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Release every client's HTTP session."""
        for name, client in self._clients.items():
            try:
                await client.close()
            except Exception as exc:
                logger.warning("Failed to close %s client: %s", name, exc)


def _optional_float(value) -> Optional[float]:
    return None if value is None else float(value)
