"""Price alert registry.

Holds user-defined price thresholds per symbol.  Each alert fires at
most once: the first check that crosses its target emits a
``PriceAlertFired`` message to every subscriber and removes the alert
from the active set.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Optional

from cryptowatch.market.models import ExchangeQuote

logger = logging.getLogger("cryptowatch.alerts")


class AlertDirection(str, Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass
class PriceAlert:
    """A watch on one symbol's price.  ``triggered`` is terminal."""

    id: str
    symbol: str
    target_price: float
    direction: AlertDirection
    created_at: str
    triggered: bool = False

    def crossed(self, price: float) -> bool:
        if self.direction is AlertDirection.ABOVE:
            return price >= self.target_price
        return price <= self.target_price


@dataclass(frozen=True)
class PriceAlertFired:
    """Message emitted once when an alert triggers."""

    id: str
    symbol: str
    current_price: float
    target_price: float
    direction: AlertDirection
    timestamp: str


AlertListener = Callable[[PriceAlertFired], None]


class AlertRegistry:
    """Active price alerts keyed by symbol.

    Args:
        reference_exchange: Exchange whose quote is compared against the
            alert targets (the primary exchange).
    """

    def __init__(self, reference_exchange: str) -> None:
        self._reference_exchange = reference_exchange
        self._alerts: dict[str, list[PriceAlert]] = {}
        self._listeners: list[AlertListener] = []

    @property
    def reference_exchange(self) -> str:
        return self._reference_exchange

    # ── Subscription ─────────────────────────────────────────────────────

    def subscribe(self, listener: AlertListener) -> None:
        """Register a callable that receives every ``PriceAlertFired``."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: AlertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ── Mutation ─────────────────────────────────────────────────────────

    def set(
        self,
        symbol: str,
        target_price: float,
        direction: AlertDirection = AlertDirection.ABOVE,
        now: Optional[datetime] = None,
    ) -> str:
        """Create an alert and return its id.

        Raises ``ValueError`` for a non-positive or non-finite target.
        """
        direction = AlertDirection(direction)
        if not math.isfinite(target_price) or target_price <= 0:
            raise ValueError(f"target price must be a positive number, got {target_price}")
        if now is None:
            now = datetime.now(timezone.utc)

        alert_id = f"{symbol}_{direction.value}_{target_price}_{uuid.uuid4().hex[:12]}"
        alert = PriceAlert(
            id=alert_id,
            symbol=symbol,
            target_price=float(target_price),
            direction=direction,
            created_at=now.isoformat(),
        )
        self._alerts.setdefault(symbol, []).append(alert)
        logger.info("Price alert set: %s %s %s", symbol, direction.value, target_price)
        return alert_id

    def remove(self, alert_id: str) -> bool:
        """Delete the alert with *alert_id*; ``False`` if it is unknown."""
        for symbol, alerts in self._alerts.items():
            for i, alert in enumerate(alerts):
                if alert.id == alert_id:
                    del alerts[i]
                    if not alerts:
                        del self._alerts[symbol]
                    logger.info("Price alert removed: %s", alert_id)
                    return True
        return False

    def clear_symbol(self, symbol: str) -> int:
        """Drop every alert for *symbol*; return how many were removed."""
        removed = self._alerts.pop(symbol, [])
        return len(removed)

    # ── Queries ──────────────────────────────────────────────────────────

    def active(self, symbol: Optional[str] = None) -> list[PriceAlert]:
        """Return active alerts, for one symbol or all of them."""
        if symbol is not None:
            return list(self._alerts.get(symbol, []))
        return [a for alerts in self._alerts.values() for a in alerts]

    # ── Evaluation ───────────────────────────────────────────────────────

    def check(
        self,
        symbol: str,
        quotes: Mapping[str, object],
        now: Optional[datetime] = None,
    ) -> list[PriceAlertFired]:
        """Evaluate *symbol*'s alerts against the reference exchange quote.

        When the reference quote is missing this tick, nothing is
        evaluated.  Fired alerts are marked triggered, pruned, and
        delivered to subscribers before being returned.
        """
        alerts = self._alerts.get(symbol)
        if not alerts:
            return []

        quote = quotes.get(self._reference_exchange)
        if not isinstance(quote, ExchangeQuote):
            logger.debug(
                "Alert check skipped for %s: no %s quote this tick",
                symbol, self._reference_exchange,
            )
            return []

        price = quote.price
        if now is None:
            now = datetime.now(timezone.utc)

        fired: list[PriceAlertFired] = []
        for alert in alerts:
            if alert.triggered or not alert.crossed(price):
                continue
            alert.triggered = True
            fired.append(
                PriceAlertFired(
                    id=alert.id,
                    symbol=alert.symbol,
                    current_price=price,
                    target_price=alert.target_price,
                    direction=alert.direction,
                    timestamp=now.isoformat(),
                )
            )
            logger.info(
                "Price alert triggered: %s %s %s, current: %s",
                symbol, alert.direction.value, alert.target_price, price,
            )

        remaining = [a for a in alerts if not a.triggered]
        if remaining:
            self._alerts[symbol] = remaining
        else:
            self._alerts.pop(symbol, None)

        for message in fired:
            self._notify(message)
        return fired

    def _notify(self, message: PriceAlertFired) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as exc:
                logger.error("Price alert listener failed for %s: %s", message.id, exc)
