"""In-process publish/subscribe for monitor events.

Handlers may be plain callables or coroutine functions.  Payloads are
plain JSON-ready dicts built with ``to_payload``; a failing handler is
logged and never stops delivery to the others.
"""

import asyncio
import logging
import math
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger("cryptowatch.events")

PRICE_UPDATE = "price_update"
INDICATORS_UPDATE = "indicators_update"
ARBITRAGE_OPPORTUNITIES = "arbitrage_opportunities"
PRICE_ALERT = "price_alert"
PRICE_ANOMALY = "price_anomaly"

EVENT_NAMES = (
    PRICE_UPDATE,
    INDICATORS_UPDATE,
    ARBITRAGE_OPPORTUNITIES,
    PRICE_ALERT,
    PRICE_ANOMALY,
)

Handler = Callable[[str, Any], Union[None, Awaitable[None]]]


def to_payload(value: Any) -> Any:
    """Convert *value* into JSON-ready primitives.

    Dataclasses become dicts, enums their values, tuples lists, and
    NaN/±inf floats become ``None``.  Dict keys are stringified.
    """
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(to_payload(k)): to_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


class EventBus:
    """Fan-out of named events to registered handlers.

    Handlers are invoked in subscription order with ``(event, payload)``.
    Wildcard subscribers registered via :meth:`subscribe_all` run after
    the event-specific ones.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._wildcard: list[Handler] = []

    def subscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Receive every event regardless of name."""
        if handler not in self._wildcard:
            self._wildcard.append(handler)

    def unsubscribe(self, handler: Handler, event: str | None = None) -> None:
        """Remove *handler* from one event, or from everything when
        *event* is ``None``."""
        targets = [self._handlers.get(event, [])] if event else list(self._handlers.values())
        if event is None:
            targets.append(self._wildcard)
        for handlers in targets:
            if handler in handlers:
                handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, [])) + len(self._wildcard)

    async def publish(self, event: str, payload: Any) -> int:
        """Deliver *payload* to every handler of *event*.

        Returns the number of handlers that completed without raising.
        """
        payload = to_payload(payload)
        delivered = 0
        for handler in [*self._handlers.get(event, []), *self._wildcard]:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as exc:
                logger.error("Handler for '%s' failed: %s", event, exc)
        return delivered
