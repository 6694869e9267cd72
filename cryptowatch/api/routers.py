"""Internal API routers — /status, /symbols, /alerts, /history, /stats,
/indicators, /arbitrage and /events endpoints.

No business logic. Delegates to the MonitoringScheduler and keeps a short
ring buffer of recently published events.

Symbols appear in paths with ``-`` in place of ``/`` (``BTC-USDT``).
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from cryptowatch.analysis.stats import TIMEFRAME_MINUTES
from cryptowatch.monitor.alerts import AlertDirection
from cryptowatch.monitor.events import EventBus, to_payload

logger = logging.getLogger("cryptowatch.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_scheduler = None  # Set via configure_routers()
_recent_events: list[dict] = []  # Ring buffer of published events (max 100)
_MAX_RECENT_EVENTS = 100


def configure_routers(scheduler=None, bus: Optional[EventBus] = None) -> None:
    """Inject dependencies from the application startup.

    Args:
        scheduler: A ``MonitoringScheduler`` instance (or duck-type for tests).
        bus: Event bus whose events are mirrored into ``/events``.  Defaults
             to the scheduler's own bus.
    """
    global _scheduler  # noqa: PLW0603
    _scheduler = scheduler
    _recent_events.clear()
    if bus is None and scheduler is not None:
        bus = scheduler.bus
    if bus is not None:
        bus.subscribe_all(record_event)


def record_event(event: str, payload) -> None:
    """Append a published event to the ring buffer (max 100)."""
    _recent_events.append({"event": event, "payload": payload})
    if len(_recent_events) > _MAX_RECENT_EVENTS:
        del _recent_events[0]


def _symbol_from_path(symbol: str) -> str:
    return symbol.replace("-", "/").upper()


def _require_scheduler():
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Monitor not configured")
    return _scheduler


def _require_symbol(symbol: str) -> str:
    scheduler = _require_scheduler()
    resolved = _symbol_from_path(symbol)
    if resolved not in scheduler.watched_symbols:
        raise HTTPException(status_code=404, detail=f"Symbol not watched: {resolved}")
    return resolved


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return scheduler state, tick counters and history lengths."""
    if _scheduler is None:
        return {"state": "unconfigured", "running": False}
    return _scheduler.status()


@router.get("/symbols")
async def get_symbols():
    scheduler = _require_scheduler()
    return {"symbols": scheduler.watched_symbols}


@router.post("/symbols/{symbol}")
async def add_symbol(symbol: str):
    """Start watching a symbol (backfills its history)."""
    scheduler = _require_scheduler()
    resolved = _symbol_from_path(symbol)
    added = await scheduler.add_symbol(resolved)
    return {"symbol": resolved, "added": added, "symbols": scheduler.watched_symbols}


@router.delete("/symbols/{symbol}")
async def remove_symbol(symbol: str):
    resolved = _require_symbol(symbol)
    _scheduler.remove_symbol(resolved)
    return {"symbol": resolved, "removed": True, "symbols": _scheduler.watched_symbols}


@router.get("/alerts")
async def get_alerts(symbol: Optional[str] = Query(default=None)):
    """Return active (untriggered) price alerts."""
    scheduler = _require_scheduler()
    resolved = _symbol_from_path(symbol) if symbol else None
    return {"alerts": to_payload(scheduler.active_alerts(resolved))}


@router.post("/alerts")
async def post_alert(body: dict):
    """Create a price alert.

    Body: ``{"symbol": "BTC/USDT", "target_price": 50000, "direction": "above"}``.
    """
    scheduler = _require_scheduler()
    errors = []

    symbol = body.get("symbol")
    if not symbol:
        errors.append("symbol is required")

    try:
        target = float(body.get("target_price"))
    except (TypeError, ValueError):
        target = None
        errors.append("target_price must be a number")

    try:
        direction = AlertDirection(str(body.get("direction", "above")).lower())
    except ValueError:
        direction = None
        errors.append("direction must be 'above' or 'below'")

    if errors:
        raise HTTPException(status_code=422, detail=errors)

    resolved = _symbol_from_path(symbol)
    try:
        alert_id = scheduler.set_alert(resolved, target, direction)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Symbol not watched: {resolved}")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=[str(exc)])

    logger.info("Alert %s created via API.", alert_id)
    return {"id": alert_id, "symbol": resolved, "target_price": target,
            "direction": direction.value}


@router.delete("/alerts/{alert_id:path}")
async def delete_alert(alert_id: str):
    scheduler = _require_scheduler()
    if not scheduler.remove_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Unknown alert: {alert_id}")
    return {"id": alert_id, "removed": True}


@router.get("/history/{symbol}")
async def get_history(symbol: str, limit: int = Query(default=100, ge=1, le=1000)):
    """Return the most recent candles, oldest first."""
    resolved = _require_symbol(symbol)
    candles = _scheduler.history(resolved, limit)
    return {"symbol": resolved, "candles": to_payload(candles), "count": len(candles)}


@router.get("/stats/{symbol}")
async def get_stats(symbol: str, timeframe: str = Query(default="24h")):
    """Return price change statistics over ``1h``, ``4h`` or ``24h``."""
    resolved = _require_symbol(symbol)
    if timeframe not in TIMEFRAME_MINUTES:
        raise HTTPException(
            status_code=422,
            detail=f"timeframe must be one of {', '.join(TIMEFRAME_MINUTES)}",
        )
    stats = _scheduler.price_stats(resolved, timeframe)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Not enough history for {resolved}")
    return to_payload(stats)


@router.get("/indicators/{symbol}")
async def get_indicators(symbol: str):
    """Return the latest indicator values and signal for a symbol."""
    resolved = _require_symbol(symbol)
    indicators = _scheduler.latest_indicators(resolved)
    if indicators is None:
        return {"symbol": resolved, "indicators": None, "signal": None}
    return {
        "symbol": resolved,
        "timestamp": indicators.timestamp,
        "candle_count": indicators.candle_count,
        "indicators": to_payload(indicators.latest()),
        "support_resistance": to_payload(indicators.support_resistance),
        "signal": to_payload(indicators.signal),
    }


@router.get("/arbitrage")
async def get_arbitrage():
    """Return the ranked opportunities from the latest quote tick."""
    scheduler = _require_scheduler()
    return {"opportunities": to_payload(scheduler.latest_opportunities)}


@router.get("/events")
async def get_events(limit: int = Query(default=50, ge=1, le=_MAX_RECENT_EVENTS)):
    """Return the most recent published events, newest last."""
    return {"events": list(_recent_events[-limit:])}
