"""cryptowatch — application entry point.

Boots the FastAPI internal server and provides the CLI entry point that
runs the monitoring scheduler alongside it.
"""

import logging

from fastapi import FastAPI

from cryptowatch.api.routers import router

app = FastAPI(title="cryptowatch Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("cryptowatch")


@app.get("/health")
async def health():
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, build the scheduler and run it."""
    import argparse
    import asyncio

    from cryptowatch.config import ConfigurationError, load_config, validate_config
    from cryptowatch.market.ccxt_source import CcxtMarketSource
    from cryptowatch.monitor.scheduler import MonitoringScheduler

    parser = argparse.ArgumentParser(description="cryptowatch market monitor")
    parser.add_argument("--env", help="Path to a .env file (default: ./.env)")
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Run the monitoring loops without the API server",
    )
    parser.add_argument("--port", type=int, help="API port (overrides API_PORT)")
    args = parser.parse_args()

    try:
        config = load_config(args.env)
        validate_config(config)
    except ConfigurationError as exc:
        logging.basicConfig(format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        logger.error("%s", exc)
        raise SystemExit(2) from None

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    source = CcxtMarketSource.from_config(config)
    scheduler = MonitoringScheduler(config=config, source=source)

    from cryptowatch.api.routers import configure_routers

    configure_routers(scheduler=scheduler)

    import signal

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping gracefully.")
        scheduler.request_stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    port = args.port or config.api_port

    async def _main():
        try:
            if args.no_api:
                await _run_monitor_only(scheduler)
            else:
                await _run_monitor(scheduler, port)
        finally:
            await source.close()

    asyncio.run(_main())


async def _run_monitor(scheduler, port: int = 8080) -> None:
    """Start the API server and the monitoring loops concurrently."""
    import asyncio
    import uvicorn

    logger.info("Starting cryptowatch with %d symbol(s).",
                len(scheduler.watched_symbols))

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        await server.serve()
        # The server owns SIGINT while serving; stop the monitor with it.
        scheduler.request_stop()

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        _run_server(),
        scheduler.run(),
        return_exceptions=True,
    )
    logger.info("cryptowatch stopped. Results: %s", results)


async def _run_monitor_only(scheduler) -> None:
    """Run the monitoring loops without starting the API server."""
    logger.info(
        "Starting cryptowatch monitor (no API) with %d symbol(s).",
        len(scheduler.watched_symbols),
    )
    await scheduler.run()
    logger.info("cryptowatch monitor stopped.")


if __name__ == "__main__":
    _run_cli()
