"""
Standalone Job Dispatcher Service

This service runs three workers side by side and handles:
1. Dispatching one-shot jobs when their scheduled time arrives
2. Firing recurring cron jobs from the cron table
3. Serving the HTTP gateway clients use to insert, delete and configure jobs

A fatal error in any worker stops the other two and exits the process.
"""
import asyncio
import logging
import sys

from dispatcher.api import GatewayWorker, create_api
from dispatcher.callbacks import CallbackSender
from dispatcher.config import ConfigError, Settings, load_settings
from dispatcher.crons import CronEngine
from dispatcher.scheduler import OneShotScheduler
from dispatcher.store import Store
from dispatcher.workers import run_workers

logger = logging.getLogger("DispatcherService")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def main_async(settings: Settings) -> None:
    """Build the store, sender and workers, then run until one of them stops."""
    store = Store.from_url(settings.database_url)
    sender = CallbackSender(
        settings.endpoint, settings.secret, timeout=settings.callback_timeout
    )
    try:
        await asyncio.to_thread(store.init_schema)
        scheduler = OneShotScheduler(store, sender)
        crons = CronEngine(store, sender, timezone=settings.cron_timezone)
        gateway = GatewayWorker(
            create_api(scheduler, crons, settings.secret), settings.host, settings.port
        )
        await run_workers(
            scheduler, crons, gateway, grace_period=settings.shutdown_grace_period
        )
    finally:
        sender.close()
        store.close()


def main():
    """Entry point for the dispatcher service."""
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings.log_level)
    logger.info("Initializing dispatcher service...")
    logger.info(f"Callback endpoint: {settings.endpoint}")

    try:
        asyncio.run(main_async(settings))
    except KeyboardInterrupt:
        logger.info("Dispatcher service stopped by user")
    except Exception as e:
        logger.error(f"Dispatcher service crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
