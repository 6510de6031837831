"""
Process entry point: load config, wire the engine, run until signalled.

    python -m tradeguard.runtime.main
"""
import asyncio
import signal
from typing import Optional

from tradeguard.config.config import Config, load_config
from tradeguard.monitoring.logger import get_logger, setup_logging
from tradeguard.runtime.engine import TradingEngine, build_broker
from tradeguard.storage.db import Database

logger = get_logger(__name__)


async def main_async(config: Optional[Config] = None, stop_event: Optional[asyncio.Event] = None) -> None:
    config = config or load_config()
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    logger.info("Starting engine", environment=config.environment, broker=config.broker.name)

    database = Database(config.data.database_url, echo=config.data.echo_sql)
    broker = build_broker(config)
    engine = TradingEngine.from_config(config, broker, database, inline_worker=config.broker.name == "paper")

    stop_event = stop_event or asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            logger.debug("Signal handler unavailable", signal=sig.name)

    await engine.start()
    try:
        await stop_event.wait()
    finally:
        await engine.stop()
        close = getattr(broker, "close", None)
        if close is not None:
            await close()
        database.dispose()
        logger.info("Engine shutdown complete")


def main():
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
