"""
Standalone dispatcher process.

Consumes job deliveries until SIGINT/SIGTERM. Exits with status 1 when the
broker cannot be reached within the connection retry budget.
"""

import asyncio
import signal
import sys

from api.config.logging import get_logger, setup_logging
from api.config.settings import Settings, settings as default_settings
from api.infra.broker import BrokerConnectionError, BrokerConnector
from api.infra.status_store import StatusStore
from api.v1.infra.jobs.dispatcher import Dispatcher

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT_S = 30


async def serve(settings: Settings) -> None:
    """Run a dispatcher until a stop signal arrives."""
    connector = BrokerConnector(settings)
    status_store = StatusStore(settings)
    dispatcher = Dispatcher(settings, connector, status_store)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await connector.connect()

        run_task = asyncio.create_task(dispatcher.run())
        stop_task = asyncio.create_task(stop_requested.wait())
        done, _ = await asyncio.wait(
            {run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        stop_task.cancel()

        if run_task in done:
            # Only returns early when the connection could not be restored
            run_task.result()
        else:
            logger.info("Stop signal received")
            await dispatcher.stop(timeout_s=SHUTDOWN_TIMEOUT_S)
            await run_task
    finally:
        await connector.close()
        await status_store.close()


def main() -> None:
    """Console entry point for the dispatcher process."""
    setup_logging(default_settings, component="dispatcher")

    try:
        asyncio.run(serve(default_settings))
    except BrokerConnectionError as e:
        logger.error("Dispatcher could not reach the broker", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
