"""hivegrid hub daemon entry point."""

from __future__ import annotations

import asyncio
import os
import signal
import sys

from hivegrid.config import config
from hivegrid.core.preflight import PreflightError, run_preflight
from hivegrid.hub_server import HubServer
from hivegrid.logging_config import DEFAULT_LOG_LEVEL, get_logger, setup_logging

logger = get_logger(__name__)


async def main() -> None:
    """Main entry point."""
    setup_logging(level=os.getenv("HIVEGRID_LOG_LEVEL", DEFAULT_LOG_LEVEL))

    try:
        run_preflight(config.agents.command)
    except PreflightError as e:
        logger.error("Preflight failed: %s", e)
        sys.exit(1)

    hub = HubServer()
    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, _frame: object) -> None:
        """Handle termination signals."""
        logger.info("Received %s signal...", signal.Signals(signum).name)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        try:
            await hub.start()
        except OSError as e:
            logger.error("Cannot listen on %s:%d: %s", hub.host, hub.port, e)
            sys.exit(1)
        except (RuntimeError, TimeoutError) as e:
            logger.error("Hub startup failed: %s", e, exc_info=True)
            sys.exit(1)

        logger.info("hivegrid hub ready; default project %s", hub.default_project_dir)
        await shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    finally:
        try:
            await hub.stop()
        except Exception as e:
            logger.error("Error during hub stop: %s", e)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
