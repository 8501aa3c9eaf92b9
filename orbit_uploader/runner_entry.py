"""Runner entrypoint for the ORBIT uploader."""

from __future__ import annotations

import asyncio
import logging
import signal

from orbit_uploader.bootstrap import UploaderBootstrap
from orbit_uploader.config_manager.uploader_config import UploaderConfig
from orbit_uploader.event_emitter import init_emitter, reset_emitter

logger = logging.getLogger(__name__)


def install_signal_handlers(stop: asyncio.Event) -> None:
    """Set ``stop`` when the process receives SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s", signum)


async def run_uploader(
    config: UploaderConfig, stop: asyncio.Event | None = None
) -> None:
    """Run the uploader until ``stop`` is set or a signal arrives.

    Args:
        config: Resolved uploader configuration.
        stop: Event ending the run; a new one is created when omitted.
    """
    stop = stop or asyncio.Event()
    init_emitter(loop=asyncio.get_running_loop())
    bootstrap = UploaderBootstrap(config)
    try:
        await bootstrap.start()
        install_signal_handlers(stop)
        logger.info("Uploader running")
        await stop.wait()
    finally:
        await bootstrap.stop()
        reset_emitter()


def main(config: UploaderConfig | None = None) -> None:
    """Run the uploader in a new event loop until interrupted."""
    try:
        asyncio.run(run_uploader(config or UploaderConfig()))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    main()
