#!/usr/bin/env python3
"""duskshift service - keeps the display temperature in step with the sun."""

import asyncio
import logging
import os
import signal

from .controller import DisplayController
from .fullscreen import XpropFullscreenMonitor
from .gamma import create_gamma_applier
from .geolocation import GeolocationService
from .settings import get_default_settings_path, load_settings, save_settings

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level_name = os.getenv("DUSKSHIFT_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if level_name != logging.getLevelName(level):
        logger.warning(f"Invalid DUSKSHIFT_LOG_LEVEL '{level_name}', defaulting to INFO")


async def serve() -> None:
    """Run the controller until SIGINT/SIGTERM, then restore the display."""
    settings_path = get_default_settings_path()
    settings = await load_settings(settings_path)

    gamma = create_gamma_applier(os.getenv("DUSKSHIFT_GAMMA", "xrandr"))
    controller = DisplayController(
        settings=settings,
        gamma=gamma,
        fullscreen=XpropFullscreenMonitor(),
        geolocation=GeolocationService(),
    )

    run_task = asyncio.create_task(controller.run())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, run_task.cancel)
        except NotImplementedError:
            # Not available on every platform; KeyboardInterrupt still works
            pass

    try:
        await run_task
    except asyncio.CancelledError:
        logger.info("Shutting down...")
    finally:
        controller.shutdown()
        gamma.restore_original()
        await gamma.drain()
        await save_settings(settings, settings_path)


def main():
    """Main entry point."""
    configure_logging()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
