"""Standalone runner that keeps a runtime syncing until signalled.

Usage: python -m gochi.runner
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from gochi.config import get_settings
from gochi.log import setup_logging
from gochi.runtime import create_runtime

logger = structlog.get_logger()


async def run() -> None:
    settings = get_settings()
    setup_logging(settings)
    runtime = await create_runtime(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.start()
    logger.info("runner_ready", environment=settings.environment, store_backend=settings.store_backend)
    try:
        await stop.wait()
    finally:
        await runtime.before_unload()
        await runtime.close()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
