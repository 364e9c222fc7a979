#!/usr/bin/env python3
"""
Apex engine entry point.

Exit status 0 means a requested shutdown. Status 1 means the engine gave up
(liveness timeout or fatal error) and expects its supervisor to restart it.
"""
import asyncio
import logging
import signal
import sys
import tracemalloc
from typing import List

from apex_engine import __version__
from apex_engine.configuration import Configuration
from apex_engine.core import Main_Core
from apex_engine.utils.colorformatter import configure_logging, getLogger

configure_logging(logging.INFO)
logger = getLogger("Main")

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _install_signal_handlers(core: Main_Core, stop_tasks: List[asyncio.Task]) -> None:
    loop = asyncio.get_running_loop()

    def request_stop(sig: signal.Signals) -> None:
        logger.info(f"{sig.name} received, stopping engine 🛑")
        stop_tasks.append(loop.create_task(core.stop()))

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, request_stop, sig)


def _log_top_allocations(limit: int = 10) -> None:
    if not tracemalloc.is_tracing():
        return
    snapshot = tracemalloc.take_snapshot()
    logger.debug(f"Top {limit} memory allocations:")
    for stat in snapshot.statistics("lineno")[:limit]:
        logger.debug(str(stat))


async def main() -> int:
    tracemalloc.start()
    logger.info(f"Starting APEX MASTER ENGINE v{__version__}...")
    core = Main_Core(Configuration())
    stop_tasks: List[asyncio.Task] = []
    try:
        _install_signal_handlers(core, stop_tasks)
        await core.initialize()
        await core.run()
        return core.exit_code
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        _log_top_allocations()
        return 1
    finally:
        await core.stop()
        if stop_tasks:
            await asyncio.gather(*stop_tasks, return_exceptions=True)
        tracemalloc.stop()
        logger.info("Apex engine shutdown complete")


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
