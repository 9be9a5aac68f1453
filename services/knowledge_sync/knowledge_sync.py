"""Knowledge sync runner entry point.

Keeps the local knowledge base of the configured agent in line with the
remote source until interrupted. Pass ``--once`` for a single cycle.

Usage:
    python -m services.knowledge_sync.knowledge_sync [--once]
"""

import asyncio
import signal
import sys

from services.knowledge_sync.KnowledgeRuntime import KnowledgeRuntime
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging


async def main(once: bool = False) -> int:
    """Boot the engine and run the sync loop until SIGINT/SIGTERM."""
    logger = setup_logging()
    config = HelperConfig(logger=logger)

    try:
        runtime = KnowledgeRuntime(helper_config=config)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    try:
        service = await runtime.boot()
    except Exception:
        return 1

    try:
        if once:
            report = await service.sync_now()
            return 0 if report.failed == 0 else 1

        stop_signal = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_signal.set)
            except NotImplementedError:
                # not available on windows
                pass

        service.start()
        await stop_signal.wait()
        logger.info("Shutdown requested, waiting for the running sync cycle...", color="yellow")
        return 0
    finally:
        await runtime.close()


def run() -> None:
    sys.exit(asyncio.run(main(once="--once" in sys.argv[1:])))


if __name__ == "__main__":
    run()
