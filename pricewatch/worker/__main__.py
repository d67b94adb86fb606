"""Worker process entry point: ``python -m pricewatch.worker``."""

import asyncio
import logging
import signal

from pricewatch.db.models import Base
from pricewatch.db.session import engine
from pricewatch.logging_config import setup_logging
from pricewatch.worker.consumer import WorkerPool
from pricewatch.worker.tasks import task_runner

setup_logging(component="worker")
logger = logging.getLogger(__name__)


async def main():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()
    pool = WorkerPool(task_runner)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.stop)

    try:
        await pool.run()
    finally:
        logger.info("Shutting down worker...")
        await task_runner.close()
        await engine.dispose()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
