#!/usr/bin/env python3
"""
Run one digest schedule tick and exit.

For deployments that drive the schedule from cron instead of the API
process's scheduler. Safe to run concurrently with other ticks.
"""

import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pricewatch.logging_config import setup_logging
from pricewatch.worker.tasks import task_runner


async def main() -> int:
    setup_logging(component="tick")
    await task_runner.initialize()
    try:
        decision = await task_runner.scheduled_tick()
    finally:
        await task_runner.close()
    print(f"Schedule tick: {decision}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
