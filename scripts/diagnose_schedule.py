#!/usr/bin/env python3
"""
Diagnose digest schedule state: lock, marker, queue depths and open runs.
"""

import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from pricewatch.config import settings
from pricewatch.db import repository
from pricewatch.db.models import DigestRun
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.worker.digest import TERMINAL_STATES
from pricewatch.worker.job_queue import RedisJobQueue
from pricewatch.worker.messages import CHECK_QUEUE, DIGEST_QUEUE, REPORT_QUEUE
from pricewatch.worker.schedule import (
    describe_schedule,
    next_send_time,
    should_send,
    to_local,
)
from pricewatch.worker.schedule_lock import ScheduleLockManager


async def diagnose() -> None:
    lock_manager = ScheduleLockManager()
    queue = RedisJobQueue()

    try:
        lock_info = await lock_manager.get_lock_info()
        depths = {name: await queue.depth(name) for name in (CHECK_QUEUE, DIGEST_QUEUE, REPORT_QUEUE)}
    finally:
        await lock_manager.close()
        await queue.close()

    print("Digest Schedule Diagnosis")
    print("=========================")
    print(f"LOCK_KEY: {lock_manager.lock_key}")
    if not lock_info:
        print("Lock: none")
    else:
        print("Lock: present")
        print(f"  tick_id: {lock_info.get('tick_id')}")
        print(f"  started_at: {lock_info.get('started_at')}")
        print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")
    print("")

    for name, depth in depths.items():
        print(
            f"Queue {name}: pending={depth['pending']} "
            f"processing={depth['processing']} dead={depth['dead']}"
        )
    print("")

    async with AsyncSessionLocal() as db:
        config = await repository.get_schedule_config(db)
        last_sent_at = await repository.get_last_sent_at(db)
        result = await db.execute(
            select(DigestRun)
            .where(DigestRun.state.not_in(TERMINAL_STATES))
            .order_by(DigestRun.created_at.desc())
        )
        open_runs = result.scalars().all()

    tz_name = settings.schedule_timezone
    now_local = to_local(datetime.utcnow(), tz_name)
    last_local = to_local(last_sent_at, tz_name)
    print(f"Schedule: {describe_schedule(config)} ({tz_name})")
    print(f"Last sent (UTC): {last_sent_at or 'never'}")
    print(f"Next slot: {next_send_time(last_local, config, now_local)}")
    print(f"Due now: {should_send(now_local, last_local, config)}")
    print("")

    if not open_runs:
        print("Open digest runs: none")
    else:
        print(f"Open digest runs: {len(open_runs)}")
        for run in open_runs:
            age_s = (datetime.utcnow() - run.created_at).total_seconds()
            print(
                f"  - run_id={run.run_id} trigger={run.trigger} state={run.state} "
                f"slot={run.slot_key} age_s={age_s:.0f}"
            )

    print("")
    print("Recommendations")
    print("----------------")
    if lock_info and lock_info.get("ttl_seconds") is None:
        print("- Lock has no TTL. Clear it with ScheduleLockManager.force_unlock().")
    if any(depth["dead"] for depth in depths.values()):
        print("- Dead-lettered jobs present. Inspect last_error on the job hashes.")
    if open_runs and not depths[DIGEST_QUEUE]["pending"] and not depths[DIGEST_QUEUE]["processing"]:
        print("- Open runs without a queued digest job. Is the worker process running?")
    if not lock_info and not open_runs:
        print("- No issues detected.")


if __name__ == "__main__":
    asyncio.run(diagnose())
