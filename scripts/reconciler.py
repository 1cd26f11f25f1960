#!/usr/bin/env python3
"""Recovers jobs abandoned in the processing set by workers that died mid-job.

Every RECONCILE_INTERVAL seconds, descriptors claimed more than
STALE_AFTER_SECONDS ago are redelivered to the schedule with their original
job id, owner, type and ready time.

Usage:
  STALE_AFTER_SECONDS=300 python scripts/reconciler.py

Environment variables:
- REDIS_URL (optional)
- SCHEDULER_NAMESPACE (optional)
- TESTING=1 to use in-memory redis
"""
import asyncio
import logging
import time
from typing import List, Optional

from chronoqueue import config
from chronoqueue.scheduler import ChronoScheduler
from chronoqueue.store import close_redis, get_redis

logger = logging.getLogger("chronoqueue.reconciler")


async def reconcile_once(scheduler: ChronoScheduler, stale_after: float, now: Optional[float] = None) -> List[int]:
    now = time.time() if now is None else now
    recovered = []
    for descriptor in await scheduler.processing_set_items():
        if now - descriptor.claimed_at < stale_after:
            continue
        job_id = await scheduler.redeliver(descriptor)
        if job_id is not None:
            logger.info("reconciler: recovered job %s claimed by %r", job_id, descriptor.tag)
            recovered.append(job_id)
    return recovered


async def run_reconciler(scheduler: Optional[ChronoScheduler] = None):
    owns_client = scheduler is None
    if scheduler is None:
        scheduler = ChronoScheduler(await get_redis(), namespace=config.NAMESPACE, cas_delay=config.CAS_DELAY)
    logger.info("reconciler: connected")
    try:
        while True:
            await reconcile_once(scheduler, config.STALE_AFTER_SECONDS)
            await asyncio.sleep(config.RECONCILE_INTERVAL)
    except asyncio.CancelledError:
        pass
    finally:
        if owns_client:
            await close_redis()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    try:
        asyncio.run(run_reconciler())
    except KeyboardInterrupt:
        logger.info("reconciler: exiting")
