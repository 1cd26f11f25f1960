#!/usr/bin/env python3
"""Worker that claims due jobs from the schedule and runs them.

Usage:
  REDIS_URL=redis://localhost:6379/0 SCHEDULER_NAMESPACE=scheduler/ python scripts/worker.py

A handler failure has already put the job back into the schedule by the time
``each`` raises; the worker logs it, waits one poll interval and resumes.

Set TESTING=1 to use the in-memory AsyncInMemoryRedis implementation used by the tests.
"""
import asyncio
import logging
import os
import socket
from typing import Optional

from chronoqueue import config
from chronoqueue.scheduler import ChronoScheduler
from chronoqueue.store import close_redis, get_redis

logger = logging.getLogger("chronoqueue.worker")


def default_tag() -> str:
    return config.WORKER_TAG or f"{socket.gethostname()}:{os.getpid()}"


async def handle_job(payload: Optional[str], ready_at: float, job_id: int):
    logger.info("running job %s (ready at %.3f): %r", job_id, ready_at, payload)


async def run_worker(scheduler: Optional[ChronoScheduler] = None, handler=handle_job, tag: Optional[str] = None):
    owns_client = scheduler is None
    if scheduler is None:
        scheduler = ChronoScheduler(
            await get_redis(),
            namespace=config.NAMESPACE,
            blocking=True,
            poll_delay=config.POLL_DELAY,
            cas_delay=config.CAS_DELAY,
        )
    tag = tag or default_tag()
    logger.info("worker %s: connected, testing=%s", tag, config.TESTING)
    try:
        while True:
            try:
                await scheduler.each(handler, tag=tag)
            except Exception:
                logger.exception("worker %s: job failed and was redelivered", tag)
                await asyncio.sleep(scheduler.poll_delay)
                continue
            if not scheduler.blocking:
                return
    except asyncio.CancelledError:
        pass
    finally:
        if owns_client:
            await close_redis()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker: exiting")
