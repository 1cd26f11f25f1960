import asyncio
import time

import pytest

from chronoqueue.scheduler import ChronoScheduler
from scripts.reconciler import reconcile_once
from scripts.worker import run_worker

HEADERS = {"X-API-Key": "dev-key"}


@pytest.mark.asyncio
async def test_scheduled_job_end_to_end(client, redis_client):
    """Starts a blocking worker, submits a job scheduled slightly in the future
    through the API, and waits for it to be handled and acknowledged."""
    handled = []

    async def handler(payload, ready_at, job_id):
        handled.append((payload, job_id))

    worker_scheduler = ChronoScheduler(redis_client, namespace="testing/", blocking=True, poll_delay=0.02, cas_delay=0.001)
    worker_task = asyncio.create_task(run_worker(worker_scheduler, handler=handler, tag="it-worker"))

    try:
        submit = await client.post("/jobs", json={"payload": "later", "ready_at": time.time() + 0.2}, headers=HEADERS)
        assert submit.status_code == 200
        job_id = submit.json()["job_id"]

        # Immediately the job should still be scheduled
        r = await client.get(f"/jobs/{job_id}")
        assert r.status_code == 200

        for _ in range(100):
            await asyncio.sleep(0.05)
            stats = (await client.get("/stats")).json()
            if handled and stats["size"] == 0 and stats["processing_set_size"] == 0:
                break
        assert handled == [("later", job_id)]
        assert (await client.get(f"/jobs/{job_id}")).status_code == 404
    finally:
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)


@pytest.mark.asyncio
async def test_worker_survives_failing_job(redis_client):
    scheduler = ChronoScheduler(redis_client, namespace="testing/", blocking=True, poll_delay=0.01, cas_delay=0.001)
    job_id = await scheduler.schedule("flaky", time.time(), owner_id=1)
    attempts = []

    def handler(payload, ready_at, jid):
        attempts.append(jid)
        if len(attempts) < 3:
            raise RuntimeError("not yet")

    worker_task = asyncio.create_task(run_worker(scheduler, handler=handler))
    try:
        for _ in range(200):
            await asyncio.sleep(0.01)
            if len(attempts) >= 3 and await scheduler.processing_set_size() == 0:
                break
        assert attempts == [job_id, job_id, job_id]
        assert await scheduler.size() == 0
        assert await scheduler.item(job_id) is None
    finally:
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)


@pytest.mark.asyncio
async def test_reconciler_recovers_abandoned_claims(scheduler):
    now = time.time()
    stale = await scheduler.schedule("stale", now - 10, owner_id=4, type="email")
    fresh = await scheduler.schedule("fresh", now - 5)

    # a worker claims both and dies without acknowledging
    first = await scheduler.claim(tag="dead-worker")
    second = await scheduler.claim(tag="dead-worker")
    assert {first.job_id, second.job_id} == {stale, fresh}
    assert await scheduler.size() == 0

    recovered = await reconcile_once(scheduler, stale_after=60, now=first.claimed_at + 30)
    assert recovered == []

    recovered = await reconcile_once(scheduler, stale_after=60, now=time.time() + 120)
    assert sorted(recovered) == sorted([stale, fresh])
    assert await scheduler.processing_set_size() == 0
    assert await scheduler.scheduled_for(4, "email") == [(stale, "stale")]

    # the dead worker's late acknowledgment must not drop the recovered payload
    assert await scheduler.acknowledge(first.descriptor) is False
    assert await scheduler.item(first.job_id) is not None
