import time

import pytest

HEADERS = {"X-API-Key": "dev-key"}


@pytest.mark.asyncio
async def test_submit_and_metrics(client):
    # Submit a job
    res = await client.post("/jobs", json={"payload": "hello", "owner_id": "u1", "type": "email"}, headers=HEADERS)
    assert res.status_code == 200
    job_id = res.json()["job_id"]

    # Verify job is retrievable
    res2 = await client.get(f"/jobs/{job_id}")
    assert res2.status_code == 200
    assert res2.json() == {"job_id": job_id, "payload": "hello"}

    # Check metrics contain counters
    resm = await client.get("/metrics")
    assert resm.status_code == 200
    text = resm.text
    assert "jobs_scheduled_total" in text
    assert "jobs_claimed_total" in text


@pytest.mark.asyncio
async def test_write_routes_require_api_key(client):
    res = await client.post("/jobs", json={"payload": "x"})
    assert res.status_code == 401
    res = await client.post("/jobs", json={"payload": "x"}, headers={"X-API-Key": "nope"})
    assert res.status_code == 403
    res = await client.delete("/owners/u1/jobs")
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_missing_job(client):
    res = await client.get("/jobs/999")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_owner_listing_and_unschedule(client, scheduler):
    now = time.time() + 3600
    ids = []
    for payload, job_type in (("a", "red"), ("b", "red"), ("c", "blue")):
        res = await client.post(
            "/jobs", json={"payload": payload, "ready_at": now, "owner_id": "u1", "type": job_type}, headers=HEADERS
        )
        ids.append(res.json()["job_id"])

    res = await client.get("/owners/u1/jobs", params={"type": "red"})
    assert [j["payload"] for j in res.json()["jobs"]] == ["a", "b"]

    res = await client.get("/types/red/size")
    assert res.json()["size"] == 2

    res = await client.post("/owners/u1/jobs/unschedule", json={"job_ids": [ids[0]]}, headers=HEADERS)
    assert res.json() == {"removed": [ids[0]]}

    res = await client.delete("/owners/u1/jobs", params={"type": "blue"}, headers=HEADERS)
    assert res.json() == {"removed": [ids[2]]}

    res = await client.get("/stats")
    assert res.json() == {"size": 1, "num_users": 1, "processing_set_size": 0}


@pytest.mark.asyncio
async def test_any_owner_requires_type(client):
    res = await client.delete("/owners/*/jobs", headers=HEADERS)
    assert res.status_code == 400
    res = await client.get("/owners/*/jobs")
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_processing_listing(client, scheduler):
    await scheduler.schedule("x", time.time(), owner_id="u9", type="sms")
    claim = await scheduler.claim(tag="worker-a")

    res = await client.get("/processing")
    assert res.status_code == 200
    [item] = res.json()["items"]
    assert item["job_id"] == claim.job_id
    assert item["owner_id"] == "u9"
    assert item["tag"] == "worker-a"


@pytest.mark.asyncio
async def test_health(client):
    assert (await client.get("/healthz")).json() == {"status": "ok"}
    assert (await client.get("/readyz")).json() == {"ready": True}


@pytest.mark.asyncio
async def test_scheduling_claimed_id_is_rejected(client, scheduler):
    job_id = await scheduler.schedule("x", time.time(), owner_id="u1")
    await scheduler.claim()
    res = await client.post("/jobs", json={"payload": "y", "job_id": job_id}, headers=HEADERS)
    assert res.status_code == 400
    assert (await client.get("/stats")).json()["processing_set_size"] == 1
