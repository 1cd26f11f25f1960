import os
import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from chronoqueue.api.jobs import get_scheduler
from chronoqueue.main import app as fastapi_app
from chronoqueue.scheduler import ChronoScheduler
from chronoqueue.store import AsyncInMemoryRedis


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
def scheduler(redis_client):
    return ChronoScheduler(redis_client, namespace="testing/", poll_delay=0.01, cas_delay=0.001)


@pytest.fixture
async def client(scheduler):
    fastapi_app.dependency_overrides[get_scheduler] = lambda: scheduler
    try:
        async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://testserver") as ac:
            yield ac
    finally:
        fastapi_app.dependency_overrides.clear()
