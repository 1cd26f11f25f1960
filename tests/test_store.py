import pytest
from redis.exceptions import WatchError

from chronoqueue import config, store
from chronoqueue.store import AsyncInMemoryRedis, Keys


@pytest.mark.asyncio
async def test_transaction_commits_when_watched_keys_unchanged():
    r = AsyncInMemoryRedis()
    async with r.pipeline(transaction=True) as pipe:
        await pipe.watch("h")
        assert await pipe.hget("h", "a") is None
        pipe.multi()
        pipe.hset("h", "a", 1)
        pipe.incr("c")
        assert await pipe.execute() == [1, 1]
    assert await r.hget("h", "a") == "1"


@pytest.mark.asyncio
async def test_transaction_aborts_when_watched_key_changes():
    r = AsyncInMemoryRedis()
    async with r.pipeline(transaction=True) as pipe:
        await pipe.watch("z")
        await r.zadd("z", {"other": 1.0})
        pipe.multi()
        pipe.zadd("z", {"mine": 2.0})
        with pytest.raises(WatchError):
            await pipe.execute()
    assert await r.zrange("z", 0, -1) == ["other"]


@pytest.mark.asyncio
async def test_noop_removal_does_not_touch_key():
    r = AsyncInMemoryRedis()
    await r.sadd("s", "a")
    async with r.pipeline(transaction=True) as pipe:
        await pipe.watch("s")
        await r.srem("s", "missing")
        pipe.multi()
        pipe.sadd("s", "b")
        await pipe.execute()
    assert await r.smembers("s") == {"a", "b"}


@pytest.mark.asyncio
async def test_zrangebyscore_orders_by_score_then_member():
    r = AsyncInMemoryRedis()
    await r.zadd("z", {"b": 1.0, "a": 1.0, "c": 0.5, "d": 9.0})
    assert await r.zrangebyscore("z", "-inf", 1.0) == ["c", "a", "b"]
    assert await r.zrangebyscore("z", "-inf", 1.0, start=0, num=1, withscores=True) == [("c", 0.5)]
    assert await r.zrange("z", 1, 2, withscores=True) == [("a", 1.0), ("b", 1.0)]


def test_keys_for_namespace():
    keys = Keys.for_namespace("ns/")
    assert keys.queue == "ns/q"
    assert len(set(keys.all())) == 8
    assert all(k.startswith("ns/") for k in keys.all())


class CountingClient:
    created = 0

    def __init__(self):
        self.closed = False

    @classmethod
    def from_url(cls, url, decode_responses=False):
        cls.created += 1
        return cls()

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_get_redis_shares_one_client_until_closed(monkeypatch):
    monkeypatch.setattr(config, "TESTING", False)
    monkeypatch.setattr(store, "RedisClient", CountingClient)
    monkeypatch.setattr(store, "_client", None)
    CountingClient.created = 0

    first = await store.get_redis()
    assert await store.get_redis() is first
    assert CountingClient.created == 1

    await store.close_redis()
    assert first.closed
    second = await store.get_redis()
    assert second is not first
    assert CountingClient.created == 2
    await store.close_redis()


@pytest.mark.asyncio
async def test_string_get_and_set():
    r = AsyncInMemoryRedis()
    assert await r.get("c") is None
    await r.set("c", 7)
    assert await r.get("c") == "7"
    assert await r.incr("c") == 8
