import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from redis.exceptions import WatchError

from . import config

if not config.TESTING:
    import redis.asyncio as redis  # type: ignore
    RedisClient = redis.Redis
else:
    RedisClient = None


@dataclass(frozen=True)
class Keys:
    """Redis key names for one scheduler namespace."""

    queue: str
    processing: str
    counter: str
    jobs: str
    owner_jobs: str
    type_jobs: str
    entries: str
    claims: str

    @classmethod
    def for_namespace(cls, namespace: str = "") -> "Keys":
        return cls(
            queue=f"{namespace}q",
            processing=f"{namespace}processing",
            counter=f"{namespace}counter",
            jobs=f"{namespace}jobs",
            owner_jobs=f"{namespace}owner_jobs",
            type_jobs=f"{namespace}type_jobs",
            # job_id -> entry key while scheduled, job_id -> descriptor while claimed
            entries=f"{namespace}entries",
            claims=f"{namespace}claims",
        )

    def all(self) -> Tuple[str, ...]:
        return (
            self.queue,
            self.processing,
            self.counter,
            self.jobs,
            self.owner_jobs,
            self.type_jobs,
            self.entries,
            self.claims,
        )


def _enc(value: Any) -> str:
    # redis-py sends ints and floats as their decimal text
    return value if isinstance(value, str) else str(value)


def _bound(value: Union[str, float]) -> float:
    return float(value)


class AsyncInMemoryRedis:
    """Command subset of ``redis.asyncio.Redis`` used by the scheduler.

    Every key carries a version that is bumped on modification so pipelines
    can implement WATCH/MULTI/EXEC the way Redis does.
    """

    def __init__(self):
        self._strings: Dict[str, str] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._versions: Dict[str, int] = {}

    def _touch(self, name: str):
        self._versions[name] = self._versions.get(name, 0) + 1

    def version(self, name: str) -> int:
        return self._versions.get(name, 0)

    def pipeline(self, transaction: bool = True) -> "AsyncInMemoryPipeline":
        return AsyncInMemoryPipeline(self)

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for space in (self._strings, self._hashes, self._zsets, self._sets):
                if name in space:
                    del space[name]
                    removed += 1
                    self._touch(name)
        return removed

    async def get(self, name: str) -> Optional[str]:
        return self._strings.get(name)

    async def set(self, name: str, value: Any):
        self._strings[name] = _enc(value)
        self._touch(name)
        return True

    async def incr(self, name: str, amount: int = 1) -> int:
        value = int(self._strings.get(name, "0")) + amount
        self._strings[name] = str(value)
        self._touch(name)
        return value

    # hash methods
    async def hset(self, name: str, key: Any, value: Any):
        h = self._hashes.setdefault(name, {})
        added = 0 if _enc(key) in h else 1
        h[_enc(key)] = _enc(value)
        self._touch(name)
        return added

    async def hget(self, name: str, key: Any) -> Optional[str]:
        h = self._hashes.get(name, {})
        return h.get(_enc(key))

    async def hdel(self, name: str, *keys: Any) -> int:
        h = self._hashes.get(name, {})
        removed = 0
        for k in keys:
            if _enc(k) in h:
                del h[_enc(k)]
                removed += 1
        if removed:
            if not h:
                del self._hashes[name]
            self._touch(name)
        return removed

    async def hlen(self, name: str) -> int:
        return len(self._hashes.get(name, {}))

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = float(score)
        self._touch(name)
        return added

    def _sorted(self, name: str) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        return sorted(z.items(), key=lambda kv: (kv[1], kv[0]))

    async def zrangebyscore(
        self,
        name: str,
        min: Union[str, float],
        max: Union[str, float],
        start: Optional[int] = None,
        num: Optional[int] = None,
        withscores: bool = False,
    ) -> List[Any]:
        items = [(m, s) for m, s in self._sorted(name) if _bound(min) <= s <= _bound(max)]
        if start is not None and num is not None:
            items = items[start:start + num] if num >= 0 else items[start:]
        return items if withscores else [m for m, _ in items]

    async def zrange(self, name: str, start: int, end: int, withscores: bool = False) -> List[Any]:
        items = self._sorted(name)
        if end < 0:
            end = len(items) + end
        items = items[start:end + 1] if end >= start else []
        return items if withscores else [m for m, _ in items]

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        if removed:
            if not z:
                del self._zsets[name]
            self._touch(name)
        return removed

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self._zsets.get(name, {}).get(member)

    async def zcard(self, name: str) -> int:
        return len(self._zsets.get(name, {}))

    # set methods
    async def sadd(self, name: str, *values: str) -> int:
        s = self._sets.setdefault(name, set())
        added = len(set(values) - s)
        s.update(values)
        self._touch(name)
        return added

    async def srem(self, name: str, *values: str) -> int:
        s = self._sets.get(name, set())
        removed = len(s & set(values))
        s.difference_update(values)
        if removed:
            if not s:
                del self._sets[name]
            self._touch(name)
        return removed

    async def sismember(self, name: str, value: str) -> bool:
        return value in self._sets.get(name, set())

    async def smembers(self, name: str) -> Set[str]:
        return set(self._sets.get(name, set()))

    async def scard(self, name: str) -> int:
        return len(self._sets.get(name, set()))


class AsyncInMemoryPipeline:
    """Transactional pipeline over :class:`AsyncInMemoryRedis`.

    After ``watch`` commands run immediately, yielding to the event loop first
    so concurrent tasks interleave as separate clients would. After ``multi``
    they are queued and ``execute`` applies them without yielding, or raises
    ``WatchError`` if any watched key changed.
    """

    def __init__(self, store: AsyncInMemoryRedis):
        self._store = store
        self._watched: Dict[str, int] = {}
        self._queued: List[Tuple[str, tuple, dict]] = []
        self.explicit_transaction = False

    async def __aenter__(self) -> "AsyncInMemoryPipeline":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.reset()

    async def watch(self, *names: str):
        await asyncio.sleep(0)
        for name in names:
            self._watched[name] = self._store.version(name)
        return True

    def multi(self):
        self.explicit_transaction = True

    def __getattr__(self, command: str):
        method = getattr(self._store, command)
        if self.explicit_transaction:
            def queue(*args, **kwargs):
                self._queued.append((command, args, kwargs))
                return self
            return queue

        async def immediate(*args, **kwargs):
            await asyncio.sleep(0)
            return await method(*args, **kwargs)
        return immediate

    async def execute(self) -> List[Any]:
        try:
            for name, version in self._watched.items():
                if self._store.version(name) != version:
                    raise WatchError("Watched variable changed.")
            results = []
            for command, args, kwargs in self._queued:
                results.append(await getattr(self._store, command)(*args, **kwargs))
            return results
        finally:
            await self.reset()

    async def reset(self):
        self._watched = {}
        self._queued = []
        self.explicit_transaction = False


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None
# Shared client (and its connection pool) for the process
_client = None


async def get_redis():
    global _inmemory_client, _client
    if config.TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    if _client is None:
        _client = RedisClient.from_url(config.REDIS_URL, decode_responses=True)  # type: ignore
    return _client


async def close_redis():
    global _client
    if _client is not None:
        client, _client = _client, None
        await client.aclose()
