"""A chronological scheduler on top of Redis.

Use :meth:`ChronoScheduler.schedule` to add a payload to be processed at an
arbitrary point in time, and :meth:`ChronoScheduler.each` to process the
payloads whose time has come. In blocking mode ``each`` never returns
normally; in nonblocking mode it returns once nothing is due.

Reliability
-----------
A claimed payload sits in the processing set until its handler finishes. If
the handler raises, the payload is put back with its original job id, owner
and type. If the worker process dies instead, the descriptor stays in the
processing set and the payload is in neither the schedule nor the indexes.
Recovering those is up to the caller: periodically walk
:meth:`processing_set_items`, decide from ``claimed_at`` and ``tag`` which
ones were abandoned, and :meth:`redeliver` them (``scripts/reconciler.py``
does exactly that). Passing a meaningful ``tag`` to ``each`` helps.

Every write is a WATCH/MULTI/EXEC transaction that is retried after
``cas_delay`` seconds when a concurrent client touched a watched key, so
"nonblocking" ``each`` may still wait briefly under contention.
"""
import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, Union

from . import metrics
from .entry import (
    ANY_OWNER,
    AnyOwner,
    Claim,
    ClaimDescriptor,
    EntryKey,
    Identifier,
    check_identifier,
    to_timestamp,
)
from .errors import PreconditionError
from .indexes import ListIndex, StagedIndexes
from .pagination import ItemPager
from .store import Keys
from .transaction import optimistic

logger = logging.getLogger(__name__)

POLL_DELAY = 1.0  # seconds
CAS_DELAY = 0.5  # seconds

Handler = Callable[[Optional[str], float, int], Union[Any, Awaitable[Any]]]


class ChronoScheduler:
    def __init__(
        self,
        redis,
        namespace: str = "",
        blocking: bool = False,
        poll_delay: float = POLL_DELAY,
        cas_delay: float = CAS_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            redis: ``redis.asyncio.Redis`` client created with ``decode_responses=True``
            namespace: prefix for every Redis key, e.g. ``"scheduler/"``
            blocking: whether ``each`` waits for future items or returns when nothing is due
            poll_delay: sleep between polls of an empty schedule in blocking mode
            cas_delay: sleep before retrying a transaction that lost a race
            clock: source of the current epoch time
        """
        self.redis = redis
        self.namespace = namespace
        self.blocking = blocking
        self.poll_delay = poll_delay
        self.cas_delay = cas_delay
        self._clock = clock
        self.keys = Keys.for_namespace(namespace)
        self._owners = ListIndex(self.keys.owner_jobs)
        self._types = ListIndex(self.keys.type_jobs)
        # keys guarding the time index, both indexes and the id lookups
        self._watched = (
            self.keys.queue,
            self.keys.jobs,
            self.keys.owner_jobs,
            self.keys.type_jobs,
            self.keys.entries,
            self.keys.claims,
        )

    def _staged(self) -> StagedIndexes:
        return StagedIndexes(self._owners, self._types)

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    async def schedule(
        self,
        payload: str,
        ready_at: Union[float, datetime],
        owner_id: Optional[Identifier] = None,
        job_id: Optional[int] = None,
        type: Optional[Identifier] = None,
    ) -> int:
        """Schedule ``payload`` to become due at ``ready_at``. Returns the job id.

        A new id comes from an atomic counter unless ``job_id`` is given. An
        explicit id replaces whatever is scheduled under it (its old owner and
        type included) and moves the counter past it. Raises
        :class:`PreconditionError` if the id is currently claimed.
        """
        if isinstance(owner_id, AnyOwner):
            raise PreconditionError("ANY_OWNER cannot own a job")
        owner_id = check_identifier("owner_id", owner_id)
        type = check_identifier("type", type)
        ready_at = to_timestamp(ready_at)
        explicit = job_id is not None
        if not explicit:
            job_id = await self.redis.incr(self.keys.counter)
        entry = EntryKey(int(job_id), owner_id, type)
        watched = self._watched + ((self.keys.counter,) if explicit else ())

        async def body(pipe):
            if await pipe.hget(self.keys.claims, entry.job_id) is not None:
                raise PreconditionError(f"job {entry.job_id} is being processed")
            previous = await self._scheduled_entry(pipe, entry.job_id)
            counter = await pipe.get(self.keys.counter) if explicit else None
            staged = self._staged()
            await staged.load(pipe, [e for e in (previous, entry) if e is not None])
            pipe.multi()
            if previous is not None and previous != entry:
                self._queue_unschedule(pipe, staged, previous)
            self._queue_schedule(pipe, staged, entry, payload, ready_at)
            staged.flush(pipe)
            if explicit and int(counter or 0) < entry.job_id:
                pipe.set(self.keys.counter, entry.job_id)
            return entry.job_id

        await optimistic(self.redis, watched, body, self.cas_delay, "schedule")
        metrics.jobs_scheduled_total.inc()
        logger.info("scheduled job %s for owner=%r type=%r at %.3f", entry.job_id, owner_id, type, ready_at)
        return entry.job_id

    def _queue_schedule(self, pipe, staged: StagedIndexes, entry: EntryKey, payload: Optional[str], ready_at: float):
        if payload is not None:
            pipe.hset(self.keys.jobs, entry.job_id, payload)
        pipe.zadd(self.keys.queue, {entry.encode(): ready_at})
        pipe.hset(self.keys.entries, entry.job_id, entry.encode())
        staged.add(entry)

    def _queue_unschedule(self, pipe, staged: StagedIndexes, entry: EntryKey):
        pipe.zrem(self.keys.queue, entry.encode())
        pipe.hdel(self.keys.entries, entry.job_id)
        staged.remove(entry)

    async def _scheduled_entry(self, pipe, job_id: int) -> Optional[EntryKey]:
        raw = await pipe.hget(self.keys.entries, job_id)
        return EntryKey.decode(raw) if raw is not None else None

    async def unschedule(
        self,
        owner_id: Union[Identifier, AnyOwner, None],
        job_ids: Optional[Iterable[int]] = None,
        type: Optional[Identifier] = None,
    ) -> List[int]:
        """Remove scheduled jobs and return the ids actually removed.

        ``job_ids=None`` selects every job of ``owner_id`` (restricted to
        ``type`` when given). With ``owner_id=ANY_OWNER`` jobs are selected by
        ``type`` alone, which is then required. Claimed jobs are not in the
        indexes and are left alone.
        """
        if owner_id is None:
            raise PreconditionError("owner_id is required")
        if owner_id is ANY_OWNER and type is None:
            raise PreconditionError("type is required if owner_id is ANY_OWNER")
        if owner_id is not ANY_OWNER:
            check_identifier("owner_id", owner_id)
        check_identifier("type", type)
        wanted = None if job_ids is None else {int(j) for j in job_ids}

        async def body(pipe):
            staged = self._staged()
            if owner_id is ANY_OWNER:
                candidates = await staged.for_type(pipe, type)
            else:
                candidates = await staged.for_owner(pipe, owner_id, type)
            doomed = [e for e in candidates if wanted is None or e.job_id in wanted]
            await staged.load(pipe, doomed)
            pipe.multi()
            for entry in doomed:
                self._queue_unschedule(pipe, staged, entry)
                pipe.hdel(self.keys.jobs, entry.job_id)
            staged.flush(pipe)
            return [e.job_id for e in doomed]

        removed = await optimistic(self.redis, self._watched, body, self.cas_delay, "unschedule")
        if removed:
            metrics.jobs_unscheduled_total.inc(len(removed))
            logger.info("unscheduled jobs %s for owner=%r type=%r", removed, owner_id, type)
        return removed

    async def unschedule_all_for(
        self, owner_id: Union[Identifier, AnyOwner, None], type: Optional[Identifier] = None
    ) -> List[int]:
        return await self.unschedule(owner_id, None, type)

    async def scheduled_for(
        self, owner_id: Union[Identifier, AnyOwner, None], type: Optional[Identifier] = None
    ) -> List[Tuple[int, Optional[str]]]:
        """``(job_id, payload)`` pairs currently scheduled for an owner, in scheduling order."""
        if owner_id is None:
            return []
        if owner_id is not ANY_OWNER:
            check_identifier("owner_id", owner_id)
        check_identifier("type", type)
        staged = self._staged()
        if owner_id is ANY_OWNER:
            if type is None:
                raise PreconditionError("type is required if owner_id is ANY_OWNER")
            entries = await staged.for_type(self.redis, type)
        else:
            entries = await staged.for_owner(self.redis, owner_id, type)
        return [(e.job_id, await self.redis.hget(self.keys.jobs, e.job_id)) for e in entries]

    async def item(self, job_id: Optional[int]) -> Optional[str]:
        if job_id is None:
            return None
        return await self.redis.hget(self.keys.jobs, int(job_id))

    # ------------------------------------------------------------------
    # claiming and consumption
    # ------------------------------------------------------------------

    async def claim(self, tag: Optional[str] = None) -> Optional[Claim]:
        """Move the earliest due entry into the processing set.

        Returns ``None`` when nothing is due. Losing a race to another client
        is retried until this call either claims an entry or sees none due.
        """

        async def body(pipe):
            now = self._clock()
            due = await pipe.zrangebyscore(self.keys.queue, "-inf", now, start=0, num=1, withscores=True)
            if not due:
                return None
            member, ready_at = due[0]
            entry = EntryKey.decode(member)
            payload = await pipe.hget(self.keys.jobs, entry.job_id)
            staged = self._staged()
            await staged.load(pipe, [entry])
            descriptor = ClaimDescriptor(entry, ready_at=float(ready_at), claimed_at=now, tag=tag)
            pipe.multi()
            self._queue_unschedule(pipe, staged, entry)
            staged.flush(pipe)
            pipe.sadd(self.keys.processing, descriptor.raw)
            pipe.hset(self.keys.claims, entry.job_id, descriptor.raw)
            return Claim(descriptor, payload)

        claim = await optimistic(self.redis, self._watched, body, self.cas_delay, "claim")
        if claim is None:
            logger.debug("no due entry")
            return None
        if claim.payload is None:
            logger.warning("claimed job %s has no payload", claim.job_id)
        metrics.jobs_claimed_total.inc()
        logger.info("claimed job %s (tag=%r)", claim.job_id, tag)
        return claim

    async def _next_claim(self, tag: Optional[str]) -> Optional[Claim]:
        while True:
            claim = await self.claim(tag)
            if claim is not None or not self.blocking:
                return claim
            await asyncio.sleep(self.poll_delay)

    async def acknowledge(self, descriptor: ClaimDescriptor) -> bool:
        """Finish a claim: drop its descriptor and payload.

        Returns False, touching nothing, if the descriptor is no longer in the
        processing set (e.g. a reconciler already redelivered it).
        """

        async def body(pipe):
            if not await pipe.sismember(self.keys.processing, descriptor.raw):
                return False
            pipe.multi()
            pipe.srem(self.keys.processing, descriptor.raw)
            pipe.hdel(self.keys.claims, descriptor.job_id)
            pipe.hdel(self.keys.jobs, descriptor.job_id)
            return True

        done = await optimistic(
            self.redis,
            (self.keys.processing, self.keys.jobs, self.keys.claims),
            body,
            self.cas_delay,
            "acknowledge",
        )
        if done:
            metrics.jobs_acknowledged_total.inc()
            logger.info("acknowledged job %s", descriptor.job_id)
        return done

    async def redeliver(self, descriptor: ClaimDescriptor) -> Optional[int]:
        """Put a claimed entry back into the schedule under its original identity.

        The entry is rescheduled at its original ready time and the descriptor
        removed in one transaction. Returns the job id, or None if the
        descriptor was no longer in the processing set.
        """
        entry = descriptor.entry

        async def body(pipe):
            if not await pipe.sismember(self.keys.processing, descriptor.raw):
                return None
            payload = await pipe.hget(self.keys.jobs, entry.job_id)
            staged = self._staged()
            await staged.load(pipe, [entry])
            pipe.multi()
            self._queue_schedule(pipe, staged, entry, payload, descriptor.ready_at)
            staged.flush(pipe)
            pipe.srem(self.keys.processing, descriptor.raw)
            pipe.hdel(self.keys.claims, entry.job_id)
            return entry.job_id

        job_id = await optimistic(
            self.redis, self._watched + (self.keys.processing,), body, self.cas_delay, "redeliver"
        )
        if job_id is not None:
            metrics.jobs_redelivered_total.inc()
            logger.info("redelivered job %s at %.3f", job_id, descriptor.ready_at)
        return job_id

    async def each(self, handler: Handler, tag: Optional[str] = None):
        """Call ``handler(payload, ready_at, job_id)`` for every due entry.

        ``handler`` may be a plain function or a coroutine function. If it
        raises, the entry is redelivered and the exception propagates, ending
        the loop. ``tag`` is stored with each claim in the processing set.
        """
        while True:
            claim = await self._next_claim(tag)
            if claim is None:
                return
            start = time.time()
            try:
                result = handler(claim.payload, claim.ready_at, claim.job_id)
                if inspect.isawaitable(result):
                    await result
            except BaseException:  # back in the schedule, then let it propagate
                logger.warning("handler failed for job %s, redelivering", claim.job_id)
                await self.redeliver(claim.descriptor)
                raise
            finally:
                metrics.handler_latency_seconds.observe(time.time() - start)
            await self.acknowledge(claim.descriptor)

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------

    def items(self) -> ItemPager:
        """All ``(payload, ready_at)`` pairs in schedule order. Not synchronized with writers."""
        return ItemPager(self.redis, self.keys)

    async def processing_set_items(self) -> List[ClaimDescriptor]:
        members = await self.redis.smembers(self.keys.processing)
        descriptors = [ClaimDescriptor.decode(m) for m in members]
        return sorted(descriptors, key=lambda d: (d.claimed_at, d.job_id))

    async def reset(self):
        """Drop all data and reset the schedule entirely."""
        await self.redis.delete(*self.keys.all())

    async def size(self) -> int:
        return await self.redis.zcard(self.keys.queue)

    async def size_by_type(self, type: Identifier) -> int:
        check_identifier("type", type)
        return len(await self._staged().for_type(self.redis, type))

    async def num_users(self) -> int:
        return await self._owners.count(self.redis)

    async def processing_set_size(self) -> int:
        return await self.redis.scard(self.keys.processing)
