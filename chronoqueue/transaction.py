import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from redis.exceptions import WatchError

from . import metrics

logger = logging.getLogger(__name__)


async def optimistic(
    client,
    keys: Sequence[str],
    body: Callable[[Any], Awaitable[Any]],
    delay: float,
    operation: str = "transaction",
) -> Any:
    """Run ``body`` as a check-and-set transaction over ``keys``.

    ``body`` receives a pipeline that is already watching ``keys``. It reads in
    immediate mode, then calls ``pipe.multi()`` and queues its writes. If it
    returns without calling ``multi()`` nothing is written and its result is
    returned as is. When a watched key changes before EXEC the whole body is
    run again after ``delay`` seconds, with no limit on attempts.
    """
    while True:
        async with client.pipeline(transaction=True) as pipe:
            await pipe.watch(*keys)
            result = await body(pipe)
            if not pipe.explicit_transaction:
                return result
            try:
                await pipe.execute()
                return result
            except WatchError:
                metrics.transaction_conflicts_total.labels(operation=operation).inc()
                logger.debug("%s: watched keys changed, retrying in %.3fs", operation, delay)
        await asyncio.sleep(delay)
