from typing import AsyncIterator, List, Optional, Tuple, Union

from .entry import EntryKey
from .store import Keys

Item = Tuple[Optional[str], float]


class ItemPager:
    """Paginated view over everything in the schedule, earliest first.

    Pages are fetched lazily with ZRANGE, so this works for very large
    schedules, but nothing is synchronized with writers: an insert, removal or
    claim between two pages can shift the boundary and cause a duplicate or a
    skipped item. Use it for inspection only.
    """

    PAGE_SIZE = 50

    def __init__(self, client, keys: Keys, page_size: int = PAGE_SIZE):
        self._client = client
        self._keys = keys
        self.page_size = page_size

    async def size(self) -> int:
        return await self._client.zcard(self._keys.queue)

    async def get(self, start: int, num: Optional[int] = None) -> Union[List[Item], Optional[Item]]:
        """Random access by offset: a list of ``num`` items, or one item when ``num`` is None."""
        stop = start + (num if num is not None else 1) - 1
        if stop < start:
            return [] if num is not None else None
        elements = await self._client.zrange(self._keys.queue, start, stop, withscores=True)
        page = []
        for member, ready_at in elements:
            entry = EntryKey.decode(member)
            page.append((await self._client.hget(self._keys.jobs, entry.job_id), float(ready_at)))
        if num is not None:
            return page
        return page[0] if page else None

    async def __aiter__(self) -> AsyncIterator[Item]:
        start = 0
        while start < await self.size():
            page = await self.get(start, self.page_size)
            if not page:
                break
            for item in page:
                yield item
            start += len(page)
