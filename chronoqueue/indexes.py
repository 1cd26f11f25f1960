"""Owner and type indexes kept next to the time index.

Each index is a Redis hash. The field is the JSON encoding of an owner id or a
type and the value is a JSON list of ``[job_id, other]`` pairs, where
``other`` is the entry's type (owner index) or owner id (type index). A field
whose list becomes empty is deleted so the hash only holds live owners/types.
"""
import json
from typing import Dict, Iterable, List, Optional, Tuple

from .entry import EntryKey, Identifier


class ListIndex:
    def __init__(self, key: str):
        self.key = key

    @staticmethod
    def field(value: Identifier) -> str:
        return json.dumps(value)

    async def load(self, client, value: Identifier) -> List[list]:
        raw = await client.hget(self.key, self.field(value))
        return json.loads(raw) if raw else []

    def store(self, pipe, value: Identifier, members: List[list]):
        if members:
            pipe.hset(self.key, self.field(value), json.dumps(members, separators=(",", ":")))
        else:
            pipe.hdel(self.key, self.field(value))

    async def count(self, client) -> int:
        return await client.hlen(self.key)


class StagedIndexes:
    """Read-modify-write buffer for both indexes within one transaction.

    Lists are loaded in the watch phase; ``add``/``remove`` only change the
    local copies and ``flush`` queues a write for every list that changed.
    """

    def __init__(self, owners: ListIndex, types: ListIndex):
        self._owners = owners
        self._types = types
        self._lists: Dict[Tuple[str, str], List[list]] = {}
        self._values: Dict[Tuple[str, str], Identifier] = {}
        self._dirty = set()

    async def _fetch(self, pipe, index: ListIndex, value: Identifier) -> List[list]:
        slot = (index.key, index.field(value))
        if slot not in self._lists:
            self._lists[slot] = await index.load(pipe, value)
            self._values[slot] = value
        return self._lists[slot]

    def _slots(self, entry: EntryKey) -> Iterable[Tuple[ListIndex, Identifier, list]]:
        if entry.owner_id is not None:
            yield self._owners, entry.owner_id, [entry.job_id, entry.type]
        if entry.type is not None:
            yield self._types, entry.type, [entry.job_id, entry.owner_id]

    async def load(self, pipe, entries: Iterable[EntryKey]):
        for entry in entries:
            for index, value, _ in self._slots(entry):
                await self._fetch(pipe, index, value)

    async def for_owner(self, pipe, owner_id: Identifier, type: Optional[Identifier] = None) -> List[EntryKey]:
        members = await self._fetch(pipe, self._owners, owner_id)
        return [
            EntryKey(job_id, owner_id, job_type)
            for job_id, job_type in members
            if type is None or job_type == type
        ]

    async def for_type(self, pipe, type: Identifier) -> List[EntryKey]:
        members = await self._fetch(pipe, self._types, type)
        return [EntryKey(job_id, owner_id, type) for job_id, owner_id in members]

    def add(self, entry: EntryKey):
        for index, value, member in self._slots(entry):
            slot = (index.key, index.field(value))
            members = self._lists[slot]
            if member not in members:
                members.append(member)
                self._dirty.add(slot)

    def remove(self, entry: EntryKey):
        for index, value, member in self._slots(entry):
            slot = (index.key, index.field(value))
            members = self._lists[slot]
            if member in members:
                members.remove(member)
                self._dirty.add(slot)

    def flush(self, pipe):
        for slot in sorted(self._dirty):
            index = self._owners if slot[0] == self._owners.key else self._types
            index.store(pipe, self._values[slot], self._lists[slot])
