"""Records stored in the schedule and the processing set.

Both are serialized as compact JSON so that a member read back from Redis can
be turned into the same record without consulting any other key.
"""
import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from .errors import MalformedEntryError, PreconditionError

Identifier = Union[int, str]


class AnyOwner(enum.Enum):
    ANY = "any"


# Selects jobs of a type regardless of owner in unschedule / scheduled_for.
ANY_OWNER = AnyOwner.ANY


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _is_identifier(value: Any) -> bool:
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def check_identifier(name: str, value: Any) -> Optional[Identifier]:
    if value is None or _is_identifier(value):
        return value
    raise PreconditionError(f"{name} must be an int or a str, got {value!r}")


def to_timestamp(value: Union[float, int, datetime]) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


@dataclass(frozen=True)
class EntryKey:
    """Identity of a scheduled job, used as its member in the time index."""

    job_id: int
    owner_id: Optional[Identifier] = None
    type: Optional[Identifier] = None

    def encode(self) -> str:
        return _dumps([self.job_id, self.owner_id, self.type])

    def to_list(self) -> list:
        return [self.job_id, self.owner_id, self.type]

    @classmethod
    def from_list(cls, parts: Any) -> "EntryKey":
        if not isinstance(parts, list) or len(parts) != 3:
            raise MalformedEntryError(f"expected [job_id, owner_id, type], got {parts!r}")
        job_id, owner_id, type_ = parts
        if isinstance(job_id, bool) or not isinstance(job_id, int):
            raise MalformedEntryError(f"invalid job id {job_id!r}")
        for value in (owner_id, type_):
            if value is not None and not _is_identifier(value):
                raise MalformedEntryError(f"invalid identifier {value!r}")
        return cls(job_id, owner_id, type_)

    @classmethod
    def decode(cls, raw: str) -> "EntryKey":
        try:
            parts = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedEntryError(f"unparseable schedule entry {raw!r}") from exc
        return cls.from_list(parts)


@dataclass(frozen=True)
class ClaimDescriptor:
    """Processing-set record for an entry claimed but not yet acknowledged."""

    entry: EntryKey
    ready_at: float
    claimed_at: float
    tag: Optional[str] = None
    raw: str = field(default="", compare=False, repr=False)

    def __post_init__(self):
        if not self.raw:
            object.__setattr__(self, "raw", self.encode())

    @property
    def job_id(self) -> int:
        return self.entry.job_id

    def encode(self) -> str:
        return _dumps(
            {
                "entry": self.entry.to_list(),
                "ready_at": self.ready_at,
                "claimed_at": self.claimed_at,
                "tag": self.tag,
            }
        )

    @classmethod
    def decode(cls, raw: str) -> "ClaimDescriptor":
        try:
            data = json.loads(raw)
            return cls(
                entry=EntryKey.from_list(data["entry"]),
                ready_at=float(data["ready_at"]),
                claimed_at=float(data["claimed_at"]),
                tag=data.get("tag"),
                raw=raw,
            )
        except MalformedEntryError:
            raise
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            raise MalformedEntryError(f"unparseable processing descriptor {raw!r}") from exc


@dataclass(frozen=True)
class Claim:
    descriptor: ClaimDescriptor
    payload: Optional[str]

    @property
    def entry(self) -> EntryKey:
        return self.descriptor.entry

    @property
    def job_id(self) -> int:
        return self.descriptor.entry.job_id

    @property
    def ready_at(self) -> float:
        return self.descriptor.ready_at

    @property
    def claimed_at(self) -> float:
        return self.descriptor.claimed_at
