"""
Forwarding data models — fixed-shape records for the forwarding history.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional


def canonical_guid(value: str) -> str:
    """Return the canonical lowercase UUID string, raising ValueError if invalid."""
    return str(uuid.UUID(str(value).strip()))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ForwardingRecord:
    """One mailbox observed with SMTP forwarding enabled."""
    name: str
    guid: str
    forwarding_address: str        # smtp: prefix already stripped
    first_seen: datetime           # Restarts when the address changes
    last_seen: datetime            # Most recent observation
    display_name: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "guid": self.guid,
            "forwarding_address": self.forwarding_address,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass(frozen=True)
class ObservedForward:
    """A mailbox as reported by one enumeration snapshot."""
    name: str
    guid: str
    raw_forwarding_address: str    # e.g. "smtp:someone@example.com"
    observed_at: datetime
    display_name: str = ""


@dataclass(frozen=True)
class ForwardingStore:
    """
    Ordered, guid-keyed collection of ForwardingRecord.
    Treated as a value: operations return a new store instead of mutating.
    """
    records: tuple[ForwardingRecord, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, records: Iterable[ForwardingRecord]) -> "ForwardingStore":
        return cls(tuple(records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ForwardingRecord]:
        return iter(self.records)

    def get(self, guid: str) -> Optional[ForwardingRecord]:
        for record in self.records:
            if record.guid == guid:
                return record
        return None
