"""
Anomaly queries over the forwarding history: new, stale and duplicate forwards.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .index import build_multi_index
from .models import ForwardingRecord, ForwardingStore, as_utc


class QueryError(ValueError):
    """Raised when a query is given contradictory arguments."""
    pass


def duplicate_key(record: ForwardingRecord) -> str:
    return record.forwarding_address.lower()


def query(
    store: ForwardingStore,
    newer_than: Optional[datetime] = None,
    older_than: Optional[datetime] = None,
    use_last_seen: bool = False,
    only_duplicates: bool = False,
) -> list[ForwardingRecord]:
    """
    Filter the store by time window and/or address duplication.

    newer_than keeps records whose first_seen (or last_seen with
    use_last_seen) is after the bound. older_than keeps records whose
    last_seen is before the bound. Duplicate narrowing is evaluated over
    the whole store before any time filter.
    """
    if newer_than is not None and older_than is not None:
        raise QueryError("newer_than and older_than are mutually exclusive")

    candidates: list[ForwardingRecord] = list(store)

    if only_duplicates:
        by_address = build_multi_index(candidates, key=duplicate_key)
        candidates = [
            record
            for group in by_address.values()
            if len(group) > 1
            for record in group
        ]

    if newer_than is not None:
        bound = as_utc(newer_than)
        if use_last_seen:
            candidates = [r for r in candidates if r.last_seen > bound]
        else:
            candidates = [r for r in candidates if r.first_seen > bound]
    elif older_than is not None:
        bound = as_utc(older_than)
        candidates = [r for r in candidates if r.last_seen < bound]

    return candidates


def new_since(store: ForwardingStore, since: datetime) -> list[ForwardingRecord]:
    return query(store, newer_than=since)


def stale_since(store: ForwardingStore, since: datetime) -> list[ForwardingRecord]:
    return query(store, older_than=since)


def duplicates(
    store: ForwardingStore,
    since: Optional[datetime] = None,
) -> list[ForwardingRecord]:
    """Records sharing an address with another record, optionally fresh since `since`."""
    return query(store, newer_than=since, only_duplicates=True)
