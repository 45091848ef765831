"""Forwarding history package — models, indexing, merge and anomaly queries."""

from .models import ForwardingRecord, ForwardingStore, ObservedForward
from .index import build_unique_index, build_multi_index
from .merge import merge, normalize_forwarding_address
from .query import QueryError, query, new_since, stale_since, duplicates

__all__ = [
    "ForwardingRecord",
    "ForwardingStore",
    "ObservedForward",
    "build_unique_index",
    "build_multi_index",
    "merge",
    "normalize_forwarding_address",
    "QueryError",
    "query",
    "new_since",
    "stale_since",
    "duplicates",
]
