"""
Keyed lookups over record collections.
"""

from __future__ import annotations

from typing import Callable, Hashable, Iterable, TypeVar

R = TypeVar("R")
K = TypeVar("K", bound=Hashable)


def build_unique_index(records: Iterable[R], key: Callable[[R], K]) -> dict[K, R]:
    """
    Map each key to a single record.
    A later record with the same key replaces the earlier one.
    """
    index: dict[K, R] = {}
    for record in records:
        index[key(record)] = record
    return index


def build_multi_index(records: Iterable[R], key: Callable[[R], K]) -> dict[K, list[R]]:
    """Map each key to every record carrying it, in arrival order."""
    index: dict[K, list[R]] = {}
    for record in records:
        index.setdefault(key(record), []).append(record)
    return index
