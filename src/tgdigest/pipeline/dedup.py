from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class DedupEntry(Generic[T]):
    ref: T
    canonical_hash: str
    summary: str
    importance: float
    tg_date: datetime


def group_by_hash(entries: list[DedupEntry[T]]) -> list[list[DedupEntry[T]]]:
    """Groups of entries sharing a canonical hash, in first-seen order."""
    groups: dict[str, list[DedupEntry[T]]] = {}
    for entry in entries:
        groups.setdefault(entry.canonical_hash, []).append(entry)
    return list(groups.values())


def group_by_indexes(
    entries: list[DedupEntry[T]],
    grouper: Callable[[list[str]], list[list[int]]],
) -> list[list[DedupEntry[T]]]:
    """Apply an index grouping (for example from the LLM cluster task) to the entries."""
    index_groups = grouper([entry.summary for entry in entries])
    return [[entries[index] for index in group] for group in index_groups if group]


def rank_key(entry: DedupEntry[T]) -> tuple[float, float]:
    return (-entry.importance, -entry.tg_date.timestamp())


def keep_best(group: list[DedupEntry[T]]) -> tuple[DedupEntry[T], list[DedupEntry[T]]]:
    """The highest-importance entry (newest on ties) and the rest of the group."""
    ordered = sorted(group, key=rank_key)
    return ordered[0], ordered[1:]
