from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

UNKNOWN_TOPIC = "__unknown__"


@dataclass(slots=True)
class TopicBalance(Generic[T]):
    selected: list[T]
    rest: list[T] = field(default_factory=list)
    topics_selected: int = 0
    topics_available: int = 0
    max_per_topic: int = 0
    relaxed: bool = False


def topic_key(topic: str | None) -> tuple[str, bool]:
    """Normalized topic and whether it counts as a real topic."""
    normalized = (topic or "").strip().lower()
    if not normalized:
        return UNKNOWN_TOPIC, False
    return normalized, True


def _distinct_topics(entries: list[T], topic_of: Callable[[T], str | None]) -> int:
    return len({key for key, known in (topic_key(topic_of(entry)) for entry in entries) if known})


def balance_topics(
    entries: list[T],
    target: int,
    cap: float,
    min_topics: int,
    topic_of: Callable[[T], str | None],
) -> TopicBalance[T]:
    """Pick ``target`` entries in order while keeping any topic under ``cap`` of the picks.

    The first ``min_topics`` distinct topics are seeded with their best entry.
    When the cap leaves the selection short, it is relaxed and filled in order.
    A cap outside (0, 1) disables balancing and takes the first ``target``.
    """
    if target <= 0 or not entries:
        return TopicBalance(selected=[], rest=list(entries))

    target = min(target, len(entries))
    if cap <= 0 or cap >= 1:
        selected = entries[:target]
        return TopicBalance(
            selected=selected,
            rest=entries[target:],
            topics_selected=_distinct_topics(selected, topic_of),
            topics_available=_distinct_topics(entries, topic_of),
        )

    max_per_topic = max(1, math.floor(cap * target))
    min_topics = max(0, min(min_topics, target))

    keys = [topic_key(topic_of(entry)) for entry in entries]
    first_seen: dict[str, int] = {}
    for index, (key, known) in enumerate(keys):
        if known and key not in first_seen:
            first_seen[key] = index

    picked: set[int] = set()
    counts: dict[str, int] = {}

    def take(index: int) -> None:
        picked.add(index)
        counts[keys[index][0]] = counts.get(keys[index][0], 0) + 1

    for index in list(first_seen.values())[:min_topics]:
        take(index)

    for index, (key, _) in enumerate(keys):
        if len(picked) >= target:
            break
        if index in picked or counts.get(key, 0) >= max_per_topic:
            continue
        take(index)

    relaxed = len(picked) < target
    if relaxed:
        for index in range(len(entries)):
            if len(picked) >= target:
                break
            if index not in picked:
                take(index)

    selected = [entry for index, entry in enumerate(entries) if index in picked]
    return TopicBalance(
        selected=selected,
        rest=[entry for index, entry in enumerate(entries) if index not in picked],
        topics_selected=_distinct_topics(selected, topic_of),
        topics_available=len(first_seen),
        max_per_topic=max_per_topic,
        relaxed=relaxed,
    )
