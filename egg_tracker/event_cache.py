"""Time-bucketed cache of deferred events.

Events are grouped by the second at which they become due. The schedulers
refill the cache from storage on a slow cadence and drain it on a fast one;
draining only touches the buckets that are actually due, so a short notify
interval stays cheap no matter how many future events are buffered.
"""
from __future__ import annotations

import logging
from bisect import bisect_right, insort
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Set, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Hashable)


class DeferredEventCache(Generic[E]):
    """Ordered map of trigger timestamp to the set of events due then."""

    def __init__(self) -> None:
        self._keys: List[int] = []
        self._buckets: Dict[int, Set[E]] = {}

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def __bool__(self) -> bool:
        return bool(self._keys)

    @property
    def bucket_count(self) -> int:
        return len(self._keys)

    def first_key(self) -> int | None:
        return self._keys[0] if self._keys else None

    def insert(self, timestamp: int, event: E) -> None:
        timestamp = int(timestamp)
        bucket = self._buckets.get(timestamp)
        if bucket is None:
            bucket = set()
            self._buckets[timestamp] = bucket
            insort(self._keys, timestamp)
        bucket.add(event)

    def refill(self, events: Iterable[E], key: Callable[[E], int]) -> int:
        """Merge ``events`` into their buckets; returns how many were new."""

        added = 0
        for event in events:
            timestamp = int(key(event))
            bucket = self._buckets.get(timestamp)
            if bucket is not None and event in bucket:
                continue
            self.insert(timestamp, event)
            added += 1
        return added

    def drain_due(self, now: int) -> List[E]:
        """Remove and return every event whose bucket key is <= ``now``."""

        if not self._keys or self._keys[0] > now:
            return []
        if self._keys[-1] <= now:
            due_keys = self._keys
            self._keys = []
        else:
            boundary = bisect_right(self._keys, now)
            due_keys = self._keys[:boundary]
            del self._keys[:boundary]
        drained: List[E] = []
        for timestamp in due_keys:
            drained.extend(self._buckets.pop(timestamp))
        logger.debug("Drained %d events from %d buckets", len(drained), len(due_keys))
        return drained

    def clear(self) -> None:
        self._keys.clear()
        self._buckets.clear()


__all__ = ["DeferredEventCache"]
