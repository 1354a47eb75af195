"""
Bounded in-memory caches

Insertion/access-ordered mapping with an entry cap and an optional TTL,
used for the resolver's and provider catalog's memory tiers.
"""
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterator
from typing import Generic, TypeVar


V = TypeVar("V")


class LruCache(Generic[V]):
    """
    OrderedDict-backed LRU with per-entry timestamps.

    Args:
        max_entries: Capacity; the least recently used entry is evicted beyond it
        ttl_seconds: Entries older than this read as missing (None disables)
        touch_on_read: Move entries to the recent end on get(); when False the
            cache evicts in insertion order
        clock: Time source, seconds
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float | None = None,
        *,
        touch_on_read: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._max_entries = max(1, max_entries)
        self._ttl = ttl_seconds
        self._touch_on_read = touch_on_read
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, V]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._data))

    def get(self, key: Hashable) -> V | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._ttl is not None and self._clock() - stored_at > self._ttl:
            del self._data[key]
            return None
        if self._touch_on_read:
            self._data.move_to_end(key)
        return value

    def put(self, key: Hashable, value: V, stored_at: float | None = None) -> None:
        self._data[key] = (self._clock() if stored_at is None else stored_at, value)
        self._data.move_to_end(key)
        while len(self._data) > self._max_entries:
            self._data.popitem(last=False)

    def stored_at(self, key: Hashable) -> float | None:
        entry = self._data.get(key)
        return entry[0] if entry else None

    def pop(self, key: Hashable) -> V | None:
        entry = self._data.pop(key, None)
        return entry[1] if entry else None

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> list[tuple[Hashable, V]]:
        return [(key, value) for key, (_, value) in self._data.items()]
