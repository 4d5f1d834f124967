# /flowbot/workflows/cache.py

import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")

_MISS = object()


class VersionCache(Generic[V]):
    """
    Bounded LRU cache with a per-entry TTL, keyed by project id. Publishing
    invalidates a project's entry. ``None`` values are cached as well, so a
    project without an active flow does not hit storage on every message.
    """

    def __init__(self, capacity: int = 256, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Optional[V]]]" = OrderedDict()
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Optional[V] = None) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None or entry[0] <= self._clock():
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return default
        self._entries.move_to_end(key)
        self.hits += 1
        return entry[1]

    def put(self, key: str, value: Optional[V]) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Optional[V]]]) -> Optional[V]:
        value = self.get(key, _MISS)
        if value is _MISS:
            generation = self._generations.get(key, 0)
            value = await loader()
            # Skip the store if the key was invalidated while loading
            if self._generations.get(key, 0) == generation:
                self.put(key, value)
        return value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0] > self._clock()

    def __len__(self) -> int:
        return len(self._entries)
