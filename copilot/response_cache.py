"""
Suggestion response cache.

Bounded map with a fixed TTL and insertion-order eviction: when full, the
entry inserted earliest goes first, regardless of how often it was read.
Re-setting a key counts as a new insertion.
"""
import hashlib
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


def make_cache_key(pipeline: str, context: str) -> str:
    digest = hashlib.sha256(context.encode("utf-8")).hexdigest()
    return f"{pipeline}:{digest}"


class ResponseCache(Generic[V]):

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[float, V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self.clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: V) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (self.clock(), value)

    def clear(self) -> None:
        self._entries.clear()
