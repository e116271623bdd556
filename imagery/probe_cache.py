from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    expires_at: float
    value: V


class ProbeCache(Generic[V]):
    """
    Bounded, time-limited memo for just-built probe results (e.g. Timelines).

    Keys are explicit (zoom, tile, bbox, limit). Rebuilding an evicted entry
    yields an equivalent value, so concurrent put() calls need no locking:
    the last writer wins.

        cache = ProbeCache(ttl=300.0)
        hit = cache.get(key)
        if hit is None:
            hit = build()
            cache.put(key, hit)
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_entries: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl = float(ttl)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: "OrderedDict[Hashable, _Entry[V]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    # -------- public API --------

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def put(self, key: Hashable, value: V) -> None:
        self._purge_expired()
        self._entries.pop(key, None)
        self._entries[key] = _Entry(self._clock() + self.ttl, value)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)  # oldest insert first

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_s": self.ttl,
            "hits": self._hits,
            "misses": self._misses,
        }

    # -------- internals --------

    def _purge_expired(self) -> None:
        now = self._clock()
        for k in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[k]
