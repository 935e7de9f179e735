# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/cache/local.py
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

from pixgate.infra.cache.entry import CacheEntry

DEFAULT_MAX_ENTRIES = 1000


class LocalLRUCache:
    """In-process tier: bounded entry count, least recently used evicted first."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, *, clock: Callable[[], float] = time.time):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        entry.touch(now)
        return entry

    def put(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self.evictions += 1

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "evictions": self.evictions,
            "size_bytes": sum(e.size_bytes for e in self._entries.values()),
        }
