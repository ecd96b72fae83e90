"""Result cache: TTL-aware in-memory LRU and the per-integration facade."""

from __future__ import annotations

import copy
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable


logger = logging.getLogger("lookout.cache")


class Cache(ABC):
    """Backends only need get/set/clear; TTL is in seconds."""

    @abstractmethod
    def get(self, key: str) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class MemoryCache(Cache):
    def __init__(self, size: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        if size < 1:
            raise ValueError("cache size must be at least 1")
        self._size = size
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        logger.debug("cache_initialized size=%s", size)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("cache_miss key=%s", key)
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                logger.debug("cache_expired key=%s", key)
                return None
            self._entries.move_to_end(key)
            value = entry.value
        logger.debug("cache_hit key=%s", key)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            logger.debug("cache_skip_zero_ttl key=%s", key)
            return
        entry = CacheEntry(key=key, value=copy.deepcopy(value), expires_at=self._clock() + ttl)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache_evicted key=%s", evicted)
        logger.debug("cache_set key=%s ttl=%s", key, ttl)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("cache_cleared items=%s", count)


def integration_prefix(integration_name: str) -> str:
    return f"i:{integration_name}:"


class NamespacedCache:
    """What a running integration sees as ``cache``; no clear()."""

    def __init__(self, backend: Cache, integration_name: str) -> None:
        self._backend = backend
        self._prefix = integration_prefix(integration_name)

    def _key(self, key: str) -> str:
        if not isinstance(key, str):
            raise TypeError("cache key must be a string")
        return self._prefix + key

    def get(self, key: str) -> Any:
        return self._backend.get(self._key(key))

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._backend.set(self._key(key), value, ttl)
