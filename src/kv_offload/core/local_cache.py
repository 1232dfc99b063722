"""
In-process LRU cache for hot keys.

The cache sits in front of the fast tier on the read path and records
hot-read hints on the write path. Its contents are never authoritative: a
miss says nothing about whether the key exists in a tier.

Two variants share one interface and are chosen once at construction via
:func:`create_local_cache`; callers never branch on which one they hold.
"""

from __future__ import annotations

import abc
import asyncio
from collections import OrderedDict
from typing import Any

import structlog

from kv_offload.core.storage_keys import hot_flag_key, value_cache_key
from kv_offload.errors import InvalidInput

logger = structlog.get_logger()

DEFAULT_CAPACITY = 1024

# Stored under the hot-flag namespace; the actual value is cached on read
_HOT_MARKER = "cached"


class LocalCache(abc.ABC):
    """Interface for the in-process cache."""

    @property
    @abc.abstractmethod
    def enabled(self) -> bool:
        """Whether this cache ever stores anything."""
        ...

    @abc.abstractmethod
    async def mark_hot(self, key: str) -> None:
        """Flag ``key`` as recently hot without caching its value."""
        ...

    @abc.abstractmethod
    async def is_hot(self, key: str) -> bool:
        """Whether ``key`` carries a hot flag."""
        ...

    @abc.abstractmethod
    async def get_value(self, key: str) -> str | None:
        """Cached value for ``key``, or None."""
        ...

    @abc.abstractmethod
    async def put_value(self, key: str, value: str) -> None:
        """Cache the value of ``key``."""
        ...

    @abc.abstractmethod
    async def stats(self) -> dict[str, Any]:
        """Cache statistics."""
        ...


class LRULocalCache(LocalCache):
    """
    Bounded least-recently-used cache.

    Hot flags and cached values live in one eviction pool under distinct
    key prefixes, so a flood of hot flags can displace cached values and
    vice versa. Safe for concurrent use from many coroutines.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        """
        Initialize the cache.

        Args:
            capacity: Maximum number of entries across both namespaces.

        Raises:
            InvalidInput: If capacity is not positive.
        """
        if capacity <= 0:
            raise InvalidInput("capacity must be positive", field="capacity")
        self._capacity = capacity
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def enabled(self) -> bool:
        return True

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Current number of entries."""
        return len(self._entries)

    async def _get(self, internal_key: str) -> str | None:
        async with self._lock:
            value = self._entries.get(internal_key)
            if value is None:
                self._misses += 1
                return None
            self._entries.move_to_end(internal_key)
            self._hits += 1
            return value

    async def _put(self, internal_key: str, value: str) -> None:
        async with self._lock:
            if internal_key in self._entries:
                self._entries.move_to_end(internal_key)
            self._entries[internal_key] = value
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Local cache eviction", key=evicted)

    async def contains(self, internal_key: str) -> bool:
        """Membership test on a raw internal key. Does not refresh recency."""
        async with self._lock:
            return internal_key in self._entries

    async def mark_hot(self, key: str) -> None:
        await self._put(hot_flag_key(key), _HOT_MARKER)

    async def is_hot(self, key: str) -> bool:
        return await self._get(hot_flag_key(key)) is not None

    async def get_value(self, key: str) -> str | None:
        return await self._get(value_cache_key(key))

    async def put_value(self, key: str, value: str) -> None:
        await self._put(value_cache_key(key), value)

    async def stats(self) -> dict[str, Any]:
        async with self._lock:
            total = self._hits + self._misses
            return {
                "enabled": True,
                "size": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }


class DisabledLocalCache(LocalCache):
    """Cache that stores nothing and always misses."""

    @property
    def enabled(self) -> bool:
        return False

    async def mark_hot(self, key: str) -> None:
        return None

    async def is_hot(self, key: str) -> bool:
        return False

    async def get_value(self, key: str) -> str | None:
        return None

    async def put_value(self, key: str, value: str) -> None:
        return None

    async def stats(self) -> dict[str, Any]:
        return {"enabled": False, "size": 0, "capacity": 0}


def create_local_cache(enabled: bool = True, capacity: int = DEFAULT_CAPACITY) -> LocalCache:
    """
    Build the local cache variant for this process.

    An invalid capacity disables the cache rather than failing startup.
    """
    if not enabled:
        return DisabledLocalCache()
    try:
        return LRULocalCache(capacity)
    except InvalidInput as e:
        logger.warning("Local cache disabled", capacity=capacity, error=str(e))
        return DisabledLocalCache()
