"""
Fast tier clients.

The fast tier is a partitioned, memory-resident key-value store with TTL
expiry and a finite capacity (Redis Cluster in production). This module
defines the narrow interface the rest of the system consumes, plus two
backends:

- RedisClusterFastTier: redis-py asyncio cluster client
- MemoryFastTier: in-process partitioned store for tests and development

Per-partition operations (memory info, SCAN, and the GET/DEL the sweeper
issues for scanned keys) go through :class:`FastTierPartition`.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import fnmatch
import time
import zlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from redis.asyncio import Redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.exceptions import RedisClusterException, RedisError

from kv_offload.errors import FastTierError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from kv_offload.config import FastTierConfig

logger = structlog.get_logger()


class FastTierPartition(abc.ABC):
    """One primary partition of the fast tier."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable identifier for logging."""
        ...

    @abc.abstractmethod
    async def memory_info(self) -> tuple[int, int]:
        """
        Report memory usage.

        Returns:
            (used_bytes, max_bytes). max_bytes is 0 when no limit is set.
        """
        ...

    @abc.abstractmethod
    async def scan(
        self,
        cursor: int = 0,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        """
        One page of a cursor iteration over this partition's keys.

        Start with cursor 0; the iteration is complete when the returned
        cursor is 0. Every key present for the whole iteration is returned
        at least once. Keys added or removed mid-iteration may or may not be.
        """
        ...

    @abc.abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Raw value for a key held by this partition."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key held by this partition. True if it existed."""
        ...


class FastTierClient(abc.ABC):
    """Cluster-wide fast tier operations."""

    @abc.abstractmethod
    async def ping(self) -> None:
        """
        Check connectivity.

        Raises:
            FastTierError: If the tier is unreachable.
        """
        ...

    @abc.abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Raw value for key, or None."""
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Write key with expiry, replacing any existing value."""
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. True if it existed."""
        ...

    @abc.abstractmethod
    async def partitions(self) -> list[FastTierPartition]:
        """Current primary partitions."""
        ...

    async def close(self) -> None:
        """Release connections."""
        return None

    async def health_check(self) -> bool:
        """Check if the tier is reachable."""
        try:
            await self.ping()
            return True
        except FastTierError:
            return False


def parse_info_int(info: dict[str, Any] | str, field: str) -> int:
    """
    Read an integer field from Redis INFO output.

    Accepts the parsed mapping returned by redis-py or raw ``key:value``
    text. Only the leading digits are read, so "12345bytes" gives 12345.
    Missing or unparsable fields read as 0.
    """
    if isinstance(info, dict):
        raw = info.get(field, 0)
        if isinstance(raw, bool):
            return 0
        if isinstance(raw, (int, float)):
            return int(raw)
        raw = str(raw)
    else:
        prefix = f"{field}:"
        raw = ""
        for line in info.splitlines():
            if line.startswith(prefix):
                raw = line[len(prefix):].strip()
                break

    digits = ""
    for ch in raw:
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


# =============================================================================
# Redis Cluster backend
# =============================================================================


@contextlib.asynccontextmanager
async def _redis_errors(operation: str) -> AsyncIterator[None]:
    """
    Translate redis/socket failures into FastTierError.

    RedisClusterException is not a RedisError; it is what an unreachable
    cluster raises from the implicit initialize() on first use.
    """
    try:
        yield
    except (RedisError, RedisClusterException, OSError, asyncio.TimeoutError) as e:
        raise FastTierError(operation, str(e), cause=e) from e


def _decode_key(key: bytes | str) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class RedisPartition(FastTierPartition):
    """A single cluster primary, addressed through its own connection."""

    def __init__(self, name: str, client: Redis):
        self._name = name
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    async def memory_info(self) -> tuple[int, int]:
        async with _redis_errors("memory_info"):
            info = await self._client.info("memory")
        return parse_info_int(info, "used_memory"), parse_info_int(info, "maxmemory")

    async def scan(
        self,
        cursor: int = 0,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        async with _redis_errors("scan"):
            next_cursor, keys = await self._client.scan(
                cursor=cursor, match=match, count=count
            )
        return int(next_cursor), [_decode_key(k) for k in keys]

    async def get(self, key: str) -> bytes | None:
        async with _redis_errors("get"):
            return await self._client.get(key)

    async def delete(self, key: str) -> bool:
        async with _redis_errors("delete"):
            return bool(await self._client.delete(key))


class RedisClusterFastTier(FastTierClient):
    """
    Fast tier backed by Redis Cluster.

    The cluster client discovers all nodes from the bootstrap list. Every
    call is bounded by the configured connect and socket timeouts so that
    callers fail fast into their fallback.
    """

    def __init__(
        self,
        nodes: Sequence[tuple[str, int]],
        connect_timeout: float = 2.0,
        read_timeout: float = 2.0,
        write_timeout: float = 2.0,
    ):
        """
        Initialize the cluster client.

        Args:
            nodes: Bootstrap (host, port) addresses.
            connect_timeout: Dial timeout in seconds.
            read_timeout: Read timeout in seconds.
            write_timeout: Write timeout in seconds.
        """
        if not nodes:
            raise ValueError("at least one bootstrap node is required")
        # redis-py has one socket timeout for reads and writes
        self._socket_timeout = max(read_timeout, write_timeout)
        self._connect_timeout = connect_timeout
        self._cluster = RedisCluster(
            startup_nodes=[ClusterNode(host, port) for host, port in nodes],
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=connect_timeout,
            decode_responses=False,
        )
        self._node_clients: dict[str, Redis] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> None:
        async with _redis_errors("ping"):
            await self._cluster.ping()

    async def get(self, key: str) -> bytes | None:
        async with _redis_errors("get"):
            return await self._cluster.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        async with _redis_errors("set"):
            await self._cluster.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        async with _redis_errors("delete"):
            return bool(await self._cluster.delete(key))

    async def partitions(self) -> list[FastTierPartition]:
        async with _redis_errors("partitions"):
            await self._cluster.initialize()
            primaries = self._cluster.get_primaries()

        result: list[FastTierPartition] = []
        async with self._lock:
            for node in primaries:
                client = self._node_clients.get(node.name)
                if client is None:
                    client = Redis(
                        host=node.host,
                        port=node.port,
                        socket_timeout=self._socket_timeout,
                        socket_connect_timeout=self._connect_timeout,
                        decode_responses=False,
                    )
                    self._node_clients[node.name] = client
                result.append(RedisPartition(node.name, client))
        return result

    async def close(self) -> None:
        async with self._lock:
            for name, client in self._node_clients.items():
                try:
                    await client.aclose()
                except (RedisError, OSError) as e:
                    logger.warning("Error closing node client", node=name, error=str(e))
            self._node_clients.clear()
        await self._cluster.aclose()


# =============================================================================
# In-memory backend
# =============================================================================


@dataclass
class _Entry:
    value: bytes
    expires_at: float | None
    seq: int


class MemoryPartition(FastTierPartition):
    """
    In-process partition with TTL expiry and byte accounting.

    Scan cursors are insertion sequence numbers, so deleting keys that were
    already returned never causes later keys to be skipped.
    """

    def __init__(
        self,
        name: str,
        max_bytes: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self._name = name
        self.max_bytes = max_bytes
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._used = 0
        self._next_seq = 1
        self._lock = asyncio.Lock()
        self.failing: set[str] = set()

    @property
    def name(self) -> str:
        return self._name

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise FastTierError(operation, f"injected failure on {self._name}")

    def _expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= self._clock()

    def _remove(self, key: str) -> bool:
        entry = self._data.pop(key, None)
        if entry is None:
            return False
        self._used -= len(key) + len(entry.value)
        return True

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is not None and self._expired(entry):
            self._remove(key)
            return None
        return entry

    async def memory_info(self) -> tuple[int, int]:
        self._check("memory_info")
        async with self._lock:
            return self._used, self.max_bytes

    async def scan(
        self,
        cursor: int = 0,
        match: str = "*",
        count: int = 100,
    ) -> tuple[int, list[str]]:
        self._check("scan")
        async with self._lock:
            candidates = sorted(
                (e.seq, k) for k, e in self._data.items() if e.seq >= cursor
            )
            keys: list[str] = []
            next_cursor = 0
            for seq, key in candidates:
                if len(keys) >= count:
                    next_cursor = seq
                    break
                if self._live(key) is None:
                    continue
                if fnmatch.fnmatchcase(key, match):
                    keys.append(key)
            return next_cursor, keys

    async def get(self, key: str) -> bytes | None:
        self._check("get")
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: bytes, ttl_seconds: int | None) -> None:
        self._check("set")
        async with self._lock:
            existing = self._live(key)
            old_size = len(key) + len(existing.value) if existing else 0
            new_size = len(key) + len(value)
            if self.max_bytes and self._used - old_size + new_size > self.max_bytes:
                raise FastTierError(
                    "set", "OOM command not allowed when used memory > 'maxmemory'"
                )
            if existing:
                seq = existing.seq
            else:
                seq = self._next_seq
                self._next_seq += 1
            expires_at = self._clock() + ttl_seconds if ttl_seconds else None
            self._data[key] = _Entry(value=value, expires_at=expires_at, seq=seq)
            self._used += new_size - old_size

    async def delete(self, key: str) -> bool:
        self._check("delete")
        async with self._lock:
            if self._live(key) is None:
                return False
            return self._remove(key)

    def ttl(self, key: str) -> float | None:
        """Remaining TTL in seconds, None if no expiry or key missing."""
        entry = self._data.get(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock()

    def __len__(self) -> int:
        return sum(1 for e in self._data.values() if not self._expired(e))


class MemoryFastTier(FastTierClient):
    """
    Partitioned in-memory fast tier.

    Keys are routed to partitions by CRC32. Useful for testing and
    development; not shared across processes.
    """

    def __init__(
        self,
        partitions: int = 3,
        max_bytes_per_partition: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the memory tier.

        Args:
            partitions: Number of partitions.
            max_bytes_per_partition: Capacity per partition (0 = unbounded).
            clock: Time source used for TTL expiry.
        """
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._partitions = [
            MemoryPartition(f"memory-{i}", max_bytes_per_partition, clock)
            for i in range(partitions)
        ]
        self.failing: set[str] = set()

    def partition_for(self, key: str) -> MemoryPartition:
        """Partition owning ``key``."""
        index = zlib.crc32(key.encode("utf-8")) % len(self._partitions)
        return self._partitions[index]

    def inject_failure(self, operation: str, partition: int | None = None) -> None:
        """
        Make an operation fail.

        With ``partition`` set, only that partition fails its
        per-partition operation; otherwise the cluster-wide call fails.
        """
        if partition is None:
            self.failing.add(operation)
        else:
            self._partitions[partition].failing.add(operation)

    def clear_failures(self) -> None:
        """Remove all injected failures."""
        self.failing.clear()
        for p in self._partitions:
            p.failing.clear()

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise FastTierError(operation, "injected failure")

    async def ping(self) -> None:
        self._check("ping")

    async def get(self, key: str) -> bytes | None:
        self._check("get")
        return await self.partition_for(key).get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self._check("set")
        await self.partition_for(key).set(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        self._check("delete")
        return await self.partition_for(key).delete(key)

    async def partitions(self) -> list[FastTierPartition]:
        self._check("partitions")
        return list(self._partitions)

    def __len__(self) -> int:
        return sum(len(p) for p in self._partitions)


def create_fast_tier(config: FastTierConfig) -> FastTierClient:
    """
    Build the fast tier described by ``config``.

    Raises:
        ValueError: If the backend is unsupported.
    """
    if config.backend == "redis":
        return RedisClusterFastTier(
            config.nodes,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            write_timeout=config.write_timeout,
        )
    elif config.backend == "memory":
        return MemoryFastTier(
            partitions=config.memory_partitions,
            max_bytes_per_partition=config.memory_max_bytes,
        )
    else:
        raise ValueError(f"Unsupported fast tier backend: {config.backend}")
