"""
Write path.

Each valid request ends in exactly one of two outcomes: stored in the fast
tier, or appended to the cold tier's bulk overflow. The cold fallback is
fire-and-forget; a failed overflow write is logged and counted but the
request still reports ``stored=cold``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from kv_offload.core.records import (
    CacheHint,
    Record,
    encode_payload,
    stamp_payload,
)
from kv_offload.core.storage_keys import SEED_PREFIX, TIMESTAMP_FIELD, seed_key
from kv_offload.errors import (
    ColdTierError,
    FastTierError,
    KVOError,
    SerializationFailure,
)
from kv_offload.monitoring import get_metrics, trace_operation

if TYPE_CHECKING:
    from collections.abc import Callable

    from kv_offload.core.cold_tier import ColdTierStore
    from kv_offload.core.fast_tier import FastTierClient
    from kv_offload.core.local_cache import LocalCache
    from kv_offload.core.pressure import PressureMonitor, PressureSample

logger = structlog.get_logger()

DEFAULT_SOFT_THRESHOLD = 0.80


class StoredIn(str, Enum):
    """Tier that accepted a write."""

    FAST = "fast"
    COLD = "cold"


@dataclass
class IngestResult:
    """Terminal outcome of one ingestion."""

    ok: bool
    stored: StoredIn
    pressure_ratio: float
    pressure_available: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the response body."""
        result: dict[str, Any] = {
            "ok": self.ok,
            "stored": self.stored.value,
            "pressure_ratio": round(self.pressure_ratio, 4),
            "pressure_available": self.pressure_available,
        }
        if self.error:
            result["error"] = self.error
        return result


class IngestionService:
    """
    Validates records and decides their placement.

    Placement per request:
    1. ratio >= soft threshold: cold tier overflow
    2. payload cannot be serialized: cold tier overflow
    3. fast tier write fails: cold tier overflow
    4. otherwise: fast tier with the record's TTL
    """

    def __init__(
        self,
        fast_tier: FastTierClient,
        cold_tier: ColdTierStore,
        pressure: PressureMonitor,
        local_cache: LocalCache,
        soft_threshold: float = DEFAULT_SOFT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the service.

        Args:
            fast_tier: Fast tier client.
            cold_tier: Cold tier store for overflow.
            pressure: Memory pressure monitor for the fast tier.
            local_cache: In-process cache for hot-read hints.
            soft_threshold: Pressure ratio at which writes go to the cold tier.
            clock: Time source for the embedded ingestion timestamp.
        """
        self.fast_tier = fast_tier
        self.cold_tier = cold_tier
        self.pressure = pressure
        self.local_cache = local_cache
        self.soft_threshold = soft_threshold
        self._clock = clock

    async def ingest_dict(self, data: Any) -> IngestResult:
        """
        Validate a wire-format request and ingest it.

        Raises:
            InvalidInput: If key is empty or value is missing.
        """
        return await self.ingest(Record.from_dict(data))

    async def ingest(self, record: Record) -> IngestResult:
        """Place one record in the fast or cold tier."""
        log = logger.bind(key=record.key)

        async with trace_operation("ingest") as trace:
            if record.cache_hint is CacheHint.HOT_READ:
                await self._mark_hot(record.key)

            sample = await self.pressure.sample()
            trace["pressure_ratio"] = round(sample.ratio, 4)

            if sample.ratio >= self.soft_threshold:
                log.info(
                    "Fast tier under pressure, writing to cold tier",
                    pressure_ratio=sample.ratio,
                    soft_threshold=self.soft_threshold,
                )
                await self._overflow(record, reason="pressure")
                trace["status"] = StoredIn.COLD.value
                return self._result(True, StoredIn.COLD, sample)

            try:
                payload = encode_payload(
                    record.key, stamp_payload(record.value, self._clock())
                )
            except SerializationFailure as e:
                log.warning("Payload serialization failed", error=str(e))
                await self._overflow(record, reason="serialization")
                trace["status"] = StoredIn.COLD.value
                return self._result(False, StoredIn.COLD, sample, str(e))

            try:
                await self.fast_tier.set(record.key, payload, record.ttl_seconds)
            except FastTierError as e:
                log.warning("Fast tier write failed, writing to cold tier", error=str(e))
                await self._overflow(record, reason="fast_tier_error")
                trace["status"] = StoredIn.COLD.value
                return self._result(True, StoredIn.COLD, sample, str(e))

            trace["status"] = StoredIn.FAST.value
            return self._result(True, StoredIn.FAST, sample)

    def _result(
        self,
        ok: bool,
        stored: StoredIn,
        sample: PressureSample,
        error: str | None = None,
    ) -> IngestResult:
        return IngestResult(
            ok=ok,
            stored=stored,
            pressure_ratio=sample.ratio,
            pressure_available=sample.available,
            error=error,
        )

    async def _mark_hot(self, key: str) -> None:
        """Best effort; a failure never reaches the caller."""
        try:
            await self.local_cache.mark_hot(key)
        except KVOError as e:
            logger.debug("Hot flag not recorded", key=key, error=str(e))

    async def _overflow(self, record: Record, reason: str) -> None:
        """Append the record to the cold tier's bulk overflow."""
        metrics = get_metrics()
        await metrics.inc_counter(
            "kvo_cold_fallback_total",
            labels={"reason": reason},
            help_text="Ingestions routed to the cold tier",
        )
        try:
            path = await self.cold_tier.put_bulk([record.to_overflow_dict()])
        except ColdTierError as e:
            await metrics.inc_counter(
                "kvo_cold_fallback_failures_total",
                help_text="Cold tier overflow writes that failed",
            )
            logger.error(
                "Cold tier overflow write failed",
                key=record.key,
                reason=reason,
                error=str(e),
            )
            return
        logger.debug("Overflow written", key=record.key, path=path, reason=reason)


MAX_SEED_COUNT = 500
DEFAULT_SEED_COUNT = 20


async def seed_backdated(
    fast_tier: FastTierClient,
    count: int = DEFAULT_SEED_COUNT,
    age_seconds: int = 120,
    ttl_seconds: int = 600,
    prefix: str = SEED_PREFIX,
    clock: Callable[[], float] = time.time,
) -> int:
    """
    Write synthetic records with a backdated ingestion timestamp.

    Lets a sweep be exercised deterministically without waiting for real
    aging. Counts outside 1..500 fall back to the default.

    Returns:
        Number of records written.

    Raises:
        FastTierError: If a write fails.
    """
    if not 0 < count <= MAX_SEED_COUNT:
        count = DEFAULT_SEED_COUNT

    ts = int(clock()) - age_seconds
    for i in range(count):
        payload = {TIMESTAMP_FIELD: ts, "seed": True, "i": i}
        await fast_tier.set(
            seed_key(i, prefix), encode_payload(seed_key(i, prefix), payload), ttl_seconds
        )

    logger.info("Seeded backdated records", count=count, age_seconds=age_seconds)
    return count
