"""
Fast tier memory pressure.

Aggregates used and maximum memory across every fast-tier partition.
Partitions that fail to report are skipped, and a sample with no usable
capacity anywhere is marked unavailable rather than reported as idle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from kv_offload.errors import FastTierError, PartialClusterFailure

if TYPE_CHECKING:
    from kv_offload.core.fast_tier import FastTierClient, FastTierPartition

logger = structlog.get_logger()


@dataclass(frozen=True)
class PressureSample:
    """Aggregate memory usage of the fast tier at one instant."""

    used: int = 0
    max: int = 0
    partitions_ok: int = 0
    partitions_failed: int = 0

    @property
    def available(self) -> bool:
        """Whether any partition reported a usable capacity."""
        return self.max > 0

    @property
    def ratio(self) -> float:
        """used / max in [0, 1]; 0.0 when unavailable."""
        if not self.available:
            return 0.0
        return min(max(self.used / self.max, 0.0), 1.0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "used": self.used,
            "max": self.max,
            "ratio": round(self.ratio, 4),
            "available": self.available,
            "partitions_ok": self.partitions_ok,
            "partitions_failed": self.partitions_failed,
        }


UNAVAILABLE = PressureSample()


class PressureMonitor:
    """
    Computes the fast tier's memory utilization ratio.

    Every call queries live state; nothing is memoized.
    """

    def __init__(self, fast_tier: FastTierClient):
        self.fast_tier = fast_tier

    async def _query(self, partition: FastTierPartition) -> tuple[int, int] | None:
        try:
            return await partition.memory_info()
        except FastTierError as e:
            logger.warning(
                "Partition memory query failed",
                partition=partition.name,
                error=str(e),
            )
            return None

    async def sample(self) -> PressureSample:
        """Query all partitions and aggregate their memory usage."""
        try:
            partitions = await self.fast_tier.partitions()
        except FastTierError as e:
            logger.warning("Cannot list fast tier partitions", error=str(e))
            return UNAVAILABLE

        results = await asyncio.gather(*(self._query(p) for p in partitions))

        used_total = max_total = ok = 0
        failed: list[str] = []
        for partition, info in zip(partitions, results):
            if info is None:
                failed.append(partition.name)
                continue
            used, max_bytes = info
            used_total += used
            max_total += max_bytes
            ok += 1

        if failed:
            err = PartialClusterFailure("pressure sample", failed)
            logger.warning(str(err), **err.context)

        sample = PressureSample(
            used=used_total,
            max=max_total,
            partitions_ok=ok,
            partitions_failed=len(failed),
        )
        if not sample.available:
            logger.debug("No partition reported a memory limit", **sample.to_dict())
        return sample
