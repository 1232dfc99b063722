"""
Read path.

Cache-aside lookup in strict order: local cache, fast tier, cold tier.
Fast-tier hits are cached locally; cold-tier hits are not, so archival
reads cannot push hot keys out of the local cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from kv_offload.errors import (
    ColdTierError,
    FastTierError,
    InvalidInput,
    KeyNotFoundError,
)
from kv_offload.monitoring import trace_operation

if TYPE_CHECKING:
    from kv_offload.core.cold_tier import ColdTierStore
    from kv_offload.core.fast_tier import FastTierClient
    from kv_offload.core.local_cache import LocalCache

logger = structlog.get_logger()


class Source(str, Enum):
    """Where a value was found."""

    LOCAL = "local"
    FAST = "fast"
    COLD = "cold"


@dataclass
class RetrievalResult:
    """A successful lookup."""

    source: Source
    value: str
    ok: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to the response body."""
        return {"ok": self.ok, "source": self.source.value, "value": self.value}


def _as_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class RetrievalService:
    """Looks a key up across the local cache and both tiers."""

    def __init__(
        self,
        fast_tier: FastTierClient,
        cold_tier: ColdTierStore,
        local_cache: LocalCache,
    ):
        self.fast_tier = fast_tier
        self.cold_tier = cold_tier
        self.local_cache = local_cache

    async def retrieve(self, key: str) -> RetrievalResult:
        """
        Find the current value of ``key``.

        Raises:
            InvalidInput: If key is empty.
            KeyNotFoundError: If no tier holds the key.
        """
        if not key:
            raise InvalidInput("missing key", field="key")

        log = logger.bind(key=key)

        async with trace_operation("retrieve") as trace:
            cached = await self.local_cache.get_value(key)
            if cached is not None:
                trace["status"] = Source.LOCAL.value
                return RetrievalResult(Source.LOCAL, cached)

            try:
                raw = await self.fast_tier.get(key)
            except FastTierError as e:
                log.warning("Fast tier read failed, trying cold tier", error=str(e))
                raw = None

            if raw is not None:
                value = _as_text(raw)
                await self.local_cache.put_value(key, value)
                trace["status"] = Source.FAST.value
                return RetrievalResult(Source.FAST, value)

            try:
                raw = await self.cold_tier.get_key(key)
            except ColdTierError as e:
                log.warning("Cold tier read failed", error=str(e))
                raise KeyNotFoundError(key) from e
            except KeyNotFoundError:
                raise KeyNotFoundError(key) from None

            trace["status"] = Source.COLD.value
            return RetrievalResult(Source.COLD, _as_text(raw))
