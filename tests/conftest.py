"""
Shared pytest fixtures for kv-offload tests.

This module provides common fixtures used across unit, integration,
and end-to-end tests.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisClusterException

from kv_offload.core.cold_tier import LocalColdTierStore
from kv_offload.core.fast_tier import MemoryFastTier, RedisClusterFastTier
from kv_offload.core.local_cache import LRULocalCache
from kv_offload.core.pressure import PressureSample
from kv_offload.monitoring import get_metrics

if TYPE_CHECKING:
    from kv_offload.config import Settings


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def cold_root(tmp_path: Path) -> Path:
    """Cold tier root directory for testing."""
    root = tmp_path / "events_overflow"
    root.mkdir()
    return root


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def test_settings(cold_root: Path) -> Settings:
    """Settings backed by the in-memory fast tier and a temp cold tier."""
    from kv_offload.config import (
        ColdTierConfig,
        FastTierConfig,
        LocalCacheConfig,
        Settings,
        SweeperConfig,
    )

    return Settings(
        log_level="DEBUG",
        fast=FastTierConfig(backend="memory", memory_partitions=3, memory_max_bytes=0),
        cold=ColdTierConfig(backend="local", root_path=cold_root),
        local_cache=LocalCacheConfig(enabled=True, capacity=16),
        sweeper=SweeperConfig(interval_seconds=1.0, startup_attempts=1),
    )


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Deterministic clock."""
    return FakeClock()


@pytest.fixture
def fast_tier(clock: FakeClock) -> MemoryFastTier:
    """Three-partition in-memory fast tier with a capacity limit."""
    return MemoryFastTier(partitions=3, max_bytes_per_partition=1_000_000, clock=clock)


@pytest.fixture
def cold_tier(cold_root: Path) -> LocalColdTierStore:
    """Local filesystem cold tier."""
    return LocalColdTierStore(cold_root)


@pytest.fixture
def local_cache() -> LRULocalCache:
    """Small enabled LRU cache."""
    return LRULocalCache(capacity=16)


@pytest.fixture
async def unreachable_redis():
    """
    Redis Cluster tier whose cluster discovery fails.

    redis-py raises RedisClusterException from initialize() when no startup
    node answers; every first command goes through it.
    """
    tier = RedisClusterFastTier([("127.0.0.1", 7001)])
    tier._cluster.initialize = AsyncMock(
        side_effect=RedisClusterException(
            "Redis Cluster cannot be connected. "
            "Please provide at least one reachable node"
        )
    )
    yield tier
    await tier.close()


def make_pressure(ratio: float | None) -> AsyncMock:
    """
    Pressure monitor stub reporting a fixed ratio.

    ``None`` reports the unavailable sample.
    """
    monitor = AsyncMock()
    if ratio is None:
        sample = PressureSample()
    else:
        sample = PressureSample(used=int(ratio * 1000), max=1000, partitions_ok=3)
    monitor.sample.return_value = sample
    monitor.ratio.return_value = sample.ratio
    return monitor


@pytest.fixture
def pressure_at():
    """Factory for fixed-ratio pressure monitors."""
    return make_pressure


@pytest.fixture
def low_pressure() -> AsyncMock:
    """Pressure monitor reporting 10% usage."""
    return make_pressure(0.10)


@pytest.fixture(autouse=True)
async def reset_metrics():
    """Isolate the global metrics collector between tests."""
    await get_metrics().reset()
    yield
    await get_metrics().reset()


# =============================================================================
# Sample Data Fixtures
# =============================================================================


def payload(ts: int | None = None, **fields) -> bytes:
    """Stored fast-tier payload, optionally stamped."""
    data = dict(fields)
    if ts is not None:
        data["_ts"] = ts
    return json.dumps(data).encode("utf-8")


@pytest.fixture
def make_payload():
    """Factory for stored fast-tier payloads."""
    return payload


@pytest.fixture
def sample_event() -> dict:
    """Valid ingestion request body."""
    return {
        "key": "user:42:event:1",
        "value": {"action": "click", "page": "/home"},
        "ttl_sec": 120,
    }


# =============================================================================
# Integration Test Markers
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests requiring external services (Redis Cluster, HDFS)",
    )
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow running",
    )


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip integration tests unless --run-integration is passed."""
    if not config.getoption("--run-integration", default=False):
        skip_integration = pytest.mark.skip(
            reason="Need --run-integration option to run"
        )
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests",
    )
