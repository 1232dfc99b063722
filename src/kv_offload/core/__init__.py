"""
Core components for kv-offload.

- PressureMonitor: fast tier memory utilization
- LocalCache: in-process LRU for hot flags and read-through values
- FastTierClient / ColdTierStore: tier adapters
- IngestionService / RetrievalService: write and read paths
- OffloadSweeper: background fast-to-cold moves
"""

from kv_offload.core.cold_tier import (
    ColdTierStore,
    HdfsCliColdTierStore,
    LocalColdTierStore,
    create_cold_tier,
)
from kv_offload.core.fast_tier import (
    FastTierClient,
    FastTierPartition,
    MemoryFastTier,
    RedisClusterFastTier,
    create_fast_tier,
)
from kv_offload.core.ingestion import (
    IngestionService,
    IngestResult,
    StoredIn,
    seed_backdated,
)
from kv_offload.core.local_cache import (
    DisabledLocalCache,
    LocalCache,
    LRULocalCache,
    create_local_cache,
)
from kv_offload.core.pressure import PressureMonitor, PressureSample
from kv_offload.core.records import CacheHint, Record
from kv_offload.core.retrieval import RetrievalResult, RetrievalService, Source
from kv_offload.core.sweeper import (
    MoveReason,
    OffloadSweeper,
    SweepPolicy,
    SweepReport,
    SweeperTask,
    classify,
    startup_check,
)

__all__ = [
    "CacheHint",
    "ColdTierStore",
    "DisabledLocalCache",
    "FastTierClient",
    "FastTierPartition",
    "HdfsCliColdTierStore",
    "IngestResult",
    "IngestionService",
    "LRULocalCache",
    "LocalCache",
    "LocalColdTierStore",
    "MemoryFastTier",
    "MoveReason",
    "OffloadSweeper",
    "PressureMonitor",
    "PressureSample",
    "Record",
    "RedisClusterFastTier",
    "RetrievalResult",
    "RetrievalService",
    "Source",
    "StoredIn",
    "SweepPolicy",
    "SweepReport",
    "SweeperTask",
    "classify",
    "create_cold_tier",
    "create_fast_tier",
    "create_local_cache",
    "seed_backdated",
    "startup_check",
]
