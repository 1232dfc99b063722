"""
kv-offload - two-tier key-value storage with background offload.

Records land in a capacity-bounded fast tier (Redis Cluster) and age out,
or overflow under memory pressure, into a cold tier (local disk or HDFS).
"""

__version__ = "0.1.0"

from kv_offload.config import Settings

__all__ = [
    "__version__",
    "Settings",
]
