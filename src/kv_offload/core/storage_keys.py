"""
Centralized key naming for all tiers.

This module provides:
- Namespaced keys for the local cache (hot flags vs cached values)
- Collision-free, filesystem-safe object names for the cold tier
- The naming scheme for bulk overflow files and seeded test keys

All derived names should be generated through this module so that the
ingestion path, the retrieval path and the sweeper agree on them.
"""

from __future__ import annotations

import base64
import hashlib
import time
import uuid
from typing import Final

from kv_offload.errors import InvalidInput


# =============================================================================
# Payload Fields
# =============================================================================

# Field embedded in every fast-tier payload holding the ingestion time
TIMESTAMP_FIELD: Final[str] = "_ts"


# =============================================================================
# Local Cache Namespaces
# =============================================================================

HOT_PREFIX: Final[str] = "HOT:"
VALUE_PREFIX: Final[str] = "VAL:"


def hot_flag_key(key: str) -> str:
    """Local cache key marking ``key`` as recently flagged hot."""
    return f"{HOT_PREFIX}{key}"


def value_cache_key(key: str) -> str:
    """Local cache key holding the cached value of ``key``."""
    return f"{VALUE_PREFIX}{key}"


# =============================================================================
# Cold Tier Object Names
# =============================================================================

OFFLOAD_DIR: Final[str] = "offloaded"
OFFLOAD_SUFFIX: Final[str] = ".json"
OVERFLOW_PREFIX: Final[str] = "overflow_"
OVERFLOW_SUFFIX: Final[str] = ".jsonl"

# Encoded names longer than this are shortened; with the suffix they stay
# well under the common 255-byte file name limit.
MAX_ENCODED_LEN: Final[int] = 200
LONG_KEY_PREFIX_LEN: Final[int] = 96
LONG_KEY_MARKER: Final[str] = "~"


def encode_key(key: str) -> str:
    """
    Encode a record key as a cold-tier file name.

    URL-safe base64 without padding: distinct keys never map to the same
    name, and the result contains no path separators. Keys whose encoding
    exceeds MAX_ENCODED_LEN keep a readable prefix of the encoding followed
    by ``~`` and the SHA-256 of the key. ``~`` is outside the base64
    alphabet, so shortened names cannot collide with full ones.

    Raises:
        InvalidInput: If key is empty.
    """
    if not key:
        raise InvalidInput("key cannot be empty", field="key")
    raw = key.encode("utf-8")
    encoded = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    if len(encoded) <= MAX_ENCODED_LEN:
        return encoded
    digest = hashlib.sha256(raw).hexdigest()
    return f"{encoded[:LONG_KEY_PREFIX_LEN]}{LONG_KEY_MARKER}{digest}"


def offload_object_name(key: str) -> str:
    """Relative path of the per-key object for ``key``."""
    return f"{OFFLOAD_DIR}/{encode_key(key)}{OFFLOAD_SUFFIX}"


def overflow_object_name(now_ms: int | None = None) -> str:
    """
    Name for one bulk overflow file.

    The millisecond timestamp keeps files roughly time-ordered; the random
    suffix keeps concurrent fallbacks within the same millisecond apart.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{OVERFLOW_PREFIX}{now_ms}_{uuid.uuid4().hex[:8]}{OVERFLOW_SUFFIX}"


# =============================================================================
# Seeded Test Keys
# =============================================================================

SEED_PREFIX: Final[str] = "seed:old:"


def seed_key(index: int, prefix: str = SEED_PREFIX) -> str:
    """Key for the ``index``-th seeded record."""
    return f"{prefix}{index}"
