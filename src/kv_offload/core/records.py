"""
Record model and fast-tier payload handling.

A record's value is stored in the fast tier as a JSON object with the
ingestion time embedded under ``_ts``. The sweeper derives age from that
field alone; payloads without it are age-unknown.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kv_offload.core.storage_keys import TIMESTAMP_FIELD
from kv_offload.errors import InvalidInput, SerializationFailure

DEFAULT_TTL_SECONDS = 3600


class CacheHint(str, Enum):
    """Producer hint about expected read traffic."""

    NONE = ""
    HOT_READ = "hot_read"

    @classmethod
    def parse(cls, value: Any) -> CacheHint:
        """Unknown or missing hints mean no hint."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


@dataclass
class Record:
    """A key-value record submitted for ingestion."""

    key: str
    value: dict[str, Any]
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    cache_hint: CacheHint = CacheHint.NONE

    @classmethod
    def from_dict(cls, data: Any) -> Record:
        """
        Build a record from the ingestion wire format.

        Accepts ``ttl_sec`` or ``ttl_seconds``. A missing, non-numeric or
        non-positive TTL falls back to the default.

        Raises:
            InvalidInput: If key is empty or value is not a mapping.
        """
        if not isinstance(data, Mapping):
            raise InvalidInput("request body must be a JSON object")

        key = data.get("key")
        if not isinstance(key, str) or not key:
            raise InvalidInput("key must be a non-empty string", field="key")

        value = data.get("value")
        if not isinstance(value, Mapping):
            raise InvalidInput("value must be a JSON object", field="value")

        ttl = data.get("ttl_sec", data.get("ttl_seconds"))
        return cls(
            key=key,
            value=dict(value),
            ttl_seconds=normalize_ttl(ttl),
            cache_hint=CacheHint.parse(data.get("cache_hint")),
        )

    def to_overflow_dict(self) -> dict[str, Any]:
        """One line of a bulk overflow file."""
        return {
            "key": self.key,
            "value": self.value,
            "ttl_sec": self.ttl_seconds,
            "cache_hint": self.cache_hint.value,
        }


def normalize_ttl(ttl: Any) -> int:
    """
    Return ``ttl`` as a positive int, or the default.

    Fractional seconds are truncated, but never below one second. Absent,
    non-numeric, non-finite and non-positive values get the default.
    """
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        return DEFAULT_TTL_SECONDS
    if not math.isfinite(ttl) or ttl <= 0:
        return DEFAULT_TTL_SECONDS
    return max(1, int(ttl))


def stamp_payload(value: Mapping[str, Any], now: float) -> dict[str, Any]:
    """Copy ``value`` with the ingestion timestamp embedded."""
    payload = dict(value)
    payload[TIMESTAMP_FIELD] = int(now)
    return payload


def encode_payload(key: str, payload: Mapping[str, Any]) -> bytes:
    """
    Serialize a payload for the fast tier.

    Raises:
        SerializationFailure: If the payload is not JSON-serializable.
    """
    try:
        return json.dumps(payload, separators=(",", ":"), allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationFailure(key, str(e)) from e


def extract_timestamp(raw: bytes | str) -> int | None:
    """
    Read the embedded ingestion timestamp from a stored payload.

    Returns None when the payload is not a JSON object or carries no usable
    ``_ts``. Integers, floats and decimal strings are accepted.
    """
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None

    ts = payload.get(TIMESTAMP_FIELD)
    if isinstance(ts, bool):
        return None
    if isinstance(ts, int):
        return ts
    if isinstance(ts, float):
        return int(ts) if math.isfinite(ts) else None
    if isinstance(ts, str):
        try:
            return int(ts.strip())
        except ValueError:
            return None
    return None
