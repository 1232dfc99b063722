"""
Monitoring and observability for kv-offload.

Provides:
- Prometheus-compatible metrics collection
- Health checks for the fast tier, cold tier and sweeper
- Operation tracing for the ingestion and retrieval paths
- Structured logging configuration
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, NamedTuple

import structlog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from kv_offload.core.cold_tier import ColdTierStore
    from kv_offload.core.fast_tier import FastTierClient
    from kv_offload.core.sweeper import SweeperTask

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Health Check Types
# =============================================================================


class HealthStatus(Enum):
    """Health check status values, mildest first."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return list(HealthStatus).index(self)


@dataclass
class ComponentHealth:
    """Health status for a single component."""

    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float = 0.0
    last_check: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
            "last_check": self.last_check.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class SystemHealth:
    """Aggregated health: the worst status among the components."""

    status: HealthStatus
    components: list[ComponentHealth]
    uptime_seconds: float
    version: str
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_components(
        cls, components: list[ComponentHealth], uptime_seconds: float, version: str
    ) -> SystemHealth:
        status = max(
            (c.status for c in components),
            key=lambda s: s.severity,
            default=HealthStatus.HEALTHY,
        )
        return cls(status, components, uptime_seconds, version)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "components": [c.to_dict() for c in self.components],
        }


# =============================================================================
# Metrics Collection
# =============================================================================

LabelSet = tuple[tuple[str, str], ...]

SUMMARY_QUANTILES = (0.5, 0.99)


class MetricSample(NamedTuple):
    """One exported line: a name, its labels and a value."""

    name: str
    labels: dict[str, str]
    value: float


@dataclass
class MetricFamily:
    """All labelled series that share a metric name."""

    name: str
    kind: str  # counter, gauge or summary
    help_text: str = ""
    series: dict[LabelSet, Any] = field(default_factory=dict)

    def samples(self) -> list[MetricSample]:
        if self.kind != "summary":
            return [
                MetricSample(self.name, dict(labels), value)
                for labels, value in self.series.items()
            ]

        out = []
        for labels, window in self.series.items():
            if not window:
                continue
            ordered = sorted(window)
            for q in SUMMARY_QUANTILES:
                rank = min(int(len(ordered) * q), len(ordered) - 1)
                out.append(
                    MetricSample(self.name, {**dict(labels), "quantile": f"{q:g}"}, ordered[rank])
                )
            out.append(MetricSample(f"{self.name}_sum", dict(labels), sum(window)))
            out.append(MetricSample(f"{self.name}_count", dict(labels), len(window)))
        return out


def _label_set(labels: dict[str, str] | None) -> LabelSet:
    return tuple(sorted((labels or {}).items()))


def _format_sample(sample: MetricSample) -> str:
    if not sample.labels:
        return f"{sample.name} {sample.value}"
    label_str = ",".join(f'{k}="{v}"' for k, v in sorted(sample.labels.items()))
    return f"{sample.name}{{{label_str}}} {sample.value}"


class MetricsCollector:
    """
    Collects and exposes Prometheus-compatible metrics.

    Histograms keep a sliding window of recent observations and are
    exported as summaries (p50, p99, sum and count over the window).
    A name is bound to one metric kind; reusing it as another kind is
    a programming error and raises ValueError.
    """

    def __init__(self, histogram_window: int = 1000):
        self._families: dict[str, MetricFamily] = {}
        self._histogram_window = histogram_window
        self._lock = asyncio.Lock()

    def _family(self, name: str, kind: str, help_text: str) -> MetricFamily:
        family = self._families.get(name)
        if family is None:
            family = self._families[name] = MetricFamily(name, kind, help_text)
        elif family.kind != kind:
            raise ValueError(f"Metric {name!r} is a {family.kind}, not a {kind}")
        elif help_text and not family.help_text:
            family.help_text = help_text
        return family

    async def inc_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: dict[str, str] | None = None,
        help_text: str = "",
    ) -> None:
        """Increment a counter metric."""
        async with self._lock:
            series = self._family(name, "counter", help_text).series
            key = _label_set(labels)
            series[key] = series.get(key, 0.0) + value

    async def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
        help_text: str = "",
    ) -> None:
        """Set a gauge metric value."""
        async with self._lock:
            self._family(name, "gauge", help_text).series[_label_set(labels)] = value

    async def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
        help_text: str = "",
    ) -> None:
        """Record a histogram observation."""
        async with self._lock:
            series = self._family(name, "summary", help_text).series
            window = series.setdefault(
                _label_set(labels), deque(maxlen=self._histogram_window)
            )
            window.append(value)

    async def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a counter (0 if never incremented)."""
        async with self._lock:
            family = self._families.get(name)
            if family is None or family.kind != "counter":
                return 0.0
            return family.series.get(_label_set(labels), 0.0)

    async def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of a gauge, or None if never set."""
        async with self._lock:
            family = self._families.get(name)
            if family is None or family.kind != "gauge":
                return None
            return family.series.get(_label_set(labels))

    async def samples(self) -> list[MetricSample]:
        """Every exported sample, in registration order."""
        async with self._lock:
            return [s for family in self._families.values() for s in family.samples()]

    async def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        async with self._lock:
            lines = []
            for family in self._families.values():
                samples = family.samples()
                if not samples:
                    continue
                if family.help_text:
                    lines.append(f"# HELP {family.name} {family.help_text}")
                lines.append(f"# TYPE {family.name} {family.kind}")
                lines.extend(_format_sample(s) for s in samples)

        return "\n".join(lines) + ("\n" if lines else "")

    async def reset(self) -> None:
        """Drop every metric."""
        async with self._lock:
            self._families.clear()


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# =============================================================================
# Operation Tracing
# =============================================================================


@asynccontextmanager
async def trace_operation(
    operation: str,
    labels: dict[str, str] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Time an operation and count its outcome.

    Values the caller stores in the yielded dict are logged with the
    completion event; a ``status`` entry becomes a metric label. An
    exception is counted under its type name and re-raised.

    Usage:
        async with trace_operation("ingest") as trace:
            result = await do_work()
            trace["status"] = result.stored
    """
    start = time.perf_counter()
    trace: dict[str, Any] = {}
    merged_labels = {**(labels or {}), "operation": operation}
    status = "cancelled"

    try:
        yield trace
        status = str(trace.get("status", "ok"))
    except Exception as e:
        status = type(e).__name__
        trace["error"] = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics = get_metrics()
        await metrics.observe_histogram(
            "kvo_operation_duration_ms",
            elapsed_ms,
            merged_labels,
            "Operation duration in milliseconds",
        )
        await metrics.inc_counter(
            "kvo_operation_total",
            labels={**merged_labels, "status": status},
            help_text="Total operations by outcome",
        )
        logger.debug(
            "operation_finished",
            elapsed_ms=round(elapsed_ms, 2),
            **{**trace, "operation": operation, "status": status},
        )


# =============================================================================
# Health Checker
# =============================================================================


class HealthChecker:
    """Runs registered component checks under a shared timeout."""

    def __init__(self, version: str, check_timeout: float = 5.0):
        self._start_time = time.monotonic()
        self._version = version
        self._check_timeout = check_timeout
        self._checks: dict[str, Callable[[], Awaitable[ComponentHealth]]] = {}

    def register_check(
        self, name: str, check: Callable[[], Awaitable[ComponentHealth]]
    ) -> None:
        """Register (or replace) the check for ``name``."""
        self._checks[name] = check

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    async def check_component(self, name: str) -> ComponentHealth:
        """
        Run one check. Unknown names, timeouts and checks that raise all
        come back as UNHEALTHY rather than propagating.
        """
        check = self._checks.get(name)
        if check is None:
            return ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Unknown component: {name}",
            )

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(check(), timeout=self._check_timeout)
        except asyncio.TimeoutError:
            result = ComponentHealth(name, HealthStatus.UNHEALTHY, "Health check timed out")
        except Exception as e:
            logger.warning("Health check raised", component=name, error=str(e))
            result = ComponentHealth(name, HealthStatus.UNHEALTHY, f"Health check failed: {e}")
        result.latency_ms = (time.perf_counter() - start) * 1000
        return result

    async def check_all(self) -> SystemHealth:
        """Run every registered check concurrently."""
        components = await asyncio.gather(*(self.check_component(n) for n in self._checks))
        return SystemHealth.from_components(
            list(components), uptime_seconds=self.uptime_seconds, version=self._version
        )


# =============================================================================
# Standard Health Check Functions
# =============================================================================


async def check_fast_tier_health(fast_tier: FastTierClient) -> ComponentHealth:
    """
    Health check for the fast tier.

    An unreachable fast tier is degraded, not unhealthy: ingestion still
    succeeds through the cold-tier fallback.
    """
    if await fast_tier.health_check():
        return ComponentHealth(
            name="fast_tier",
            status=HealthStatus.HEALTHY,
            message="Fast tier is reachable",
        )
    return ComponentHealth(
        name="fast_tier",
        status=HealthStatus.DEGRADED,
        message="Fast tier unreachable, writes fall back to cold tier",
    )


async def check_cold_tier_health(cold_tier: ColdTierStore) -> ComponentHealth:
    """Health check for the cold tier."""
    if await cold_tier.health_check():
        return ComponentHealth(
            name="cold_tier",
            status=HealthStatus.HEALTHY,
            message="Cold tier is writable",
        )
    return ComponentHealth(
        name="cold_tier",
        status=HealthStatus.UNHEALTHY,
        message="Cold tier is not writable",
    )


async def check_sweeper_health(task: SweeperTask) -> ComponentHealth:
    """Health check for the background sweeper."""
    metadata: dict[str, Any] = {
        "running": task.running,
        "runs": task.run_count,
        "errors": task.error_count,
    }
    if task.last_report is not None:
        metadata["last_report"] = task.last_report.to_dict()

    if not task.running:
        return ComponentHealth(
            name="sweeper",
            status=HealthStatus.DEGRADED,
            message="Sweeper is not running",
            metadata=metadata,
        )
    if task.last_error is not None:
        return ComponentHealth(
            name="sweeper",
            status=HealthStatus.DEGRADED,
            message=f"Last run failed: {task.last_error}",
            metadata=metadata,
        )
    return ComponentHealth(
        name="sweeper",
        status=HealthStatus.HEALTHY,
        message="Sweeper is running",
        metadata=metadata,
    )


# =============================================================================
# Structured Logging Configuration
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; otherwise, use console format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=log_level, stream=sys.stderr)
