"""
Background offload from the fast tier to the cold tier.

One sweep walks every key of every fast-tier partition with a cursor scan
and moves eligible records to the cold tier:

- records older than ``offload_after_seconds`` always move
- under memory pressure (force mode), records older than
  ``force_min_age_seconds`` also move, as do records whose age is unknown

A move writes the raw value to the cold tier first and deletes the key
from the fast tier only after that write succeeds. A crash in between
leaves a duplicate that reads resolve in favour of the fast tier.

:class:`SweeperTask` runs sweeps periodically with an explicit start/stop
lifecycle, and :meth:`SweeperTask.trigger` runs one sweep on demand.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kv_offload.core.records import extract_timestamp
from kv_offload.errors import (
    ColdTierError,
    FastTierError,
    FatalStartupFailure,
    PartialClusterFailure,
)
from kv_offload.monitoring import get_metrics

if TYPE_CHECKING:
    from collections.abc import Callable

    from kv_offload.config import PressureConfig, SweeperConfig
    from kv_offload.core.cold_tier import ColdTierStore
    from kv_offload.core.fast_tier import FastTierClient, FastTierPartition
    from kv_offload.core.pressure import PressureMonitor

logger = structlog.get_logger()


class MoveReason(str, Enum):
    """Why a record was selected for offload."""

    AGED = "aged"
    FORCED = "forced"
    FORCED_UNKNOWN_AGE = "forced_unknown_age"


@dataclass
class SweepPolicy:
    """Eligibility rules for one sweep."""

    offload_after_seconds: int = 600
    force_mem_ratio: float = 0.70
    force_min_age_seconds: int = 5
    scan_count: int = 100
    match: str = "*"

    @classmethod
    def from_config(cls, sweeper: SweeperConfig, pressure: PressureConfig) -> SweepPolicy:
        """Build a policy from settings."""
        return cls(
            offload_after_seconds=sweeper.offload_after_seconds,
            force_mem_ratio=pressure.force_threshold,
            force_min_age_seconds=sweeper.force_min_age_seconds,
            scan_count=sweeper.scan_count,
        )


def classify(
    ts: int | None,
    age_cutoff: int,
    force_cutoff: int,
    force_mode: bool,
) -> MoveReason | None:
    """
    Decide whether a record moves.

    Args:
        ts: Embedded ingestion timestamp, None if unknown.
        age_cutoff: Records stamped before this always move.
        force_cutoff: Records stamped before this move in force mode.
        force_mode: Whether the fast tier is under pressure.
    """
    if ts is None:
        return MoveReason.FORCED_UNKNOWN_AGE if force_mode else None
    if ts < age_cutoff:
        return MoveReason.AGED
    if force_mode and ts < force_cutoff:
        return MoveReason.FORCED
    return None


@dataclass
class SweepReport:
    """Counters for one sweep."""

    scanned: int = 0
    aged: int = 0
    moved: int = 0
    write_failures: int = 0
    parse_failures: int = 0
    delete_failures: int = 0
    partitions_failed: int = 0
    pressure_ratio: float = 0.0
    pressure_available: bool = False
    force_mode_active: bool = False
    duration_ms: float = 0.0
    failed_partitions: list[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        """Whether anything worth logging happened."""
        return bool(
            self.scanned
            or self.moved
            or self.write_failures
            or self.parse_failures
            or self.partitions_failed
            or self.force_mode_active
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result["pressure_ratio"] = round(self.pressure_ratio, 4)
        result["duration_ms"] = round(self.duration_ms, 2)
        return result


class OffloadSweeper:
    """Moves aged or pressured records from the fast tier to the cold tier."""

    def __init__(
        self,
        fast_tier: FastTierClient,
        cold_tier: ColdTierStore,
        pressure: PressureMonitor,
        policy: SweepPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the sweeper.

        Args:
            fast_tier: Fast tier to drain.
            cold_tier: Cold tier receiving per-key objects.
            pressure: Memory pressure monitor for force mode.
            policy: Eligibility rules.
            clock: Time source for age cutoffs.
        """
        self.fast_tier = fast_tier
        self.cold_tier = cold_tier
        self.pressure = pressure
        self.policy = policy or SweepPolicy()
        self._clock = clock
        self._run_lock = asyncio.Lock()

    async def run_once(self) -> SweepReport:
        """
        Run one full sweep.

        Runs never overlap: a call made while another sweep is in progress
        waits for it to finish first.
        """
        async with self._run_lock:
            return await self._sweep()

    async def _sweep(self) -> SweepReport:
        start = time.perf_counter()
        policy = self.policy

        sample = await self.pressure.sample()
        force_mode = sample.available and sample.ratio >= policy.force_mem_ratio

        now = int(self._clock())
        age_cutoff = now - policy.offload_after_seconds
        force_cutoff = now - policy.force_min_age_seconds

        report = SweepReport(
            pressure_ratio=sample.ratio,
            pressure_available=sample.available,
            force_mode_active=force_mode,
        )

        try:
            partitions = await self.fast_tier.partitions()
        except FastTierError as e:
            logger.error("Cannot list fast tier partitions", error=str(e))
            partitions = []
            report.partitions_failed += 1
            report.failed_partitions.append("*")

        for partition in partitions:
            try:
                await self._sweep_partition(
                    partition, report, age_cutoff, force_cutoff, force_mode
                )
            except FastTierError as e:
                report.partitions_failed += 1
                report.failed_partitions.append(partition.name)
                logger.warning(
                    "Offload scan error",
                    partition=partition.name,
                    error=str(e),
                )

        if report.failed_partitions:
            err = PartialClusterFailure("offload sweep", report.failed_partitions)
            logger.warning(str(err), **err.context)

        report.duration_ms = (time.perf_counter() - start) * 1000

        if report.active:
            logger.info(
                "offload run",
                age_cutoff_seconds=policy.offload_after_seconds,
                force_min_age_seconds=policy.force_min_age_seconds,
                **report.to_dict(),
            )
        await self._export(report)
        return report

    async def _sweep_partition(
        self,
        partition: FastTierPartition,
        report: SweepReport,
        age_cutoff: int,
        force_cutoff: int,
        force_mode: bool,
    ) -> None:
        """
        Walk one partition to the end of its cursor.

        Raises:
            FastTierError: If the scan itself fails. Moves already made in
                this partition are kept.
        """
        cursor = 0
        while True:
            cursor, keys = await partition.scan(
                cursor, match=self.policy.match, count=self.policy.scan_count
            )
            for key in keys:
                report.scanned += 1
                await self._consider(
                    partition, key, report, age_cutoff, force_cutoff, force_mode
                )
            if cursor == 0:
                break

    async def _consider(
        self,
        partition: FastTierPartition,
        key: str,
        report: SweepReport,
        age_cutoff: int,
        force_cutoff: int,
        force_mode: bool,
    ) -> None:
        try:
            raw = await partition.get(key)
        except FastTierError as e:
            logger.debug("Offload read failed", key=key, error=str(e))
            return
        if raw is None:
            # Expired or deleted since the scan page was produced
            return

        ts = extract_timestamp(raw)
        if ts is None:
            report.parse_failures += 1

        reason = classify(ts, age_cutoff, force_cutoff, force_mode)
        if reason is MoveReason.AGED:
            report.aged += 1
        if reason is None:
            return

        try:
            await self.cold_tier.put_key(key, raw)
        except ColdTierError as e:
            report.write_failures += 1
            logger.warning("offload write failed", key=key, error=str(e))
            return

        try:
            await partition.delete(key)
        except FastTierError as e:
            report.delete_failures += 1
            logger.warning("offload delete failed", key=key, error=str(e))
            return

        report.moved += 1
        logger.debug("Offloaded record", key=key, reason=reason.value)

    async def _export(self, report: SweepReport) -> None:
        metrics = get_metrics()
        await metrics.inc_counter("kvo_sweep_runs_total", help_text="Completed sweeps")
        for name in ("scanned", "aged", "moved", "write_failures", "parse_failures", "delete_failures"):
            value = getattr(report, name)
            if value:
                await metrics.inc_counter(
                    f"kvo_sweep_{name}_total",
                    value,
                    help_text=f"Sweep {name.replace('_', ' ')} across all runs",
                )
        await metrics.set_gauge(
            "kvo_fast_tier_pressure_ratio",
            report.pressure_ratio,
            help_text="Fast tier memory ratio at the start of the last sweep",
        )
        await metrics.set_gauge(
            "kvo_sweep_force_mode",
            1.0 if report.force_mode_active else 0.0,
            help_text="Whether the last sweep ran in force mode",
        )
        await metrics.set_gauge(
            "kvo_sweep_duration_ms",
            report.duration_ms,
            help_text="Duration of the last sweep",
        )


async def startup_check(
    fast_tier: FastTierClient,
    cold_tier: ColdTierStore,
    attempts: int = 3,
) -> None:
    """
    Verify dependencies before the sweeper starts.

    The fast tier must answer a ping within ``attempts`` tries. The cold
    tier root is created if missing; a failure there is logged, and the
    affected moves are counted as write failures once sweeps run.

    Raises:
        FatalStartupFailure: If the fast tier is unreachable.
    """
    logger.info("Connecting to fast tier", attempts=attempts)
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(FastTierError),
            reraise=True,
        ):
            with attempt:
                await fast_tier.ping()
    except FastTierError as e:
        raise FatalStartupFailure("fast_tier", str(e), cause=e) from e

    try:
        await cold_tier.ensure_dir()
    except ColdTierError as e:
        logger.error("Cannot prepare cold tier root", error=str(e))


class SweeperTask:
    """
    Runs :class:`OffloadSweeper` periodically.

    Lifecycle:
    - ``start()`` schedules the loop; the first sweep runs immediately
    - ``stop()`` signals the loop and waits for an in-flight sweep
    - ``trigger()`` runs one sweep now, for tests and admin calls

    A sweep that raises does not stop the loop. The exception is logged,
    kept in ``last_error`` and pushed onto ``errors``.
    """

    def __init__(
        self,
        sweeper: OffloadSweeper,
        interval_seconds: float = 60.0,
        max_queued_errors: int = 100,
    ):
        """
        Initialize the task.

        Args:
            sweeper: The sweeper to run.
            interval_seconds: Delay between the end of one sweep and the next.
            max_queued_errors: Capacity of the error channel; oldest dropped.
        """
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.errors: asyncio.Queue[Exception] = asyncio.Queue(maxsize=max_queued_errors)
        self.last_report: SweepReport | None = None
        self.last_error: Exception | None = None
        self.run_count = 0
        self.error_count = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the periodic loop. No-op if already running."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="offload-sweeper")
        logger.info("Sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop the loop.

        Args:
            timeout: Seconds to wait for an in-flight sweep before cancelling
                it. None waits for it to finish.
        """
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Sweeper stopped", runs=self.run_count, errors=self.error_count)

    async def trigger(self) -> SweepReport:
        """
        Run one sweep now and return its report.

        Raises:
            Exception: Whatever the sweep raised, after recording it.
        """
        try:
            report = await self.sweeper.run_once()
        except Exception as e:
            self._record_error(e)
            raise
        self._record_report(report)
        return report

    def _record_report(self, report: SweepReport) -> None:
        self.run_count += 1
        self.last_report = report
        self.last_error = None

    def _record_error(self, error: Exception) -> None:
        self.error_count += 1
        self.last_error = error
        if self.errors.full():
            self.errors.get_nowait()
        self.errors.put_nowait(error)
        logger.error(
            "Sweep failed",
            error=str(error),
            error_type=type(error).__name__,
            exc_info=error,
        )

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                report = await self.sweeper.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_error(e)
            else:
                self._record_report(report)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
