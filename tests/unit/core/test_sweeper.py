"""
Unit tests for the offload sweeper.

Covers eligibility rules, write-then-delete ordering, partial failure
isolation, the periodic task lifecycle and the startup check.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from kv_offload.config import PressureConfig, SweeperConfig
from kv_offload.core.ingestion import seed_backdated
from kv_offload.core.local_cache import DisabledLocalCache
from kv_offload.core.pressure import PressureMonitor
from kv_offload.core.sweeper import (
    MoveReason,
    OffloadSweeper,
    SweeperTask,
    SweepPolicy,
    SweepReport,
    classify,
    startup_check,
)
from kv_offload.errors import (
    ColdTierError,
    ColdTierWriteError,
    FastTierError,
    FatalStartupFailure,
)
from kv_offload.monitoring import get_metrics

NOW = 1_700_000_000


async def put(fast_tier, key: str, ts: int | None, **fields) -> None:
    data = dict(fields)
    if ts is not None:
        data["_ts"] = ts
    await fast_tier.set(key, json.dumps(data).encode(), 3600)


@pytest.fixture
def make_sweeper(fast_tier, cold_tier, clock, pressure_at):
    def factory(ratio: float | None = 0.10, cold=None, policy: SweepPolicy | None = None):
        return OffloadSweeper(
            fast_tier,
            cold or cold_tier,
            pressure_at(ratio),
            policy or SweepPolicy(),
            clock=clock,
        )

    return factory


class TestClassify:
    """Tests for the eligibility rules."""

    AGE_CUTOFF = NOW - 600
    FORCE_CUTOFF = NOW - 5

    @pytest.mark.parametrize(
        ("ts", "force", "expected"),
        [
            (NOW - 601, False, MoveReason.AGED),
            (NOW - 601, True, MoveReason.AGED),
            (NOW - 600, False, None),
            (NOW - 100, False, None),
            (NOW - 100, True, MoveReason.FORCED),
            (NOW - 5, True, None),
            (NOW - 1, True, None),
            (None, False, None),
            (None, True, MoveReason.FORCED_UNKNOWN_AGE),
        ],
    )
    def test_rules(self, ts, force, expected):
        """Should apply the aged, forced and unknown-age rules."""
        assert classify(ts, self.AGE_CUTOFF, self.FORCE_CUTOFF, force) is expected


class TestSweepPolicy:
    """Tests for SweepPolicy."""

    def test_defaults(self):
        """Defaults should match the documented thresholds."""
        policy = SweepPolicy()
        assert policy.offload_after_seconds == 600
        assert policy.force_mem_ratio == 0.70
        assert policy.force_min_age_seconds == 5

    def test_from_config(self):
        """Should take thresholds from settings."""
        policy = SweepPolicy.from_config(
            SweeperConfig(offload_after_seconds=30, force_min_age_seconds=2, scan_count=10),
            PressureConfig(force_threshold=0.5),
        )
        assert policy.offload_after_seconds == 30
        assert policy.force_min_age_seconds == 2
        assert policy.scan_count == 10
        assert policy.force_mem_ratio == 0.5


class TestOffloadSweeper:
    """Tests for OffloadSweeper.run_once."""

    async def test_moves_exactly_aged_keys(self, make_sweeper, fast_tier, cold_tier):
        """Only keys older than the cutoff should move."""
        for i in range(7):
            await put(fast_tier, f"old:{i}", NOW - 700, i=i)
        for i in range(5):
            await put(fast_tier, f"new:{i}", NOW - 100, i=i)

        report = await make_sweeper().run_once()

        assert report.scanned == 12
        assert report.aged == 7
        assert report.moved == 7
        assert report.write_failures == 0
        assert report.force_mode_active is False
        assert len(fast_tier) == 5
        for i in range(7):
            assert await fast_tier.get(f"old:{i}") is None
            assert json.loads(await cold_tier.get_key(f"old:{i}"))["i"] == i
        for i in range(5):
            assert await fast_tier.get(f"new:{i}") is not None

    async def test_cold_copy_is_byte_identical(self, make_sweeper, fast_tier, cold_tier):
        """The full raw value should be written to the cold tier."""
        raw = b'{"nested":{"a":[1,2,3]},"_ts":1}'
        await fast_tier.set("k", raw, 3600)

        await make_sweeper().run_once()

        assert await cold_tier.get_key("k") == raw

    async def test_force_mode_moves_younger_keys(self, make_sweeper, fast_tier):
        """Under pressure, keys older than the minimum age should move."""
        await put(fast_tier, "medium", NOW - 100)
        await put(fast_tier, "fresh", NOW - 2)

        report = await make_sweeper(ratio=0.75).run_once()

        assert report.force_mode_active is True
        assert report.moved == 1
        assert report.aged == 0
        assert await fast_tier.get("medium") is None
        assert await fast_tier.get("fresh") is not None

    async def test_force_threshold_inclusive(self, make_sweeper, fast_tier):
        """A ratio equal to the threshold should enable force mode."""
        await put(fast_tier, "k", NOW - 100)
        report = await make_sweeper(ratio=0.70).run_once()
        assert report.force_mode_active is True
        assert report.moved == 1

    async def test_unknown_age_only_in_force_mode(self, make_sweeper, fast_tier, cold_tier):
        """Keys without a timestamp should stay put unless under pressure."""
        await fast_tier.set("no-ts", b'{"a":1}', 3600)
        await fast_tier.set("not-json", b"plain text", 3600)

        calm = await make_sweeper(ratio=0.10).run_once()
        assert calm.parse_failures == 2
        assert calm.moved == 0
        assert len(fast_tier) == 2

        pressured = await make_sweeper(ratio=0.90).run_once()
        assert pressured.parse_failures == 2
        assert pressured.moved == 2
        assert len(fast_tier) == 0
        assert await cold_tier.get_key("not-json") == b"plain text"

    async def test_unavailable_pressure_never_forces(self, make_sweeper, fast_tier):
        """Missing pressure data should not enable force mode."""
        await fast_tier.set("no-ts", b"{}", 3600)
        policy = SweepPolicy(force_mem_ratio=0.0)

        report = await make_sweeper(ratio=None, policy=policy).run_once()

        assert report.pressure_available is False
        assert report.force_mode_active is False
        assert report.moved == 0

    async def test_write_failure_leaves_key_resident(self, make_sweeper, fast_tier, cold_tier):
        """No key should be deleted unless its cold write succeeded."""
        for i in range(4):
            await put(fast_tier, f"k{i}", NOW - 700)
        failing = AsyncMock()
        failing.put_key.side_effect = ColdTierWriteError("/x", "disk full")

        report = await make_sweeper(cold=failing).run_once()

        assert report.write_failures == 4
        assert report.moved == 0
        assert len(fast_tier) == 4

        retry = await make_sweeper().run_once()
        assert retry.moved == 4
        assert len(fast_tier) == 0

    async def test_partial_write_failure(self, make_sweeper, fast_tier, cold_tier):
        """Failed writes should not stop other keys from moving."""
        await put(fast_tier, "good", NOW - 700)
        await put(fast_tier, "bad", NOW - 700)

        async def put_key(key, value):
            if key == "bad":
                raise ColdTierError("write", "quota exceeded")
            return await cold_tier.put_key(key, value)

        flaky = AsyncMock()
        flaky.put_key.side_effect = put_key

        report = await make_sweeper(cold=flaky).run_once()

        assert report.moved == 1
        assert report.write_failures == 1
        assert await fast_tier.get("bad") is not None
        assert await fast_tier.get("good") is None

    async def test_delete_failure_counted(self, make_sweeper, fast_tier):
        """A failed delete leaves a duplicate and is not counted as moved."""
        await put(fast_tier, "k", NOW - 700)
        fast_tier.partition_for("k").failing.add("delete")

        report = await make_sweeper().run_once()

        assert report.moved == 0
        assert report.delete_failures == 1

    async def test_scan_failure_isolated_to_partition(self, make_sweeper, fast_tier):
        """A failing partition should not block the others."""
        for i in range(30):
            await put(fast_tier, f"k{i}", NOW - 700)
        partitions = await fast_tier.partitions()
        broken = partitions[1]
        stuck = len(broken)
        broken.failing.add("scan")

        report = await make_sweeper().run_once()

        assert report.partitions_failed == 1
        assert report.failed_partitions == [broken.name]
        assert report.moved == 30 - stuck
        assert len(fast_tier) == stuck

    async def test_partition_listing_failure(self, make_sweeper, fast_tier):
        """Topology errors should end the run with nothing moved."""
        await put(fast_tier, "k", NOW - 700)
        fast_tier.inject_failure("partitions")

        report = await make_sweeper().run_once()

        assert report.moved == 0
        assert report.partitions_failed == 1

    async def test_unreadable_key_skipped(self, make_sweeper, fast_tier):
        """Keys that cannot be read should be skipped, not counted as failures."""
        await put(fast_tier, "k", NOW - 700)
        fast_tier.partition_for("k").failing.add("get")

        report = await make_sweeper().run_once()

        assert report.scanned == 1
        assert report.moved == 0
        assert report.write_failures == 0

    async def test_paged_scan(self, make_sweeper, fast_tier):
        """Small scan pages should still cover every key."""
        for i in range(50):
            await put(fast_tier, f"k{i}", NOW - 700)

        report = await make_sweeper(policy=SweepPolicy(scan_count=3)).run_once()

        assert report.scanned == 50
        assert report.moved == 50

    async def test_seeded_records_all_move(self, fast_tier, cold_tier, clock):
        """Twenty seeded records should all move once the cutoff is below their age."""
        await seed_backdated(fast_tier, 20, clock=clock)
        sweeper = OffloadSweeper(
            fast_tier,
            cold_tier,
            PressureMonitor(fast_tier),
            SweepPolicy(offload_after_seconds=60),
            clock=clock,
        )

        report = await sweeper.run_once()

        assert report.moved == 20
        assert report.write_failures == 0
        assert report.pressure_available is True
        assert len(fast_tier) == 0

    async def test_round_trip_through_retrieval(self, fast_tier, cold_tier, clock, local_cache):
        """A swept key should be readable from the cold tier."""
        from kv_offload.core.retrieval import RetrievalService, Source

        await put(fast_tier, "k", NOW - 700, v="payload")
        retrieval = RetrievalService(fast_tier, cold_tier, local_cache)

        assert (await retrieval.retrieve("k")).source is Source.FAST

        sweeper = OffloadSweeper(
            fast_tier, cold_tier, PressureMonitor(fast_tier), clock=clock
        )
        await sweeper.run_once()

        cold_reader = RetrievalService(fast_tier, cold_tier, DisabledLocalCache())
        result = await cold_reader.retrieve("k")
        assert result.source is Source.COLD
        assert json.loads(result.value)["v"] == "payload"

    async def test_runs_do_not_overlap(self, fast_tier, cold_tier, clock, pressure_at):
        """Concurrent run_once calls should execute one after another."""
        active = 0
        peak = 0
        monitor = pressure_at(0.1)
        sample = monitor.sample.return_value

        async def slow_sample():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return sample

        monitor.sample.side_effect = slow_sample
        sweeper = OffloadSweeper(fast_tier, cold_tier, monitor, clock=clock)

        await asyncio.gather(*(sweeper.run_once() for _ in range(4)))

        assert peak == 1

    async def test_exports_metrics(self, make_sweeper, fast_tier):
        """Run counters should be exported."""
        await put(fast_tier, "k", NOW - 700)

        await make_sweeper(ratio=0.8).run_once()

        metrics = get_metrics()
        assert await metrics.get_counter("kvo_sweep_runs_total") == 1
        assert await metrics.get_counter("kvo_sweep_moved_total") == 1
        assert await metrics.get_gauge("kvo_sweep_force_mode") == 1.0
        assert await metrics.get_gauge("kvo_fast_tier_pressure_ratio") == pytest.approx(0.8)

    def test_report_to_dict(self):
        """Report should serialize every counter."""
        data = SweepReport(scanned=3, moved=1, pressure_ratio=0.123456).to_dict()
        for field in (
            "scanned",
            "aged",
            "moved",
            "write_failures",
            "parse_failures",
            "pressure_ratio",
            "force_mode_active",
        ):
            assert field in data
        assert data["pressure_ratio"] == 0.1235


class TestSweeperTask:
    """Tests for the periodic task lifecycle."""

    async def test_start_runs_immediately_and_stop(self, make_sweeper, fast_tier):
        """Start should run a sweep right away; stop should end the loop."""
        await put(fast_tier, "k", NOW - 700)
        task = SweeperTask(make_sweeper(), interval_seconds=60)

        await task.start()
        assert task.running is True
        for _ in range(100):
            if task.run_count:
                break
            await asyncio.sleep(0.01)
        await task.stop(timeout=1.0)

        assert task.running is False
        assert task.run_count == 1
        assert task.last_report.moved == 1

    async def test_start_is_idempotent(self, make_sweeper):
        """Starting twice should not spawn a second loop."""
        task = SweeperTask(make_sweeper(), interval_seconds=60)
        await task.start()
        first = task._task
        await task.start()
        assert task._task is first
        await task.stop(timeout=1.0)

    async def test_stop_without_start(self, make_sweeper):
        """Stopping an idle task is a no-op."""
        task = SweeperTask(make_sweeper())
        await task.stop()
        assert task.running is False

    async def test_repeats_on_interval(self, make_sweeper):
        """The loop should keep sweeping until stopped."""
        task = SweeperTask(make_sweeper(), interval_seconds=0.01)
        await task.start()
        for _ in range(200):
            if task.run_count >= 3:
                break
            await asyncio.sleep(0.01)
        await task.stop(timeout=1.0)
        assert task.run_count >= 3

    async def test_trigger(self, make_sweeper, fast_tier):
        """trigger() should run exactly one sweep and return its report."""
        await put(fast_tier, "k", NOW - 700)
        task = SweeperTask(make_sweeper())

        report = await task.trigger()

        assert report.moved == 1
        assert task.run_count == 1
        assert task.last_report is report

    async def test_errors_reported_and_loop_survives(self):
        """A failing sweep should be recorded and the loop should continue."""
        sweeper = AsyncMock()
        calls = 0

        async def run_once():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return SweepReport()

        sweeper.run_once.side_effect = run_once
        task = SweeperTask(sweeper, interval_seconds=0.01)

        await task.start()
        for _ in range(200):
            if task.run_count >= 1:
                break
            await asyncio.sleep(0.01)
        await task.stop(timeout=1.0)

        assert task.error_count == 1
        assert task.run_count >= 1
        error = task.errors.get_nowait()
        assert str(error) == "boom"
        assert task.last_error is None

    async def test_trigger_reraises(self):
        """trigger() should record and re-raise failures."""
        sweeper = AsyncMock()
        sweeper.run_once.side_effect = FastTierError("scan", "down")
        task = SweeperTask(sweeper)

        with pytest.raises(FastTierError):
            await task.trigger()
        assert task.error_count == 1
        assert isinstance(task.last_error, FastTierError)

    async def test_error_channel_drops_oldest(self):
        """A full error channel should keep the newest errors."""
        sweeper = AsyncMock()
        sweeper.run_once.side_effect = [RuntimeError("1"), RuntimeError("2"), RuntimeError("3")]
        task = SweeperTask(sweeper, max_queued_errors=2)

        for _ in range(3):
            with pytest.raises(RuntimeError):
                await task.trigger()

        assert [str(task.errors.get_nowait()) for _ in range(2)] == ["2", "3"]

    async def test_stop_cancels_hung_sweep(self):
        """A sweep that outlives the stop timeout should be cancelled."""
        sweeper = AsyncMock()

        async def hang():
            await asyncio.sleep(60)

        sweeper.run_once.side_effect = hang
        task = SweeperTask(sweeper, interval_seconds=60)
        await task.start()
        await asyncio.sleep(0.01)

        await task.stop(timeout=0.05)
        assert task.running is False


class TestStartupCheck:
    """Tests for startup_check."""

    async def test_passes(self, fast_tier, cold_tier, cold_root):
        """A reachable fast tier should pass and the cold root be prepared."""
        await startup_check(fast_tier, cold_tier, attempts=1)
        assert (cold_root / "offloaded").is_dir()

    async def test_fails_fast(self, fast_tier, cold_tier):
        """An unreachable fast tier should raise FatalStartupFailure."""
        fast_tier.inject_failure("ping")
        with pytest.raises(FatalStartupFailure) as exc_info:
            await startup_check(fast_tier, cold_tier, attempts=1)
        assert exc_info.value.component == "fast_tier"

    async def test_retries_before_failing(self, cold_tier):
        """Transient ping failures should be retried."""
        fast = AsyncMock()
        fast.ping.side_effect = [FastTierError("ping", "loading"), None]

        await startup_check(fast, cold_tier, attempts=2)

        assert fast.ping.await_count == 2

    async def test_cold_tier_failure_not_fatal(self, fast_tier):
        """An unprepared cold root should only be logged."""
        cold = AsyncMock()
        cold.ensure_dir.side_effect = ColdTierError("ensure_dir", "permission denied")
        await startup_check(fast_tier, cold, attempts=1)
        cold.ensure_dir.assert_awaited_once()

    async def test_unreachable_cluster_is_fatal(self, unreachable_redis, cold_tier):
        """Cluster discovery failures should end in FatalStartupFailure."""
        with pytest.raises(FatalStartupFailure) as exc_info:
            await startup_check(unreachable_redis, cold_tier, attempts=1)
        assert exc_info.value.component == "fast_tier"


class TestUnreachableCluster:
    """Sweeps against a Redis Cluster that cannot be discovered."""

    async def test_run_reports_failure(self, unreachable_redis, cold_tier, clock):
        """The run should complete with the listing failure counted."""
        sweeper = OffloadSweeper(
            unreachable_redis,
            cold_tier,
            PressureMonitor(unreachable_redis),
            clock=clock,
        )

        report = await sweeper.run_once()

        assert report.partitions_failed == 1
        assert report.pressure_available is False
        assert report.force_mode_active is False
        assert report.moved == 0
