"""
Unit tests for AdaptiveController.

Tests each tuning rule, the cleanup timer, failure isolation and the
background task lifecycle.
"""

import asyncio

import pytest

from datastore_manager.core.datastore.adaptive import AdaptiveController
from datastore_manager.core.datastore.metrics import OperationRecord
from datastore_manager.core.datastore.types import OperationType, Outcome


def record_ops(layer, clock, count, latency_s=0.0, outcome=Outcome.SUCCESS):
    for i in range(count):
        now = clock()
        layer.metrics.record(
            OperationRecord(
                type=OperationType.READ,
                key=f"k{i}",
                started_at=now - latency_s,
                completed_at=now,
                outcome=outcome,
            )
        )


@pytest.fixture
def controller(layer, fake_clock):
    return AdaptiveController(layer, clock=fake_clock)


@pytest.mark.unit
class TestCacheSizing:
    """Test cache growth and shrink rules."""

    def test_grows_cache_when_hit_rate_low(self, layer, controller):
        layer.metrics.record_cache_miss()

        applied = controller.tick()

        assert [o.action for o in applied] == ["grow_cache"]
        assert layer.cache.max_entries == 1200

    def test_growth_respects_ceiling(self, layer, fake_clock):
        controller = AdaptiveController(layer, clock=fake_clock, max_entries_ceiling=1100)
        layer.metrics.record_cache_miss()

        controller.tick()
        controller.tick()

        assert layer.cache.max_entries == 1100

    def test_no_growth_without_lookups(self, layer, controller):
        assert controller.tick() == []
        assert layer.cache.max_entries == 1000

    def test_shrinks_cache_under_memory_pressure(self, make_layer, fake_clock):
        layer = make_layer(cache_max_size_mb=0.001)  # 1048 bytes
        layer.cache.put("big", "x" * 900)
        controller = AdaptiveController(layer, clock=fake_clock)

        applied = controller.tick()

        assert applied[0].action == "shrink_cache"
        assert layer.cache.max_entries == 900


@pytest.mark.unit
class TestThrottling:
    """Test inter-request delay adjustments."""

    def test_raises_delay_on_high_error_rate(self, layer, controller, fake_clock):
        record_ops(layer, fake_clock, 10, outcome=Outcome.FAILURE)

        controller.tick()

        assert layer.inter_request_delay == pytest.approx(0.05)

    def test_delay_is_bounded(self, layer, controller, fake_clock):
        record_ops(layer, fake_clock, 10, outcome=Outcome.FAILURE)

        for _ in range(50):
            controller.tick()

        assert layer.inter_request_delay == pytest.approx(1.0)

    def test_relaxes_delay_when_healthy(self, layer, controller, fake_clock):
        layer.set_inter_request_delay(0.1)
        record_ops(layer, fake_clock, 10)

        applied = controller.tick()

        assert "relax_throttling" in [o.action for o in applied]
        assert layer.inter_request_delay == pytest.approx(0.05)


@pytest.mark.unit
class TestPageSize:
    """Test list page size adjustments."""

    def test_lowers_page_size_when_slow(self, layer, controller, fake_clock):
        record_ops(layer, fake_clock, 10, latency_s=0.5)

        controller.tick()

        assert layer.list_page_size == 90

    def test_raises_page_size_when_fast_and_idle(self, layer, controller, fake_clock):
        record_ops(layer, fake_clock, 10, latency_s=0.01)

        controller.tick()

        assert layer.list_page_size == 110


@pytest.mark.unit
class TestHousekeeping:
    """Test cleanup, history and failure isolation."""

    def test_purges_expired_entries_on_interval(self, layer, fake_clock):
        controller = AdaptiveController(layer, clock=fake_clock, cleanup_interval=60.0)
        layer.cache.put("short", 1, ttl=5.0)

        fake_clock.advance(30.0)
        controller.tick()
        assert len(layer.cache) == 1

        fake_clock.advance(30.0)
        controller.tick()
        assert len(layer.cache) == 0

    def test_history_newest_first(self, layer, controller, fake_clock):
        layer.metrics.record_cache_miss()
        controller.tick()
        record_ops(layer, fake_clock, 10, outcome=Outcome.FAILURE)
        controller.tick()

        history = controller.history()

        assert [o.action for o in history] == [
            "increase_page_size",
            "increase_throttling",
            "grow_cache",
            "grow_cache",
        ]
        assert len(controller.history(limit=1)) == 1

    def test_tick_failure_is_contained(self, layer, controller, mocker):
        mocker.patch.object(layer.metrics, "summary", side_effect=RuntimeError("boom"))

        assert controller.tick() == []
        assert controller.failed_ticks == 1
        assert layer.inter_request_delay == 0.0

    def test_sampling_interval_must_be_positive(self, layer):
        with pytest.raises(ValueError):
            AdaptiveController(layer, sampling_interval=0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestLifecycle:
    """Test the background sampling task."""

    async def test_context_manager_runs_and_stops(self, layer):
        controller = AdaptiveController(layer, sampling_interval=0.01)

        async with controller:
            assert controller.running
            await asyncio.sleep(0.05)

        assert not controller.running
        assert controller.ticks >= 1

    async def test_start_is_idempotent(self, layer):
        controller = AdaptiveController(layer, sampling_interval=0.01)

        controller.start()
        task = controller._task
        controller.start()

        assert controller._task is task
        await controller.stop()

    async def test_stop_without_start(self, layer):
        controller = AdaptiveController(layer)

        await controller.stop()

        assert not controller.running
