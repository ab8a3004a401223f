"""
Unit tests for DataStoreAccessLayer.

Covers the read-through / write-invalidate cache flow, budget gating,
retry integration, error results, listing, metrics and the write fence.
"""

import asyncio
import logging

import pytest

from datastore_manager.core.backends.memory import InMemoryDataStoreBackend
from datastore_manager.core.cache.ttl_cache import make_cache_key
from datastore_manager.core.datastore.service import DataStoreAccessLayer, WriteFence
from datastore_manager.core.datastore.types import HealthStatus, OperationType, Outcome
from datastore_manager.core.exceptions import (
    BudgetExceeded,
    InvalidKey,
    InvalidPayload,
    OperationTimeout,
    PayloadTooLarge,
    RetryExhausted,
    Throttled,
    TransientError,
    Unauthorized,
)

STORE = "PlayerData"
SCOPE = "global"


def cache_key(key, scope=SCOPE):
    return make_cache_key(STORE, scope, key)


# ============================================================================
# END-TO-END SCENARIOS
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestEndToEnd:
    """Read-through caching against a tight request budget."""

    async def test_budget_and_cache_scenario(self, make_layer, backend):
        """Cache hits cost no budget; the third distinct read is denied."""
        # Arrange
        layer = make_layer(request_budget_per_window=2, read_window_seconds=60.0)
        for key in ("A", "B", "C"):
            backend.seed(STORE, SCOPE, key, {"name": key})

        # Act / Assert
        first = await layer.get(STORE, "A")
        assert first.found and not first.from_cache
        assert layer.budget.remaining(OperationType.READ) == 1

        second = await layer.get(STORE, "A")
        assert second.from_cache
        assert second.value == {"name": "A"}
        assert layer.budget.remaining(OperationType.READ) == 1

        third = await layer.get(STORE, "B")
        assert third.found
        assert layer.budget.remaining(OperationType.READ) == 0

        fourth = await layer.get(STORE, "C")
        assert isinstance(fourth.error, BudgetExceeded)
        assert not fourth.found
        assert backend.calls["get"] == 2

    async def test_write_then_read_fetches_fresh_value(self, layer, backend):
        """A write invalidates the cache so the next read goes to the backend."""
        backend.seed(STORE, SCOPE, "k", {"level": 1})
        await layer.get(STORE, "k")

        written = await layer.set(STORE, "k", {"level": 5})
        assert written.success
        assert written.value == {"level": 5}
        assert cache_key("k") not in layer.cache

        result = await layer.get(STORE, "k")

        assert not result.from_cache
        assert result.value == {"level": 5}
        assert result.version == written.version
        assert backend.calls["get"] == 2


# ============================================================================
# READS
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestGet:
    """Test read semantics."""

    async def test_missing_key_is_not_an_error(self, layer, backend):
        result = await layer.get(STORE, "ghost")

        assert result.found is False
        assert result.error is None
        assert result.ok

    async def test_absence_is_not_cached(self, layer, backend):
        await layer.get(STORE, "ghost")
        await layer.get(STORE, "ghost")

        assert backend.calls["get"] == 2

    async def test_use_cache_false_bypasses_cache(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 1)
        await layer.get(STORE, "k")

        result = await layer.get(STORE, "k", use_cache=False)

        assert not result.from_cache
        assert backend.calls["get"] == 2

    async def test_expired_entry_triggers_refetch(self, make_layer, backend, fake_clock):
        layer = make_layer(cache_ttl_seconds=30.0)
        backend.seed(STORE, SCOPE, "k", 1)
        await layer.get(STORE, "k")

        fake_clock.advance(30.0)
        result = await layer.get(STORE, "k")

        assert not result.from_cache
        assert backend.calls["get"] == 2

    async def test_returned_value_is_isolated_from_cache(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", {"items": [1]})
        first = await layer.get(STORE, "k")
        first.value["items"].append(2)

        second = await layer.get(STORE, "k")

        assert second.from_cache
        assert second.value == {"items": [1]}

    async def test_scopes_are_separate(self, layer, backend):
        backend.seed(STORE, "eu", "k", "eu-value")

        global_result = await layer.get(STORE, "k")
        eu_result = await layer.get(STORE, "k", scope="eu")

        assert not global_result.found
        assert eu_result.value == "eu-value"

    async def test_invalid_key_returns_error_without_budget(self, layer, backend):
        result = await layer.get(STORE, "bad key!")

        assert isinstance(result.error, InvalidKey)
        assert backend.calls["get"] == 0
        assert layer.budget.state(OperationType.READ).admitted == 0

    async def test_invalid_store_name_returns_error(self, layer):
        result = await layer.get("Player:Data", "k")

        assert isinstance(result.error, InvalidKey)
        assert result.error.field_name == "store"

    async def test_non_string_key_is_a_programming_error(self, layer):
        with pytest.raises(TypeError):
            await layer.get(STORE, 42)

    async def test_timeout_surfaces_as_error_not_absence(self, backend, datastore_config):
        """An unanswered read is an error, never a false 'not found'."""
        layer = DataStoreAccessLayer(backend, datastore_config)
        backend.seed(STORE, SCOPE, "k", 1)
        backend.hold("get")

        try:
            result = await layer.get(STORE, "k", timeout=0.05)
        finally:
            backend.release("get")

        assert isinstance(result.error, OperationTimeout)
        assert result.found is False

    async def test_non_positive_timeout_rejected(self, layer):
        with pytest.raises(ValueError):
            await layer.get(STORE, "k", timeout=0)

        assert layer.budget.remaining(OperationType.READ) == 100


# ============================================================================
# WRITES
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestSet:
    """Test write semantics."""

    async def test_set_returns_version(self, layer, backend):
        result = await layer.set(STORE, "k", {"gold": 10})

        assert result.success
        assert result.version.startswith("v")
        assert backend.raw(STORE, SCOPE, "k") == {"gold": 10}

    async def test_payload_too_large_rejected_before_budget(self, make_layer, backend):
        layer = make_layer(max_payload_bytes=64)

        result = await layer.set(STORE, "k", "x" * 100)

        assert isinstance(result.error, PayloadTooLarge)
        assert not result.success
        assert backend.calls["set"] == 0
        assert layer.budget.state(OperationType.WRITE).admitted == 0

    async def test_unserializable_payload(self, layer, backend):
        result = await layer.set(STORE, "k", {"when": object()})

        assert isinstance(result.error, InvalidPayload)
        assert backend.calls["set"] == 0

    async def test_key_with_trailing_newline_is_never_written(self, layer, backend):
        result = await layer.set(STORE, "p1\n", {"gold": 1})

        assert isinstance(result.error, InvalidKey)
        assert not result.success
        assert backend.calls["set"] == 0
        assert layer.budget.state(OperationType.WRITE).admitted == 0

    async def test_budget_exhausted_write_is_not_performed(self, make_layer, backend):
        layer = make_layer(request_budget_per_window=1)
        await layer.set(STORE, "a", 1)

        result = await layer.set(STORE, "b", 2)

        assert isinstance(result.error, BudgetExceeded)
        assert result.error.retry_after > 0
        assert backend.raw(STORE, SCOPE, "b") is None
        assert layer.metrics.budget_denials(OperationType.WRITE) == 1

    async def test_failed_write_still_invalidates_cache(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", "old")
        await layer.get(STORE, "k")
        backend.inject_failure(Unauthorized(), operation="set")

        result = await layer.set(STORE, "k", "new")

        assert isinstance(result.error, Unauthorized)
        assert cache_key("k") not in layer.cache

    async def test_transient_failure_is_retried(self, layer, backend, fake_sleep):
        backend.inject_failure(lambda: TransientError("reset"), times=1, operation="set")

        result = await layer.set(STORE, "k", 1)

        assert result.success
        assert fake_sleep.delays == [0.5]
        assert layer.get_operation_history(limit=1)[0].attempts == 2


@pytest.mark.unit
@pytest.mark.asyncio
class TestUpdate:
    """Test read-modify-write."""

    async def test_transform_receives_current_value(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", {"level": 1})

        result = await layer.update(STORE, "k", lambda cur: {"level": cur["level"] + 1})

        assert result.success
        assert backend.raw(STORE, SCOPE, "k") == {"level": 2}

    async def test_transform_sees_none_for_missing_key(self, layer, backend):
        seen = []

        def transform(current):
            seen.append(current)
            return {"level": 1}

        await layer.update(STORE, "new", transform)

        assert seen == [None]

    async def test_update_reads_fresh_value_not_cache(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 1)
        await layer.get(STORE, "k")
        backend.seed(STORE, SCOPE, "k", 7)

        await layer.update(STORE, "k", lambda cur: cur + 1)

        assert backend.raw(STORE, SCOPE, "k") == 8

    async def test_returning_none_cancels_write(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 3)

        result = await layer.update(STORE, "k", lambda cur: None)

        assert result.success is False
        assert result.error is None
        assert result.value == 3
        assert backend.calls["set"] == 0

    async def test_uses_read_and_write_budgets(self, layer):
        await layer.update(STORE, "k", lambda cur: 1)

        assert layer.budget.state(OperationType.READ).admitted == 1
        assert layer.budget.state(OperationType.WRITE).admitted == 1

    async def test_transform_errors_propagate(self, layer):
        def broken(current):
            raise RuntimeError("bad transform")

        with pytest.raises(RuntimeError, match="bad transform"):
            await layer.update(STORE, "k", broken)

    async def test_non_callable_transform(self, layer):
        with pytest.raises(TypeError):
            await layer.update(STORE, "k", {"level": 1})


@pytest.mark.unit
@pytest.mark.asyncio
class TestDelete:
    """Test delete semantics."""

    async def test_delete_existing(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 1)

        result = await layer.delete(STORE, "k")

        assert result.success and result.existed
        assert backend.raw(STORE, SCOPE, "k") is None

    async def test_delete_missing_still_invalidates(self, layer, backend):
        layer.cache.put(cache_key("k"), "stale")

        result = await layer.delete(STORE, "k")

        assert result.success
        assert result.existed is False
        assert cache_key("k") not in layer.cache

    async def test_failed_delete_invalidates_cache(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 1)
        await layer.get(STORE, "k")
        backend.inject_failure(Unauthorized(), operation="delete")

        result = await layer.delete(STORE, "k")

        assert isinstance(result.error, Unauthorized)
        assert result.success is False
        assert cache_key("k") not in layer.cache


# ============================================================================
# FAILURE HANDLING
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestFailures:
    """Test error classification through the layer."""

    async def test_retry_exhaustion_is_returned(self, layer, backend, fake_sleep):
        backend.inject_failure(lambda: TransientError("down"), times=10, operation="get")

        result = await layer.get(STORE, "k")

        assert isinstance(result.error, RetryExhausted)
        assert result.error.attempts == 3
        assert backend.calls["get"] == 3
        record = layer.get_operation_history(limit=1)[0]
        assert record.outcome is Outcome.FAILURE
        assert record.attempts == 3

    async def test_permanent_error_has_context(self, layer, backend):
        backend.inject_failure(Unauthorized("read denied"), operation="get")

        result = await layer.get(STORE, "k")

        assert isinstance(result.error, Unauthorized)
        assert result.error.attempts == 1
        assert result.error.details["store"] == STORE
        assert result.error.details["key"] == "k"
        assert backend.calls["get"] == 1

    async def test_persistent_throttling_pauses_the_class(self, layer, backend):
        backend.inject_failure(lambda: Throttled(), times=10, operation="get")

        throttled = await layer.get(STORE, "k")
        follow_up = await layer.get(STORE, "k")

        assert isinstance(throttled.error, RetryExhausted)
        assert throttled.error.caused_by_throttling
        assert layer.get_operation_history(limit=1)[0].outcome is Outcome.THROTTLED
        assert isinstance(follow_up.error, BudgetExceeded)
        assert follow_up.error.retry_after == pytest.approx(10.0)
        assert backend.calls["get"] == 3

    async def test_cancellation_propagates(self, layer, backend):
        backend.hold("get")
        task = asyncio.ensure_future(layer.get(STORE, "k"))
        await asyncio.sleep(0.01)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert layer.budget.state(OperationType.READ).admitted == 1

    async def test_inter_request_delay_paces_remote_calls(self, layer, fake_sleep):
        layer.set_inter_request_delay(0.2)

        await layer.set(STORE, "k", 1)

        assert fake_sleep.delays == [0.2]

    async def test_pacing_past_deadline_reports_caller_timeout(self, layer, backend, fake_sleep):
        layer.set_inter_request_delay(0.5)

        result = await layer.get(STORE, "k", timeout=0.2)

        assert isinstance(result.error, OperationTimeout)
        assert result.error.details["timeout_seconds"] == 0.2
        assert backend.calls["get"] == 0
        assert fake_sleep.delays == []

    async def test_failure_log_level_follows_severity(self, layer, backend, mocker):
        log = mocker.patch("datastore_manager.core.datastore.service.logger")
        backend.inject_failure(Unauthorized("read denied"), operation="get")

        await layer.get(STORE, "k")
        layer.set_inter_request_delay(0.5)
        await layer.get(STORE, "j", timeout=0.2)

        (denied_level, _), denied_kwargs = log.log.call_args_list[0]
        (timeout_level, _), timeout_kwargs = log.log.call_args_list[1]
        assert denied_level == logging.ERROR
        assert denied_kwargs["extra"]["alert"] is True
        assert timeout_level == logging.WARNING
        assert timeout_kwargs["extra"]["alert"] is False


# ============================================================================
# LISTING
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestListing:
    """Test key and version listing."""

    async def test_pagination(self, layer, backend):
        for i in range(5):
            backend.seed(STORE, SCOPE, f"key{i}", i)

        first = await layer.list_keys(STORE, page_size=2)
        second = await layer.list_keys(STORE, page_size=2, page_token=first.next_page_token)

        assert first.names == ["key0", "key1"]
        assert second.names == ["key2", "key3"]
        assert second.next_page_token is not None

    async def test_prefix_filter(self, layer, backend):
        for name in ("player_1", "player_2", "guild_1"):
            backend.seed(STORE, SCOPE, name, 1)

        result = await layer.list_keys(STORE, prefix="player_")

        assert result.names == ["player_1", "player_2"]
        assert result.next_page_token is None

    async def test_iter_key_pages_walks_every_page(self, layer, backend):
        for i in range(7):
            backend.seed(STORE, SCOPE, f"k{i}", i)

        names = []
        async for page in layer.iter_key_pages(STORE, page_size=3):
            names.extend(page.names)

        assert names == [f"k{i}" for i in range(7)]
        assert layer.budget.state(OperationType.LIST).admitted == 3

    async def test_iter_stops_after_error_page(self, make_layer, backend):
        layer = make_layer(request_budget_per_window=1)
        for i in range(4):
            backend.seed(STORE, SCOPE, f"k{i}", i)

        pages = [page async for page in layer.iter_key_pages(STORE, page_size=2)]

        assert len(pages) == 2
        assert isinstance(pages[-1].error, BudgetExceeded)

    async def test_listing_is_not_cached(self, layer, backend):
        await layer.list_keys(STORE)
        await layer.list_keys(STORE)

        assert backend.calls["list_keys"] == 2
        assert len(layer.cache) == 0

    async def test_list_versions_newest_first(self, layer):
        for level in range(3):
            await layer.set(STORE, "k", {"level": level})

        result = await layer.list_versions(STORE, "k")

        versions = [v.version for v in result.versions]
        assert versions == sorted(versions, reverse=True)
        assert len(versions) == 3
        assert layer.budget.state(OperationType.LIST).admitted == 1

    async def test_default_page_size_follows_tunable(self, layer, backend):
        for i in range(15):
            backend.seed(STORE, SCOPE, f"k{i:02d}", i)
        layer.set_list_page_size(10)

        result = await layer.list_keys(STORE)

        assert len(result.keys) == 10

    async def test_invalid_page_size(self, layer):
        with pytest.raises(ValueError):
            await layer.list_keys(STORE, page_size=0)


# ============================================================================
# REPORTING & CACHE CONTROL
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
class TestReporting:
    """Test snapshots, history and manual cache control."""

    async def test_metrics_summary(self, layer, backend):
        backend.seed(STORE, SCOPE, "k", 1)
        await layer.get(STORE, "k")
        await layer.get(STORE, "k")
        await layer.set(STORE, "j", 2)

        snapshot = layer.get_metrics_summary()

        assert snapshot.total_operations == 2
        assert snapshot.success_rate == 1.0
        assert snapshot.cache_hit_rate == pytest.approx(0.5)
        assert snapshot.budget_remaining["read"] == 99
        assert snapshot.budget_remaining["write"] == 99
        assert snapshot.status is HealthStatus.HEALTHY
        assert snapshot.to_dict()["total_operations"] == 2
        assert snapshot.operation_counts == {"read": 1, "write": 1, "delete": 0, "list": 0}
        assert snapshot.recent_errors == ()

    async def test_snapshot_lists_recent_failures(self, layer, backend):
        backend.inject_failure(Unauthorized("read denied"), operation="get")

        await layer.get(STORE, "k")
        await layer.set(STORE, "k", 1)
        snapshot = layer.get_metrics_summary()

        assert len(snapshot.recent_errors) == 1
        error = snapshot.recent_errors[0]
        assert error["type"] == "read"
        assert error["key"] == "k"
        assert error["error_code"] == Unauthorized("x").error_code
        assert snapshot.to_dict()["recent_errors"][0]["outcome"] == "failure"

    async def test_operation_listener_receives_records(self, layer, mocker):
        listener = mocker.Mock()
        layer.on_operation(listener)

        await layer.set(STORE, "a", 1)
        await layer.get(STORE, "a", use_cache=False)

        records = [c.args[0] for c in listener.call_args_list]
        assert [r.type for r in records] == [OperationType.WRITE, OperationType.READ]
        assert records[0].store == STORE

    async def test_operation_history(self, layer):
        await layer.set(STORE, "a", 1)
        await layer.get(STORE, "a")

        history = layer.get_operation_history(limit=10)
        writes = layer.get_operation_history(op_type=OperationType.WRITE)

        assert [r.type for r in history] == [OperationType.READ, OperationType.WRITE]
        assert writes[0].store == STORE
        assert writes[0].payload_size > 0

    async def test_clear_cache(self, layer, backend):
        for key in ("a", "b"):
            backend.seed(STORE, SCOPE, key, key)
            await layer.get(STORE, key)

        assert layer.clear_cache() == 2
        assert len(layer.cache) == 0

    async def test_clear_cache_for_one_store(self, layer, backend):
        backend.seed(STORE, SCOPE, "a", 1)
        backend.seed("Guilds", SCOPE, "g", 1)
        await layer.get(STORE, "a")
        await layer.get("Guilds", "g")

        assert layer.clear_cache(STORE) == 1
        assert make_cache_key("Guilds", SCOPE, "g") in layer.cache

    async def test_invalidate_single_key(self, layer, backend):
        backend.seed(STORE, SCOPE, "a", 1)
        await layer.get(STORE, "a")

        assert layer.invalidate(STORE, "a") is True
        assert (await layer.get(STORE, "a")).from_cache is False

    async def test_instances_do_not_share_state(self, backend, datastore_config):
        first = DataStoreAccessLayer(backend, datastore_config)
        second = DataStoreAccessLayer(backend, datastore_config)
        backend.seed(STORE, SCOPE, "k", 1)

        await first.get(STORE, "k")

        assert len(first.cache) == 1
        assert len(second.cache) == 0
        assert second.budget.state(OperationType.READ).admitted == 0


# ============================================================================
# WRITE FENCE
# ============================================================================


class StaleReadBackend(InMemoryDataStoreBackend):
    """Reads storage, then waits on `gate` before returning (a slow response)."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def get(self, store, scope, key):
        value = await super().get(store, scope, key)
        await self.gate.wait()
        return value


@pytest.mark.unit
class TestWriteFence:
    """Test epoch bookkeeping in isolation."""

    def test_read_before_write_cannot_populate(self):
        fence = WriteFence()
        token = fence.begin_read()

        fence.begin_write("k")
        assert not fence.can_populate("k", token)
        fence.end_write("k")
        assert not fence.can_populate("k", token)

    def test_read_after_write_can_populate(self):
        fence = WriteFence()
        fence.begin_write("k")
        fence.end_write("k")

        assert fence.can_populate("k", fence.begin_read())

    def test_other_keys_unaffected(self):
        fence = WriteFence()
        token = fence.begin_read()

        fence.mark("other")

        assert fence.can_populate("k", token)

    def test_forgotten_keys_fall_back_to_floor(self):
        fence = WriteFence(max_tracked=2)
        token = fence.begin_read()

        for key in ("a", "b", "c"):
            fence.mark(key)

        assert not fence.can_populate("a", token)


@pytest.mark.unit
@pytest.mark.asyncio
class TestConcurrentReadWrite:
    """A read overlapping a write never caches its (possibly stale) result."""

    async def test_stale_read_is_not_cached(self, datastore_config, fake_clock, fake_sleep):
        # Arrange
        backend = StaleReadBackend()
        layer = DataStoreAccessLayer(backend, datastore_config, clock=fake_clock, sleep=fake_sleep)
        backend.seed(STORE, SCOPE, "k", "old")

        # Act: the read observes "old", then a write lands before it returns
        read_task = asyncio.ensure_future(layer.get(STORE, "k"))
        await asyncio.sleep(0.01)
        written = await layer.set(STORE, "k", "new")
        backend.gate.set()
        stale = await read_task

        # Assert
        assert written.success
        assert stale.value == "old"
        assert cache_key("k") not in layer.cache

        fresh = await layer.get(STORE, "k")
        assert fresh.value == "new"
        assert not fresh.from_cache
