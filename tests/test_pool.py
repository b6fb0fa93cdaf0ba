"""Tests for the resource pool."""

import asyncio
from unittest.mock import AsyncMock, Mock, call, patch

import pytest

from resource_pool.core.pool import PoolState, ResourcePool, RetryPolicy
from resource_pool.database.backend import SimulatedConnector
from resource_pool.exceptions import (
    AcquireTimeoutError,
    NestedTransactionError,
    OperationFailedError,
    PoolClosedError,
    PoolError,
    PoolNotReadyError,
    ValidationError,
)


def flaky(failures, result="ok"):
    """Operation that fails ``failures`` times before succeeding."""
    calls = []

    async def operation(resource):
        calls.append(resource.id)
        if len(calls) <= failures:
            raise OperationFailedError(f"attempt {len(calls)} failed")
        return result

    operation.calls = calls
    return operation


class TestRetryPolicy:
    """Test retry policy validation and backoff."""

    def test_linear_backoff(self):
        policy = RetryPolicy(max_attempts=3, base_delay_ms=1000)
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(2) == 2.0

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValidationError):
            RetryPolicy(base_delay_ms=-1)


class TestPoolConstruction:
    """Test constructor validation."""

    @pytest.mark.parametrize("capacity", [0, -1, "3"])
    def test_invalid_capacity(self, capacity):
        with pytest.raises(ValidationError):
            ResourcePool(capacity)

    def test_invalid_acquire_timeout(self):
        with pytest.raises(ValidationError):
            ResourcePool(2, acquire_timeout_ms=0)

    def test_from_config(self, test_config):
        test_config.set("pool.capacity", 4)
        test_config.set("pool.retry_base_delay_ms", 5)
        pool = ResourcePool.from_config(test_config.pool, name="configured")

        assert pool.capacity == 4
        assert pool.retry_policy.base_delay_ms == 5
        assert pool.name == "configured"
        assert pool.state is PoolState.UNINITIALIZED


class TestPoolLifecycle:
    """Test opening, draining and closing."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("capacity,expected", [(10, 3), (2, 2), (1, 1)])
    async def test_open_prewarms(self, make_pool, capacity, expected):
        pool = make_pool(capacity)
        await pool.open()

        stats = pool.get_statistics()
        assert stats.state is PoolState.READY
        assert stats.idle == expected
        assert stats.total == expected
        assert stats.in_use == 0
        assert stats.capacity == capacity
        assert stats.total_operations == 0
        assert stats.successful_operations == 0
        assert stats.failed_operations == 0
        assert stats.retries == 0
        assert stats.resources_created == expected
        await pool.close()

    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, make_pool):
        pool = make_pool(5)
        await pool.open()
        await pool.open()
        assert pool.resources_created == 3
        await pool.close()

    @pytest.mark.asyncio
    async def test_acquire_before_open(self, make_pool):
        pool = make_pool()
        with pytest.raises(PoolNotReadyError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_closed_pool_rejects_work(self, make_pool):
        pool = make_pool()
        await pool.open()
        await pool.close()

        assert pool.state is PoolState.CLOSED
        assert pool.get_statistics().total == 0
        with pytest.raises(PoolClosedError):
            await pool.acquire()
        with pytest.raises(PoolClosedError):
            await pool.execute(flaky(0))
        with pytest.raises(PoolClosedError):
            await pool.open()

    @pytest.mark.asyncio
    async def test_held_resource_rejects_work_after_close(self, make_pool):
        pool = make_pool(1)
        await pool.open()
        held = await pool.acquire()
        await pool.close(timeout=0.01)

        with pytest.raises(PoolClosedError):
            await pool.run_with_retry(held, flaky(0))
        with pytest.raises(PoolClosedError):
            await pool.transact(AsyncMock(), resource=held)

        assert pool.get_statistics().total_operations == 0

    @pytest.mark.asyncio
    async def test_close_unopened_pool(self, make_pool):
        pool = make_pool()
        await pool.close()
        assert pool.state is PoolState.CLOSED

    @pytest.mark.asyncio
    async def test_close_waits_for_in_use_resources(self, make_pool):
        pool = make_pool(2)
        await pool.open()
        resource = await pool.acquire()

        closing = asyncio.create_task(pool.close())
        await asyncio.sleep(0.01)
        assert pool.state is PoolState.DRAINING
        assert not closing.done()
        with pytest.raises(PoolClosedError):
            await pool.acquire()

        await pool.release(resource)
        await closing
        assert pool.state is PoolState.CLOSED

    @pytest.mark.asyncio
    async def test_close_timeout_forces_shutdown(self, make_pool):
        pool = make_pool(1)
        await pool.open()
        resource = await pool.acquire()

        await pool.close(timeout=0.01)
        assert pool.state is PoolState.CLOSED

        # Releasing after a forced close is a no-op
        await pool.release(resource)
        assert pool.get_statistics().total == 0

    @pytest.mark.asyncio
    async def test_close_wakes_waiters(self, make_pool):
        pool = make_pool(1)
        await pool.open()
        resource = await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        closing = asyncio.create_task(pool.close())
        await asyncio.sleep(0.01)

        with pytest.raises(PoolClosedError):
            await waiter

        await pool.release(resource)
        await closing

    @pytest.mark.asyncio
    async def test_handles_closed_on_shutdown(self, make_pool):
        handles = []

        def connector():
            handle = Mock()
            handles.append(handle)
            return handle

        pool = make_pool(2, connector=connector)
        await pool.open()
        await pool.close()

        assert len(handles) == 2
        for handle in handles:
            handle.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_connector_handles(self, make_pool):
        pool = make_pool(2, connector=SimulatedConnector(latency_ms=0))
        await pool.open()
        handles = [resource.handle for resource in pool.resources()]
        await pool.close()

        assert len(handles) == 2
        assert all(handle.closed for handle in handles)

    @pytest.mark.asyncio
    async def test_prewarm_failure_closes_created_handles(self, make_pool):
        handles = []

        def connector():
            if handles:
                raise OperationFailedError("Connection timeout")
            handle = Mock()
            handles.append(handle)
            return handle

        pool = make_pool(3, connector=connector)
        with pytest.raises(OperationFailedError):
            await pool.open()

        assert pool.state is PoolState.UNINITIALIZED
        handles[0].close.assert_called_once()


class TestAcquireRelease:
    """Test acquisition, suspension and release."""

    @pytest.mark.asyncio
    async def test_released_resource_is_reused(self, make_pool):
        pool = make_pool(3, prewarm=0)
        await pool.open()

        first = await pool.acquire()
        await pool.release(first)
        second = await pool.acquire()

        assert first.id == second.id
        assert pool.resources_created == 1
        await pool.release(second)
        await pool.close()

    @pytest.mark.asyncio
    async def test_exhausted_pool_suspends_until_release(self, make_pool):
        pool = make_pool(2, prewarm=0)
        await pool.open()
        first = await pool.acquire()
        await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.05)
        assert not waiter.done()

        await pool.release(first)
        resource = await asyncio.wait_for(waiter, 1)
        assert resource.id == first.id
        assert pool.resources_created == 2

    @pytest.mark.asyncio
    async def test_acquire_timeout(self, make_pool):
        pool = make_pool(1, acquire_timeout_ms=50)
        listener = Mock()
        pool.on("acquire_timeout", listener)
        await pool.open()
        resource = await pool.acquire()

        with pytest.raises(AcquireTimeoutError):
            await pool.acquire()

        assert pool.get_statistics().acquire_timeouts == 1
        listener.assert_called_once_with()

        await pool.release(resource)
        again = await pool.acquire()
        assert again.id == resource.id

    @pytest.mark.asyncio
    async def test_double_release_is_ignored(self, make_pool):
        pool = make_pool(3)
        await pool.open()
        resource = await pool.acquire()

        await pool.release(resource)
        await pool.release(resource)

        stats = pool.get_statistics()
        assert stats.idle == 3
        assert stats.in_use == 0

    @pytest.mark.asyncio
    async def test_release_of_foreign_resource_is_ignored(self, make_pool):
        pool = make_pool(2)
        other = make_pool(2)
        await pool.open()
        await other.open()
        foreign = await other.acquire()

        await pool.release(foreign)
        assert pool.get_statistics().idle == 2
        assert other.get_statistics().in_use == 1

    @pytest.mark.asyncio
    async def test_with_resource_releases_on_error(self, make_pool):
        pool = make_pool(2)
        await pool.open()
        seen = []

        async def action(resource):
            seen.append(resource)
            assert resource.in_use
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await pool.with_resource(action)

        assert pool.get_statistics().in_use == 0
        assert not seen[0].in_use

    @pytest.mark.asyncio
    async def test_connection_context_manager(self, make_pool):
        pool = make_pool(2)
        await pool.open()

        async with pool.connection() as resource:
            assert pool.get_statistics().in_use == 1
            assert resource.in_use

        assert pool.get_statistics().in_use == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_never_exceed_capacity(self, make_pool):
        pool = make_pool(2)
        await pool.open()
        peak = 0

        async def action(resource):
            nonlocal peak
            peak = max(peak, pool.get_statistics().in_use)
            await asyncio.sleep(0.01)
            return resource.id

        results = await asyncio.gather(*(pool.with_resource(action) for _ in range(3)))

        assert len(results) == 3
        assert peak <= 2
        assert pool.resources_created == 2
        assert pool.get_statistics().total == 2

    @pytest.mark.asyncio
    async def test_resources_are_copies(self, make_pool):
        pool = make_pool(1)
        await pool.open()

        snapshot = pool.resources()[0]
        snapshot.in_use = True
        assert pool.get_statistics().in_use == 0


class TestExecute:
    """Test retried execution of units of work."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, make_pool):
        pool = make_pool()
        await pool.open()

        assert await pool.execute(flaky(0, "value")) == "value"
        stats = pool.get_statistics()
        assert stats.total_operations == 1
        assert stats.successful_operations == 1
        assert stats.retries == 0

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, make_pool):
        pool = make_pool()
        await pool.open()
        operation = flaky(2, "recovered")

        assert await pool.execute(operation) == "recovered"

        stats = pool.get_statistics()
        assert stats.total_operations == 3
        assert stats.successful_operations == 1
        assert stats.failed_operations == 2
        assert stats.retries == 2
        assert len(set(operation.calls)) == 1
        assert stats.in_use == 0

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self, make_pool):
        pool = make_pool()
        await pool.open()
        errors = []

        async def operation(resource):
            error = OperationFailedError(f"failure {len(errors) + 1}")
            errors.append(error)
            raise error

        with pytest.raises(OperationFailedError) as exc_info:
            await pool.execute(operation)

        assert exc_info.value is errors[-1]
        stats = pool.get_statistics()
        assert stats.total_operations == 3
        assert stats.failed_operations == 3
        assert stats.retries == 2
        assert stats.in_use == 0

    @pytest.mark.asyncio
    async def test_backoff_is_linear(self, make_pool):
        pool = make_pool(retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=100))
        await pool.open()

        with patch("resource_pool.core.pool.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await pool.execute(flaky(2))

        assert sleep.await_args_list == [call(0.1), call(0.2)]

    @pytest.mark.asyncio
    async def test_per_call_retry_policy(self, make_pool):
        pool = make_pool()
        await pool.open()

        with pytest.raises(OperationFailedError):
            await pool.execute(flaky(1), retry_policy=RetryPolicy(max_attempts=1, base_delay_ms=0))
        assert pool.get_statistics().total_operations == 1

    @pytest.mark.asyncio
    async def test_sync_operation_and_arguments(self, make_pool):
        pool = make_pool()
        await pool.open()

        def operation(resource, a, b, scale=1):
            return (a + b) * scale

        assert await pool.execute(operation, 2, 3, scale=10) == 50

    @pytest.mark.asyncio
    async def test_retry_event(self, make_pool):
        pool = make_pool()
        listener = Mock()
        pool.on("retry", listener)
        await pool.open()

        await pool.execute(flaky(1))

        listener.assert_called_once()
        resource, attempt, error = listener.call_args.args
        assert attempt == 1
        assert isinstance(error, OperationFailedError)

    @pytest.mark.asyncio
    async def test_slow_operation_is_counted_not_cancelled(self, make_pool):
        pool = make_pool(operation_timeout_ms=1)
        await pool.open()

        async def slow(resource):
            await asyncio.sleep(0.02)
            return "finished"

        assert await pool.execute(slow) == "finished"
        assert pool.get_statistics().slow_operations == 1

    @pytest.mark.asyncio
    async def test_run_with_retry_requires_checked_out_resource(self, make_pool):
        pool = make_pool()
        await pool.open()
        resource = await pool.acquire()
        await pool.release(resource)

        with pytest.raises(PoolError):
            await pool.run_with_retry(resource, flaky(0))


class TestTransact:
    """Test transactional execution."""

    @pytest.mark.asyncio
    async def test_commit(self, make_pool):
        pool = make_pool()
        await pool.open()
        flags = []

        async def body(resource):
            flags.append(resource.transaction_active)
            return "committed"

        assert await pool.transact(body) == "committed"
        assert flags == [True]

        stats = pool.get_statistics()
        assert stats.transactions_committed == 1
        assert stats.in_use == 0
        assert not any(resource.transaction_active for resource in pool.resources())

    @pytest.mark.asyncio
    async def test_rollback_reraises_and_releases(self, make_pool):
        pool = make_pool()
        await pool.open()
        failure = OperationFailedError("second step failed")
        steps = []

        async def body(resource):
            steps.append("first")
            raise failure

        with pytest.raises(OperationFailedError) as exc_info:
            await pool.transact(body)

        assert exc_info.value is failure
        assert steps == ["first"]
        stats = pool.get_statistics()
        assert stats.transactions_rolled_back == 1
        assert stats.transactions_committed == 0
        assert stats.in_use == 0
        assert not any(resource.transaction_active for resource in pool.resources())

    @pytest.mark.asyncio
    async def test_rollback_after_partial_success(self, make_pool):
        pool = make_pool()
        await pool.open()
        first_step = flaky(0, result="inserted")
        second_step = flaky(5)
        seen = {}

        async def body(resource):
            seen["first"] = await pool.run_with_retry(resource, first_step)
            seen["resource"] = resource.id
            return await pool.run_with_retry(resource, second_step)

        with pytest.raises(OperationFailedError, match="attempt 3 failed"):
            await pool.transact(body)

        assert seen["first"] == "inserted"
        assert second_step.calls == [seen["resource"]] * 3
        stats = pool.get_statistics()
        assert stats.total_operations == 4
        assert stats.successful_operations == 1
        assert stats.failed_operations == 3
        assert stats.retries == 2
        assert stats.transactions_rolled_back == 1
        assert stats.transactions_committed == 0
        assert stats.in_use == 0
        assert not any(resource.transaction_active for resource in pool.resources())

    @pytest.mark.asyncio
    async def test_nested_transaction_rejected(self, make_pool):
        pool = make_pool()
        await pool.open()
        inner = AsyncMock()

        async def outer(resource):
            await pool.transact(inner)

        with pytest.raises(NestedTransactionError):
            await pool.transact(outer)

        inner.assert_not_called()
        stats = pool.get_statistics()
        assert stats.in_use == 0
        assert stats.transactions_rolled_back == 1
        assert not any(resource.transaction_active for resource in pool.resources())

        # The context is clean again afterwards
        assert await pool.transact(AsyncMock(return_value="again")) == "again"

    @pytest.mark.asyncio
    async def test_resource_already_in_transaction(self, make_pool):
        pool = make_pool()
        await pool.open()
        resource = await pool.acquire()
        entered = asyncio.Event()
        finish = asyncio.Event()

        async def holding(res):
            entered.set()
            await finish.wait()

        holder = asyncio.create_task(pool.transact(holding, resource=resource))
        await entered.wait()

        with pytest.raises(NestedTransactionError):
            await pool.transact(AsyncMock(), resource=resource)

        finish.set()
        await holder
        assert resource.in_use
        assert not resource.transaction_active
        await pool.release(resource)

    @pytest.mark.asyncio
    async def test_concurrent_transactions_in_separate_tasks(self, make_pool):
        pool = make_pool()
        await pool.open()

        async def body(resource):
            await asyncio.sleep(0.01)
            return resource.id

        first, second = await asyncio.gather(pool.transact(body), pool.transact(body))

        assert first != second
        assert pool.get_statistics().transactions_committed == 2

    @pytest.mark.asyncio
    async def test_child_tasks_get_their_own_transactions(self, make_pool):
        pool = make_pool(3)
        await pool.open()

        async def child(resource):
            await asyncio.sleep(0.01)
            return resource.id

        async def parent(resource):
            ids = await asyncio.gather(pool.transact(child), pool.transact(child))
            return resource.id, ids

        parent_id, child_ids = await pool.transact(parent)

        assert len({parent_id, *child_ids}) == 3
        stats = pool.get_statistics()
        assert stats.transactions_committed == 3
        assert stats.in_use == 0

    @pytest.mark.asyncio
    async def test_transaction_is_not_retried(self, make_pool):
        pool = make_pool()
        await pool.open()
        body = AsyncMock(side_effect=OperationFailedError("boom"))

        with pytest.raises(OperationFailedError):
            await pool.transact(body)

        body.assert_awaited_once()
        assert pool.get_statistics().retries == 0


class TestStatisticsAndEvents:
    """Test statistics snapshots, events and metrics."""

    @pytest.mark.asyncio
    async def test_statistics_are_snapshots(self, make_pool):
        pool = make_pool()
        await pool.open()

        stats = pool.get_statistics()
        stats.total_operations = 99
        assert pool.get_statistics().total_operations == 0
        assert stats.to_dict()["state"] == "ready"

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, make_pool):
        pool = make_pool(2)
        events = []
        for name in ("opened", "closing", "closed"):
            pool.on(name, lambda name=name: events.append(name))
        created = Mock()
        pool.on("resource_created", created)

        await pool.open()
        await pool.close()

        assert events == ["opened", "closing", "closed"]
        assert created.call_count == 2

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_pool(self, make_pool):
        pool = make_pool()
        pool.on("opened", Mock(side_effect=RuntimeError("listener bug")))

        await pool.open()
        assert pool.state is PoolState.READY

    @pytest.mark.asyncio
    async def test_failing_retry_listener_does_not_abort_execute(self, make_pool):
        pool = make_pool()
        pool.on("retry", Mock(side_effect=ZeroDivisionError("listener bug")))
        await pool.open()

        assert await pool.execute(flaky(1)) == "ok"
        assert pool.get_statistics().retries == 1

    @pytest.mark.asyncio
    async def test_failing_timeout_listener_keeps_timeout_error(self, make_pool):
        pool = make_pool(1, acquire_timeout_ms=20)
        pool.on("acquire_timeout", Mock(side_effect=ZeroDivisionError("listener bug")))
        await pool.open()
        resource = await pool.acquire()

        with pytest.raises(AcquireTimeoutError):
            await pool.acquire()

        await pool.release(resource)

    def test_unknown_event(self, make_pool):
        with pytest.raises(ValidationError):
            make_pool().on("exploded", Mock())

    @pytest.mark.asyncio
    async def test_off_removes_listener(self, make_pool):
        pool = make_pool()
        listener = Mock()
        pool.on("opened", listener)
        pool.off("opened", listener)

        await pool.open()
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_metrics_exposition(self, make_pool):
        pool = make_pool(name="metered")
        await pool.open()
        await pool.execute(flaky(1))
        await pool.transact(AsyncMock())

        registry = pool.metrics.registry
        assert registry.get_sample_value("pool_operations_total", {"pool": "metered", "status": "success"}) == 1.0
        assert registry.get_sample_value("pool_operations_total", {"pool": "metered", "status": "failure"}) == 1.0
        assert registry.get_sample_value("pool_retries_total", {"pool": "metered"}) == 1.0
        assert registry.get_sample_value("pool_transactions_total", {"pool": "metered", "outcome": "commit"}) == 1.0
        assert registry.get_sample_value("pool_resources_total", {"pool": "metered"}) == 3.0
        assert b"pool_operations_total" in pool.metrics.render()
