"""Bounded resource pool with scoped acquisition, retries and transactions."""

import asyncio
import contextvars
import inspect
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..exceptions import (
    AcquireTimeoutError,
    NestedTransactionError,
    PoolClosedError,
    PoolError,
    PoolNotReadyError,
    ValidationError,
)
from ..logging import get_logger
from ..monitoring.metrics import PoolMetrics
from .constants import (
    DEFAULT_IDLE_TIMEOUT_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPERATION_TIMEOUT_MS,
    DEFAULT_POOL_CAPACITY,
    DEFAULT_PREWARM_RESOURCES,
    DEFAULT_RETRY_BASE_DELAY_MS,
)

logger = get_logger(__name__)

T = TypeVar('T')

POOL_EVENTS = ("opened", "closing", "closed", "resource_created", "acquire_timeout", "retry")

# (pool, resource id, owning task) for open transactions. Child tasks inherit
# the entries but are not their owner.
_active_transactions: contextvars.ContextVar[Tuple[Tuple["ResourcePool", str, Any], ...]] = contextvars.ContextVar(
    "resource_pool_active_transactions", default=()
)


class PoolState(str, Enum):
    """Lifecycle states of a pool."""
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff retry policy: the n-th retry waits ``base_delay_ms * n``."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", {"max_attempts": self.max_attempts})
        if self.base_delay_ms < 0:
            raise ValidationError("base_delay_ms cannot be negative", {"base_delay_ms": self.base_delay_ms})

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt (1-based)."""
        return self.base_delay_ms * attempt / 1000


@dataclass
class Resource:
    """A pooled resource, lent to one caller at a time."""
    id: str
    created_at: datetime
    last_used_at: datetime
    in_use: bool = False
    transaction_active: bool = False
    handle: Any = None


@dataclass
class PoolStatistics:
    """Point-in-time snapshot of pool counters and occupancy."""
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    retries: int = 0
    slow_operations: int = 0
    acquire_timeouts: int = 0
    transactions_committed: int = 0
    transactions_rolled_back: int = 0
    resources_created: int = 0
    idle: int = 0
    in_use: int = 0
    total: int = 0
    capacity: int = 0
    state: PoolState = PoolState.UNINITIALIZED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


_COUNTERS = (
    "total_operations",
    "successful_operations",
    "failed_operations",
    "retries",
    "slow_operations",
    "acquire_timeouts",
    "transactions_committed",
    "transactions_rolled_back",
)


class ResourcePool:
    """Owns up to ``capacity`` resources and arbitrates access to them.

    Resources are created lazily, reused once released and destroyed only
    when the pool closes. Callers that find the pool exhausted wait on a
    condition that is notified on every release, bounded by
    ``acquire_timeout_ms`` when one is configured.

    ``connector`` is an optional callable (sync or async) producing the
    object stored in ``Resource.handle``; handles exposing ``close()`` are
    closed on shutdown.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_POOL_CAPACITY,
        *,
        acquire_timeout_ms: Optional[int] = None,
        idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS,
        operation_timeout_ms: int = DEFAULT_OPERATION_TIMEOUT_MS,
        retry_policy: Optional[RetryPolicy] = None,
        prewarm: int = DEFAULT_PREWARM_RESOURCES,
        connector: Optional[Callable[[], Any]] = None,
        metrics: Optional[PoolMetrics] = None,
        name: str = "default",
    ):
        """Initialize the pool. No resources exist until ``open()``."""
        if not isinstance(capacity, int) or capacity <= 0:
            raise ValidationError("Pool capacity must be a positive integer", {"capacity": capacity})
        if acquire_timeout_ms is not None and acquire_timeout_ms <= 0:
            raise ValidationError("acquire_timeout_ms must be positive", {"acquire_timeout_ms": acquire_timeout_ms})
        if prewarm < 0:
            raise ValidationError("prewarm cannot be negative", {"prewarm": prewarm})

        self.name = name
        self._capacity = capacity
        self.acquire_timeout_ms = acquire_timeout_ms
        self.idle_timeout_ms = idle_timeout_ms
        self.operation_timeout_ms = operation_timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()
        self.prewarm = prewarm
        self.metrics = metrics or PoolMetrics(pool_name=name)

        self._connector = connector
        self._resources: Dict[str, Resource] = {}
        self._pending_creates = 0
        self._resources_created = 0
        self._state = PoolState.UNINITIALIZED
        self._condition = asyncio.Condition()
        self._lifecycle_lock = asyncio.Lock()
        self._stats: Dict[str, int] = dict.fromkeys(_COUNTERS, 0)
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}

    @classmethod
    def from_config(cls, pool_config, **kwargs) -> "ResourcePool":
        """Build a pool from a ``PoolConfig`` settings section."""
        return cls(
            capacity=pool_config.capacity,
            acquire_timeout_ms=pool_config.acquire_timeout_ms,
            idle_timeout_ms=pool_config.idle_timeout_ms,
            operation_timeout_ms=pool_config.operation_timeout_ms,
            retry_policy=RetryPolicy(
                max_attempts=pool_config.retry_max_attempts,
                base_delay_ms=pool_config.retry_base_delay_ms,
            ),
            prewarm=pool_config.prewarm,
            **kwargs,
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def resources_created(self) -> int:
        """Number of resources created over the pool's lifetime."""
        return self._resources_created

    # Lifecycle

    async def open(self) -> None:
        """Move the pool to Ready, pre-warming ``min(prewarm, capacity)`` resources."""
        async with self._lifecycle_lock:
            if self._state is PoolState.READY:
                return
            if self._state in (PoolState.DRAINING, PoolState.CLOSED):
                raise PoolClosedError("Cannot reopen a closed pool", {"pool": self.name})

            created: List[Resource] = []
            try:
                for _ in range(min(self.prewarm, self._capacity)):
                    created.append(await self._create_resource())
            except Exception as e:
                logger.error("Failed to pre-warm resource pool", pool=self.name, error=str(e))
                for resource in created:
                    await self._close_handle(resource)
                raise

            async with self._condition:
                for resource in created:
                    self._resources[resource.id] = resource
                self._state = PoolState.READY

        self._update_occupancy()
        logger.info("Resource pool opened", pool=self.name, capacity=self._capacity, prewarmed=len(created))
        self._emit("opened")

    async def close(self, timeout: Optional[float] = None) -> None:
        """Drain and close the pool.

        New acquisitions fail immediately and suspended waiters are woken with
        ``PoolClosedError``. Resources still in use are awaited (up to
        ``timeout`` seconds when given) before every resource is destroyed.
        """
        async with self._lifecycle_lock:
            if self._state is PoolState.CLOSED:
                return
            if self._state is PoolState.UNINITIALIZED:
                self._state = PoolState.CLOSED
                logger.info("Resource pool closed before it was opened", pool=self.name)
                return

            async with self._condition:
                self._state = PoolState.DRAINING
                self._condition.notify_all()
            logger.info("Resource pool draining", pool=self.name, in_use=self._in_use_count())
            self._emit("closing")

            async with self._condition:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(
                            lambda: self._in_use_count() == 0 and self._pending_creates == 0
                        ),
                        timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Drain timed out, closing resources still in use",
                        pool=self.name,
                        in_use=self._in_use_count(),
                    )
                resources = list(self._resources.values())
                self._resources.clear()
                self._state = PoolState.CLOSED

        for resource in resources:
            await self._close_handle(resource)

        self._update_occupancy()
        logger.info("Resource pool closed", pool=self.name, destroyed=len(resources))
        self._emit("closed")

    # Acquisition

    async def acquire(self) -> Resource:
        """Check out a resource, waiting for a release when the pool is exhausted."""
        loop = asyncio.get_running_loop()
        deadline = None
        if self.acquire_timeout_ms is not None:
            deadline = loop.time() + self.acquire_timeout_ms / 1000

        async with self._condition:
            while True:
                self._ensure_accepting()

                resource = self._take_idle()
                if resource is not None:
                    self._update_occupancy()
                    return resource

                if len(self._resources) + self._pending_creates < self._capacity:
                    # Reserve the slot before the possibly slow creation
                    self._pending_creates += 1
                    break

                remaining = None if deadline is None else deadline - loop.time()
                try:
                    if remaining is not None and remaining <= 0:
                        raise asyncio.TimeoutError()
                    await asyncio.wait_for(self._condition.wait(), remaining)
                except asyncio.TimeoutError:
                    # Pass on a wake-up this waiter may have consumed
                    if self._has_idle():
                        self._condition.notify()
                    self._stats["acquire_timeouts"] += 1
                    self.metrics.record_acquire_timeout()
                    logger.warning(
                        "Timed out waiting for a resource",
                        pool=self.name,
                        timeout_ms=self.acquire_timeout_ms,
                    )
                    self._emit("acquire_timeout")
                    raise AcquireTimeoutError(
                        "No resource became available in time",
                        {"pool": self.name, "timeout_ms": self.acquire_timeout_ms, "capacity": self._capacity},
                    )

        try:
            resource = await self._create_resource()
        except BaseException:
            async with self._condition:
                self._pending_creates -= 1
                self._condition.notify_all()
            raise

        async with self._condition:
            self._pending_creates -= 1
            if self._state is not PoolState.READY:
                self._condition.notify_all()
                closed = True
            else:
                resource.in_use = True
                resource.last_used_at = datetime.now()
                self._resources[resource.id] = resource
                closed = False

        if closed:
            await self._close_handle(resource)
            raise PoolClosedError("Pool closed while a resource was being created", {"pool": self.name})

        self._update_occupancy()
        return resource

    async def release(self, resource: Resource) -> None:
        """Return a resource to the pool. Unknown or already idle handles are ignored."""
        async with self._condition:
            tracked = self._resources.get(resource.id) if resource is not None else None
            if tracked is None or not tracked.in_use:
                logger.debug(
                    "Ignoring release of untracked or idle resource",
                    pool=self.name,
                    resource_id=getattr(resource, "id", None),
                )
                return

            tracked.in_use = False
            tracked.last_used_at = datetime.now()
            if self._state is PoolState.READY:
                self._condition.notify()
            else:
                self._condition.notify_all()

        self._update_occupancy()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Resource]:
        """Scoped acquisition: the resource is released on every exit path."""
        resource = await self.acquire()
        try:
            yield resource
        finally:
            await self.release(resource)

    async def with_resource(self, action: Callable[[Resource], Awaitable[T]]) -> T:
        """Run ``action`` with a checked-out resource and release it afterwards."""
        async with self.connection() as resource:
            return await action(resource)

    # Work execution

    async def execute(
        self,
        operation: Callable[..., Any],
        *args: Any,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> Any:
        """Run ``operation(resource, *args, **kwargs)`` on one resource with retries."""
        async def _run(resource: Resource) -> Any:
            return await self.run_with_retry(resource, operation, *args, retry_policy=retry_policy, **kwargs)

        return await self.with_resource(_run)

    async def run_with_retry(
        self,
        resource: Resource,
        operation: Callable[..., Any],
        *args: Any,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> Any:
        """Attempt ``operation`` on an already checked-out resource.

        Every attempt is counted. After the final failed attempt the last
        error is re-raised unchanged.
        """
        self._ensure_not_closed()
        self._ensure_checked_out(resource)
        policy = retry_policy or self.retry_policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            started = time.perf_counter()
            try:
                result = operation(resource, *args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                self._record_attempt(time.perf_counter() - started, success=False)
                last_error = e
                if attempt < policy.max_attempts:
                    delay = policy.delay_for(attempt)
                    self._stats["retries"] += 1
                    self.metrics.record_retry()
                    logger.warning(
                        "Operation attempt failed, retrying",
                        pool=self.name,
                        resource_id=resource.id,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay_ms=int(delay * 1000),
                        error=str(e),
                    )
                    self._emit("retry", resource, attempt, e)
                    await asyncio.sleep(delay)
                continue

            self._record_attempt(time.perf_counter() - started, success=True)
            resource.last_used_at = datetime.now()
            return result

        logger.error(
            "Operation failed after all attempts",
            pool=self.name,
            resource_id=resource.id,
            attempts=policy.max_attempts,
            error=str(last_error),
        )
        raise last_error

    async def transact(
        self,
        body: Callable[[Resource], Awaitable[T]],
        resource: Optional[Resource] = None,
    ) -> T:
        """Run ``body`` inside a transaction.

        On success the transaction commits, on failure it rolls back and the
        original error is re-raised. No retries are applied here. When
        ``resource`` is given it must already be checked out by the caller and
        stays checked out afterwards.
        """
        active = _active_transactions.get()
        task = asyncio.current_task()
        for pool, resource_id, owner in active:
            if pool is self and owner is task:
                raise NestedTransactionError(
                    "A transaction is already active in this task",
                    {"pool": self.name, "resource_id": resource_id},
                )

        if resource is not None:
            if resource.transaction_active:
                raise NestedTransactionError(
                    "Resource is already inside a transaction",
                    {"pool": self.name, "resource_id": resource.id},
                )
            self._ensure_not_closed()
            self._ensure_checked_out(resource)
            return await self._run_transaction(resource, body, active)

        async with self.connection() as acquired:
            return await self._run_transaction(acquired, body, active)

    async def _run_transaction(self, resource: Resource, body, active) -> Any:
        resource.transaction_active = True
        token = _active_transactions.set(active + ((self, resource.id, asyncio.current_task()),))
        try:
            result = await body(resource)
        except Exception as e:
            self._stats["transactions_rolled_back"] += 1
            self.metrics.record_transaction(committed=False)
            logger.warning("Transaction rolled back", pool=self.name, resource_id=resource.id, error=str(e))
            raise
        finally:
            _active_transactions.reset(token)
            resource.transaction_active = False

        self._stats["transactions_committed"] += 1
        self.metrics.record_transaction(committed=True)
        logger.debug("Transaction committed", pool=self.name, resource_id=resource.id)
        return result

    # Introspection

    def get_statistics(self) -> PoolStatistics:
        """Snapshot of counters plus live occupancy."""
        in_use = self._in_use_count()
        total = len(self._resources)
        return PoolStatistics(
            **self._stats,
            resources_created=self._resources_created,
            idle=total - in_use,
            in_use=in_use,
            total=total,
            capacity=self._capacity,
            state=self._state,
        )

    def resources(self) -> List[Resource]:
        """Copies of the tracked resources."""
        return [replace(resource) for resource in self._resources.values()]

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """Register a listener for a pool event."""
        if event not in POOL_EVENTS:
            raise ValidationError(f"Unknown pool event: {event}", {"events": list(POOL_EVENTS)})
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    # Internals

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception as e:
                logger.error("Pool event listener failed", pool=self.name, pool_event=event, error=str(e))

    def _ensure_accepting(self) -> None:
        if self._state is PoolState.UNINITIALIZED:
            raise PoolNotReadyError("Pool has not been opened", {"pool": self.name})
        if self._state is not PoolState.READY:
            raise PoolClosedError("Pool is closed", {"pool": self.name, "state": self._state.value})

    def _ensure_not_closed(self) -> None:
        if self._state is PoolState.CLOSED:
            raise PoolClosedError("Pool is closed", {"pool": self.name})

    def _ensure_checked_out(self, resource: Resource) -> None:
        tracked = self._resources.get(resource.id)
        if tracked is None or not tracked.in_use:
            raise PoolError(
                "Resource is not checked out from this pool",
                {"pool": self.name, "resource_id": resource.id},
            )

    def _take_idle(self) -> Optional[Resource]:
        for resource in self._resources.values():
            if not resource.in_use:
                resource.in_use = True
                resource.last_used_at = datetime.now()
                return resource
        return None

    def _has_idle(self) -> bool:
        return any(not resource.in_use for resource in self._resources.values())

    def _in_use_count(self) -> int:
        return sum(1 for resource in self._resources.values() if resource.in_use)

    def _update_occupancy(self) -> None:
        self.metrics.update_occupancy(self._in_use_count(), len(self._resources))

    def _record_attempt(self, duration: float, success: bool) -> None:
        self._stats["total_operations"] += 1
        self._stats["successful_operations" if success else "failed_operations"] += 1
        self.metrics.record_operation(duration, success)
        if duration * 1000 > self.operation_timeout_ms:
            self._stats["slow_operations"] += 1
            logger.warning(
                "Operation exceeded its timeout",
                pool=self.name,
                duration_ms=int(duration * 1000),
                timeout_ms=self.operation_timeout_ms,
            )

    async def _create_resource(self) -> Resource:
        """Create a new resource, connecting its handle when a connector is set."""
        handle = None
        if self._connector is not None:
            handle = self._connector()
            if inspect.isawaitable(handle):
                handle = await handle
        now = datetime.now()
        resource = Resource(id=f"conn_{uuid.uuid4().hex[:12]}", created_at=now, last_used_at=now, handle=handle)
        self._resources_created += 1
        logger.debug("Created new resource", pool=self.name, resource_id=resource.id)
        self._emit("resource_created", resource)
        return resource

    async def _close_handle(self, resource: Resource) -> None:
        handle = resource.handle
        if handle is None or not hasattr(handle, 'close'):
            return
        try:
            if inspect.iscoroutinefunction(handle.close):
                await handle.close()
            else:
                handle.close()
        except Exception as e:
            logger.error("Failed to close resource handle", pool=self.name, resource_id=resource.id, error=str(e))

    def __repr__(self) -> str:
        return f"ResourcePool(name: {self.name}, state: {self._state.value}, size: {len(self._resources)}/{self._capacity})"
