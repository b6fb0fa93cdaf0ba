"""Prometheus metrics for resource pools."""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class PoolMetrics:
    """Prometheus metrics for a single pool.

    Each instance gets its own registry unless one is passed in, so several
    pools can live in the same process without metric name collisions.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, pool_name: str = "default"):
        """Initialize metrics collector."""
        self.registry = registry or CollectorRegistry()
        self.pool_name = pool_name
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up all Prometheus metrics."""
        self.operations_total = Counter(
            'pool_operations_total',
            'Total unit-of-work attempts',
            ['pool', 'status'],
            registry=self.registry
        )

        self.retries_total = Counter(
            'pool_retries_total',
            'Failed attempts that were retried',
            ['pool'],
            registry=self.registry
        )

        self.acquire_timeouts_total = Counter(
            'pool_acquire_timeouts_total',
            'Acquisitions that gave up waiting for a resource',
            ['pool'],
            registry=self.registry
        )

        self.transactions_total = Counter(
            'pool_transactions_total',
            'Finished transactions',
            ['pool', 'outcome'],
            registry=self.registry
        )

        self.resources_in_use = Gauge(
            'pool_resources_in_use',
            'Resources currently handed out',
            ['pool'],
            registry=self.registry
        )

        self.resources_total = Gauge(
            'pool_resources_total',
            'Resources currently owned by the pool',
            ['pool'],
            registry=self.registry
        )

        self.operation_duration_seconds = Histogram(
            'pool_operation_duration_seconds',
            'Duration of a single unit-of-work attempt in seconds',
            ['pool'],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry
        )

    def record_operation(self, duration: float, success: bool):
        """Record one attempt."""
        status = 'success' if success else 'failure'
        self.operations_total.labels(pool=self.pool_name, status=status).inc()
        self.operation_duration_seconds.labels(pool=self.pool_name).observe(duration)

    def record_retry(self):
        self.retries_total.labels(pool=self.pool_name).inc()

    def record_acquire_timeout(self):
        self.acquire_timeouts_total.labels(pool=self.pool_name).inc()

    def record_transaction(self, committed: bool):
        outcome = 'commit' if committed else 'rollback'
        self.transactions_total.labels(pool=self.pool_name, outcome=outcome).inc()

    def update_occupancy(self, in_use: int, total: int):
        """Update resource gauges."""
        self.resources_in_use.labels(pool=self.pool_name).set(in_use)
        self.resources_total.labels(pool=self.pool_name).set(total)

    def render(self) -> bytes:
        """Text exposition of all metrics in this registry."""
        return generate_latest(self.registry)
