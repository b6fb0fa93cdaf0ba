"""Database manager: query and transaction facade over a resource pool."""

from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from ..core.pool import PoolState, Resource, ResourcePool
from ..exceptions import ValidationError
from ..logging import get_logger
from .backend import QueryBackend, QueryResult

logger = get_logger(__name__)

T = TypeVar('T')


class DatabaseManager:
    """Runs queries through a pool of simulated connections."""

    def __init__(self, pool: ResourcePool, backend: QueryBackend):
        self.pool = pool
        self.backend = backend
        self._stats: Dict[str, int] = {
            "total_queries": 0,
            "successful_queries": 0,
            "failed_queries": 0,
            "connection_errors": 0,
        }

    async def connect(self) -> None:
        """Open the pool after a backend handshake. No-op when already connected."""
        if self.pool.state is PoolState.READY:
            return
        try:
            await self.backend.handshake()
            await self.pool.open()
        except Exception as e:
            self._stats["connection_errors"] += 1
            logger.error("Database connection failed", error=str(e))
            raise
        logger.info("Database connected", pool=self.pool.name)

    async def disconnect(self) -> None:
        await self.pool.close()
        logger.info("Database disconnected", pool=self.pool.name)

    def is_connected(self) -> bool:
        return self.pool.state is PoolState.READY

    async def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        connection: Optional[Resource] = None,
    ) -> QueryResult:
        """Execute a query with retries.

        Inside a transaction pass the transaction's ``connection`` so the
        query runs on it instead of checking out another resource.
        """
        if not sql or not isinstance(sql, str) or not sql.strip():
            raise ValidationError("Query must be a non-empty string")

        self._stats["total_queries"] += 1
        if connection is None and self.pool.state is PoolState.UNINITIALIZED:
            await self.connect()

        try:
            if connection is None:
                result = await self.pool.execute(self.backend.run, sql, tuple(params))
            else:
                result = await self.pool.run_with_retry(connection, self.backend.run, sql, tuple(params))
        except Exception as e:
            self._stats["failed_queries"] += 1
            logger.error("Query failed", error=str(e))
            raise

        self._stats["successful_queries"] += 1
        return result

    async def transaction(self, callback: Callable[[Resource], Awaitable[T]]) -> T:
        """Run ``callback(connection)`` in a pool transaction."""
        if not callable(callback):
            raise ValidationError("Transaction callback must be callable")
        if self.pool.state is PoolState.UNINITIALIZED:
            await self.connect()
        return await self.pool.transact(callback)

    def get_stats(self) -> Dict[str, Any]:
        """Manager counters merged with the pool's statistics."""
        return {**self._stats, "pool": self.pool.get_statistics().to_dict()}

    def __repr__(self) -> str:
        return f"DatabaseManager(pool: {self.pool!r})"
