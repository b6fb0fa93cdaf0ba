"""Simulated database backend used as the pool's unit of work."""

import asyncio
import itertools
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..core.constants import (
    DEFAULT_CONNECT_FAILURE_RATE,
    DEFAULT_CONNECT_LATENCY_MS,
    DEFAULT_QUERY_FAILURE_RATE,
    DEFAULT_QUERY_LATENCY_MS,
)
from ..core.pool import Resource
from ..exceptions import OperationFailedError
from ..logging import get_logger

logger = get_logger(__name__)

WRITE_STATEMENTS = ("INSERT", "UPDATE", "DELETE")


@dataclass
class QueryResult:
    """Rows returned by a query."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    query: str = ""
    params: Sequence[Any] = ()

    @property
    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


class QueryBackend(Protocol):
    """Anything that can run a query against a pooled resource."""

    async def handshake(self) -> None:
        ...

    async def run(self, resource: Resource, query: str, params: Sequence[Any] = ()) -> QueryResult:
        ...


@dataclass
class SimulatedConnection:
    """Handle stored on each pooled resource by ``SimulatedConnector``."""
    host: str
    port: int
    database: str
    closed: bool = False

    async def close(self) -> None:
        await asyncio.sleep(0)
        self.closed = True


class SimulatedConnector:
    """Connector for ``ResourcePool`` that fabricates connection handles."""

    def __init__(self, host: str = "localhost", port: int = 5432, database: str = "myapp", latency_ms: int = DEFAULT_CONNECT_LATENCY_MS):
        self.host = host
        self.port = port
        self.database = database
        self.latency_ms = latency_ms

    async def __call__(self) -> SimulatedConnection:
        await asyncio.sleep(self.latency_ms / 1000)
        return SimulatedConnection(host=self.host, port=self.port, database=self.database)


class SimulatedBackend:
    """Random-latency, random-failure stand-in for a SQL database.

    Reads return two example rows (or a single ``total`` row for
    ``SELECT COUNT``); writes return one row carrying a fresh sequential id.
    """

    def __init__(
        self,
        failure_rate: float = DEFAULT_QUERY_FAILURE_RATE,
        latency_ms: int = DEFAULT_QUERY_LATENCY_MS,
        connect_failure_rate: float = DEFAULT_CONNECT_FAILURE_RATE,
        rng: Optional[random.Random] = None,
    ):
        self.failure_rate = failure_rate
        self.latency_ms = latency_ms
        self.connect_failure_rate = connect_failure_rate
        self._rng = rng or random.Random()
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, database_config, rng: Optional[random.Random] = None) -> "SimulatedBackend":
        return cls(failure_rate=database_config.failure_rate, latency_ms=database_config.latency_ms, rng=rng)

    async def handshake(self) -> None:
        """Simulate establishing the server session."""
        await asyncio.sleep(self.latency_ms / 1000)
        if self._rng.random() < self.connect_failure_rate:
            raise OperationFailedError("Connection timeout")

    async def run(self, resource: Resource, query: str, params: Sequence[Any] = ()) -> QueryResult:
        await asyncio.sleep(self.latency_ms / 1000)
        if self._rng.random() < self.failure_rate:
            raise OperationFailedError("Query execution failed", {"resource_id": resource.id})

        rows = self._fabricate_rows(query)
        logger.debug("Query executed", resource_id=resource.id, row_count=len(rows))
        return QueryResult(rows=rows, row_count=len(rows), query=query, params=tuple(params))

    def _fabricate_rows(self, query: str) -> List[Dict[str, Any]]:
        statement = query.strip().upper()
        if statement.startswith(WRITE_STATEMENTS):
            return [{"id": next(self._ids)}]
        if statement.startswith("SELECT COUNT"):
            return [{"total": 2}]
        return [
            {"id": 1, "name": "Example Row 1"},
            {"id": 2, "name": "Example Row 2"},
        ]
