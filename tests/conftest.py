"""Pytest configuration and fixtures."""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from resource_pool.config import Config
from resource_pool.core.pool import ResourcePool, RetryPolicy
from resource_pool.database.backend import QueryResult
from resource_pool.exceptions import OperationFailedError, NotificationError

Rows = Union[List[Dict[str, Any]], Callable[[str, Sequence[Any]], List[Dict[str, Any]]]]


class FakeBackend:
    """Deterministic query backend.

    ``responses`` maps a query fragment to the rows to return; the first
    fragment found in the query wins. Unmatched writes return one row with a
    sequential id, unmatched reads return no rows.
    """

    def __init__(self, responses: Optional[Dict[str, Rows]] = None, failures: int = 0, handshake_error: Optional[Exception] = None):
        self.responses = responses or {}
        self.failures = failures
        self.handshake_error = handshake_error
        self.handshakes = 0
        self.calls: List[Tuple[str, str, Tuple[Any, ...]]] = []
        self._next_id = 0

    async def handshake(self) -> None:
        self.handshakes += 1
        if self.handshake_error is not None:
            raise self.handshake_error

    async def run(self, resource, query: str, params: Sequence[Any] = ()) -> QueryResult:
        self.calls.append((resource.id, query, tuple(params)))
        if self.failures:
            self.failures -= 1
            raise OperationFailedError("Query execution failed")

        for fragment, rows in self.responses.items():
            if fragment in query:
                found = rows(query, params) if callable(rows) else rows
                return QueryResult(rows=list(found), row_count=len(found), query=query, params=tuple(params))

        if query.strip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            self._next_id += 1
            return QueryResult(rows=[{"id": self._next_id}], row_count=1, query=query, params=tuple(params))
        return QueryResult(rows=[], row_count=0, query=query, params=tuple(params))

    def queries_containing(self, fragment: str) -> List[Tuple[str, str, Tuple[Any, ...]]]:
        return [call for call in self.calls if fragment in call[1]]


class FakeTransport:
    """Notification transport that records payloads and can be told to fail."""

    def __init__(self, fail_channels: Sequence[str] = ()):
        self.fail_channels = set(fail_channels)
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if channel in self.fail_channels:
            raise NotificationError(f"{channel} unavailable")
        self.sent.append((channel, payload))
        return {"message_id": f"{channel}_{len(self.sent)}", "status": "sent", "timestamp": "2024-01-01T00:00:00"}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_retry():
    """Retry policy without real backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay_ms=0)


@pytest.fixture
def make_pool(fast_retry):
    """Factory for unopened pools with test-friendly defaults."""
    def _make(capacity: int = 3, **kwargs) -> ResourcePool:
        kwargs.setdefault("retry_policy", fast_retry)
        return ResourcePool(capacity, **kwargs)
    return _make


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def test_config(monkeypatch, tmp_path):
    """Configuration isolated from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    for name in ("POOL_CAPACITY", "POOL_PREWARM", "LOG_LEVEL", "LOG_FORMAT", "ENVIRONMENT"):
        monkeypatch.delenv(name, raising=False)
    return Config.load()


@pytest.fixture
def make_backend():
    """Factory for fake backends with scripted responses or failures."""
    return FakeBackend


@pytest.fixture
def make_transport():
    return FakeTransport
