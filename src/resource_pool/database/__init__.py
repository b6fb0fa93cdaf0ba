"""Database facade and simulated backend."""

from .backend import QueryBackend, QueryResult, SimulatedBackend, SimulatedConnection, SimulatedConnector
from .manager import DatabaseManager

__all__ = [
    "DatabaseManager",
    "QueryBackend",
    "QueryResult",
    "SimulatedBackend",
    "SimulatedConnection",
    "SimulatedConnector",
]
