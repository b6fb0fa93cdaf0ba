"""Bounded asyncio resource pool with retries and transactions."""

__version__ = "0.1.0"

from .config import Config
from .core.pool import PoolState, PoolStatistics, Resource, ResourcePool, RetryPolicy
from .logging import configure_logging, get_logger

__all__ = [
    "Config",
    "PoolState",
    "PoolStatistics",
    "Resource",
    "ResourcePool",
    "RetryPolicy",
    "configure_logging",
    "get_logger",
]
