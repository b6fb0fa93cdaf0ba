"""Monitoring and metrics collection for resource pools."""

from .metrics import PoolMetrics

__all__ = ["PoolMetrics"]
