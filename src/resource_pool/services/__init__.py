"""Example business services that share one database manager."""

from .notifications import NotificationService, NotificationTransport, SimulatedTransport
from .orders import OrderService
from .rate_limiter import FixedWindowRateLimiter
from .users import UserService

__all__ = [
    "FixedWindowRateLimiter",
    "NotificationService",
    "NotificationTransport",
    "OrderService",
    "SimulatedTransport",
    "UserService",
]
