"""Fixed window rate limiting for outgoing notifications."""

import time
from typing import Any, Callable, Dict

from ..core.constants import RATE_LIMIT_WINDOW_SECONDS
from ..exceptions import RateLimitExceededError


class FixedWindowRateLimiter:
    """
    Fixed window algorithm.
    Simple but can have burst issues at window boundaries.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._count = 0
        self._reset_at = clock() + window_seconds

    def check(self, cost: int = 1) -> None:
        """Consume ``cost`` from the current window or raise when it is used up."""
        self._roll_window()
        if self._count + cost > self.limit:
            raise RateLimitExceededError(
                f"Rate limit exceeded. Maximum {self.limit} notifications per window.",
                {"limit": self.limit, "retry_after": round(self._reset_at - self._clock(), 3)},
            )
        self._count += cost

    @property
    def remaining(self) -> int:
        self._roll_window()
        return self.limit - self._count

    @property
    def reset_at(self) -> float:
        """Clock value at which the current window ends."""
        self._roll_window()
        return self._reset_at

    def snapshot(self) -> Dict[str, Any]:
        self._roll_window()
        return {
            "current": self._count,
            "limit": self.limit,
            "reset_in": max(0.0, self._reset_at - self._clock()),
        }

    def _roll_window(self) -> None:
        now = self._clock()
        if now >= self._reset_at:
            self._count = 0
            self._reset_at = now + self.window_seconds
