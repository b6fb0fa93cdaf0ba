"""System-wide constants and default values."""

from typing import Final, Tuple

# Pool Constants
DEFAULT_POOL_CAPACITY: Final[int] = 10
DEFAULT_PREWARM_RESOURCES: Final[int] = 3
DEFAULT_IDLE_TIMEOUT_MS: Final[int] = 30000
DEFAULT_OPERATION_TIMEOUT_MS: Final[int] = 10000
MAX_POOL_CAPACITY: Final[int] = 1000

# Retry Constants
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_BASE_DELAY_MS: Final[int] = 1000

# Simulation Constants
DEFAULT_QUERY_FAILURE_RATE: Final[float] = 0.05
DEFAULT_QUERY_LATENCY_MS: Final[int] = 200
DEFAULT_CONNECT_FAILURE_RATE: Final[float] = 0.1
DEFAULT_CONNECT_LATENCY_MS: Final[int] = 100
EMAIL_FAILURE_RATE: Final[float] = 0.05
SMS_FAILURE_RATE: Final[float] = 0.03
PUSH_FAILURE_RATE: Final[float] = 0.02
EMAIL_LATENCY_MS: Final[int] = 500
SMS_LATENCY_MS: Final[int] = 300
PUSH_LATENCY_MS: Final[int] = 200

# Service Constants
USER_ROLES: Final[Tuple[str, ...]] = ("admin", "customer", "premium")
USER_UPDATABLE_FIELDS: Final[Tuple[str, ...]] = ("name", "email", "role")
MAX_SMS_LENGTH: Final[int] = 160
MIN_PHONE_DIGITS: Final[int] = 10
RATE_LIMIT_WINDOW_SECONDS: Final[int] = 60

# Logging Constants
DEFAULT_LOG_LEVEL: Final[str] = "INFO"
LOG_LEVELS: Final[Tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
