"""Configuration management for the resource pool and its services."""

import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError, ValidationError
from .core.constants import (
    DEFAULT_IDLE_TIMEOUT_MS,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPERATION_TIMEOUT_MS,
    DEFAULT_POOL_CAPACITY,
    DEFAULT_PREWARM_RESOURCES,
    DEFAULT_QUERY_FAILURE_RATE,
    DEFAULT_QUERY_LATENCY_MS,
    DEFAULT_RETRY_BASE_DELAY_MS,
    LOG_LEVELS,
    MAX_POOL_CAPACITY,
)


_SETTINGS_CONFIG = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
    case_sensitive=False,
    populate_by_name=True,
    validate_assignment=True,
)


class PoolConfig(BaseSettings):
    """Resource pool settings."""

    capacity: int = Field(default=DEFAULT_POOL_CAPACITY, alias="POOL_CAPACITY", gt=0, le=MAX_POOL_CAPACITY)
    prewarm: int = Field(default=DEFAULT_PREWARM_RESOURCES, alias="POOL_PREWARM", ge=0)
    acquire_timeout_ms: Optional[int] = Field(default=None, alias="POOL_ACQUIRE_TIMEOUT_MS", gt=0)
    idle_timeout_ms: int = Field(default=DEFAULT_IDLE_TIMEOUT_MS, alias="POOL_IDLE_TIMEOUT_MS", gt=0)
    operation_timeout_ms: int = Field(default=DEFAULT_OPERATION_TIMEOUT_MS, alias="POOL_OPERATION_TIMEOUT_MS", gt=0)

    # Retry policy for execute()
    retry_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, alias="POOL_RETRY_MAX_ATTEMPTS", gt=0, le=20)
    retry_base_delay_ms: int = Field(default=DEFAULT_RETRY_BASE_DELAY_MS, alias="POOL_RETRY_BASE_DELAY_MS", ge=0)

    model_config = _SETTINGS_CONFIG


class DatabaseConfig(BaseSettings):
    """Database connection settings and simulated backend behaviour."""

    host: str = Field(default="localhost", alias="DB_HOST", min_length=1)
    port: int = Field(default=5432, alias="DB_PORT", gt=0, le=65535)
    name: str = Field(default="myapp", alias="DB_NAME")
    user: str = Field(default="postgres", alias="DB_USER")
    password: str = Field(default="", alias="DB_PASSWORD")
    ssl: bool = Field(default=False, alias="DB_SSL")

    # Simulation knobs
    failure_rate: float = Field(default=DEFAULT_QUERY_FAILURE_RATE, alias="DB_SIMULATED_FAILURE_RATE", ge=0.0, le=1.0)
    latency_ms: int = Field(default=DEFAULT_QUERY_LATENCY_MS, alias="DB_SIMULATED_LATENCY_MS", ge=0)

    model_config = _SETTINGS_CONFIG


class NotificationConfig(BaseSettings):
    """Notification service settings."""

    email_provider: str = Field(default="smtp", alias="EMAIL_PROVIDER")
    email_host: str = Field(default="smtp.gmail.com", alias="EMAIL_HOST")
    email_port: int = Field(default=587, alias="EMAIL_PORT", gt=0, le=65535)
    email_from: str = Field(default="noreply@example.com", alias="EMAIL_FROM")
    sms_provider: str = Field(default="twilio", alias="SMS_PROVIDER")
    sms_from: str = Field(default="+1234567890", alias="SMS_FROM")
    push_provider: str = Field(default="firebase", alias="PUSH_PROVIDER")

    rate_limit_per_minute: int = Field(default=100, alias="NOTIFICATION_RATE_LIMIT", gt=0)
    batch_size: int = Field(default=10, alias="NOTIFICATION_BATCH_SIZE", gt=0)
    batch_delay_ms: int = Field(default=1000, alias="NOTIFICATION_BATCH_DELAY_MS", ge=0)
    enable_logging: bool = Field(default=True, alias="ENABLE_NOTIFICATION_LOGGING")

    model_config = _SETTINGS_CONFIG


class OrderConfig(BaseSettings):
    """Order service settings."""

    max_order_value: float = Field(default=10000.0, alias="MAX_ORDER_VALUE", gt=0)
    tax_rate: float = Field(default=0.08, alias="ORDER_TAX_RATE", ge=0.0, le=1.0)
    shipping_cost: float = Field(default=5.99, alias="ORDER_SHIPPING_COST", ge=0.0)
    free_shipping_threshold: float = Field(default=50.0, alias="ORDER_FREE_SHIPPING_THRESHOLD", ge=0.0)

    model_config = _SETTINGS_CONFIG


class UserConfig(BaseSettings):
    """User service settings."""

    max_users: int = Field(default=1000, alias="MAX_USERS", gt=0)
    enable_audit_log: bool = Field(default=True, alias="ENABLE_AUDIT_LOG")

    model_config = _SETTINGS_CONFIG


class AppConfig(BaseSettings):
    """Application configuration settings."""

    name: str = Field(default="Resource Pool Demo", alias="APP_NAME")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Logging
    log_level: str = Field(default=DEFAULT_LOG_LEVEL, alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")

    model_config = _SETTINGS_CONFIG

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Restrict environment to the known deployment stages."""
        if v not in ("development", "staging", "production", "test"):
            raise ValueError("environment must be one of development, staging, production, test")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Validate the log renderer name."""
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v


class Config:
    """Main configuration class with dot-path access across sections."""

    SECTIONS = ("app", "pool", "database", "notifications", "orders", "users")

    def __init__(self) -> None:
        self.reset()

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Config":
        """Load configuration from environment, .env file and an optional JSON file.

        An explicitly given file must be readable JSON; otherwise
        ``ConfigurationError`` is raised.
        """
        instance = cls()
        if path is not None:
            instance.load_from_file(path, required=True)
        return instance

    def reset(self) -> None:
        """Re-read defaults and the environment, dropping extras and file values."""
        self.app = AppConfig()
        self.pool = PoolConfig()
        self.database = DatabaseConfig()
        self.notifications = NotificationConfig()
        self.orders = OrderConfig()
        self.users = UserConfig()
        self._extras: Dict[str, Any] = {}
        self._loaded = False
        self.rejected_keys: List[str] = []

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dot-separated path, e.g. ``pool.capacity``."""
        parts = self._split_key(key)
        head, rest = parts[0], parts[1:]

        if head in self.SECTIONS and rest:
            section = getattr(self, head)
            if rest[0] in type(section).model_fields:
                value = getattr(section, rest[0])
                return self._walk(value, rest[1:], default)
        elif head in self.SECTIONS:
            return getattr(self, head).model_dump()

        return self._walk(self._extras, parts, default)

    def set(self, key: str, value: Any) -> bool:
        """Set a value by dot-separated path.

        Known settings are validated against their section; an invalid value
        leaves the configuration untouched and returns False. Unknown keys are
        stored as free-form extras.
        """
        parts = self._split_key(key)

        if parts[0] in self.SECTIONS and len(parts) == 2:
            section = getattr(self, parts[0])
            if parts[1] in type(section).model_fields:
                try:
                    setattr(section, parts[1], value)
                except PydanticValidationError:
                    return False
                return True

        current = self._extras
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value
        return True

    def load_from_file(self, path: Union[str, Path], required: bool = False) -> bool:
        """Merge settings from a JSON file.

        A missing or unreadable file keeps the current configuration and
        returns False, or raises ``ConfigurationError`` when ``required``.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            if required:
                raise ConfigurationError.from_exception(
                    "Cannot read configuration file", e, {"path": str(path)}
                )
            return False
        if not isinstance(data, dict):
            if required:
                raise ConfigurationError("Configuration file must contain a JSON object", {"path": str(path)})
            return False

        for key, value in self._flatten(data):
            if not self.set(key, value):
                self.rejected_keys.append(key)

        self._loaded = True
        return True

    def as_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the whole configuration."""
        result = copy.deepcopy(self._extras)
        for name in self.SECTIONS:
            extras = result.get(name)
            section = getattr(self, name).model_dump()
            result[name] = {**extras, **section} if isinstance(extras, dict) else section
        return result

    def is_loaded(self) -> bool:
        """Whether a configuration file has been merged."""
        return self._loaded

    def _split_key(self, key: str):
        if not key or not isinstance(key, str):
            raise ValidationError("Configuration key must be a non-empty string")
        return key.split(".")

    @staticmethod
    def _walk(value: Any, parts, default: Any) -> Any:
        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    @classmethod
    def _flatten(cls, data: Dict[str, Any], prefix: str = ""):
        for key, value in data.items():
            path = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                yield from cls._flatten(value, path)
            else:
                yield path, value

    def __str__(self) -> str:
        return f"Config(loaded: {self._loaded}, sections: {', '.join(self.SECTIONS)})"
