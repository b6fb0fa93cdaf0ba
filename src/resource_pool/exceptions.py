"""Custom exceptions for the resource pool and its services."""

from typing import Any, Dict, Optional


class ResourcePoolError(Exception):
    """Base exception for resource pool errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, cause: Optional[Exception] = None):
        """Initialize with message, optional details, and cause."""
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        
        if cause is not None:
            self.__cause__ = cause
        
    def __str__(self) -> str:
        """String representation with details."""
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message
    
    @classmethod
    def from_exception(cls, message: str, cause: Exception, details: Optional[Dict[str, Any]] = None):
        """Create exception with proper chaining from another exception."""
        return cls(message, details, cause)


class PoolError(ResourcePoolError):
    """Exception raised for pool lifecycle and acquisition errors."""
    pass


class PoolClosedError(PoolError):
    """Operation attempted while the pool is draining or closed."""
    pass


class PoolNotReadyError(PoolError):
    """Operation attempted before the pool was opened."""
    pass


class AcquireTimeoutError(PoolError):
    """No resource became available within the configured wait."""
    pass


class NestedTransactionError(PoolError):
    """A transaction was opened on a resource already inside one."""
    pass


class OperationFailedError(ResourcePoolError):
    """Exception raised when a unit of work fails against a resource."""
    pass


class ConfigurationError(ResourcePoolError):
    """Exception raised for configuration-related errors."""
    pass


class ValidationError(ResourcePoolError):
    """Exception raised for invalid input."""
    pass


class RateLimitExceededError(ResourcePoolError):
    """Exception raised when a rate limit window is exhausted."""
    pass


class ServiceError(ResourcePoolError):
    """Base exception for business service errors."""
    pass


class UserError(ServiceError):
    """User service errors."""
    pass


class OrderError(ServiceError):
    """Order service errors."""
    pass


class NotificationError(ServiceError):
    """Notification delivery errors."""
    pass
