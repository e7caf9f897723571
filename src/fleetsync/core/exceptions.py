"""Custom exceptions for the fleet inventory platform."""

from typing import Optional, Dict, Any


class FleetSyncException(Exception):
    """Base exception for fleetsync."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ClientConnectionException(FleetSyncException):
    """Raised when a connector cannot establish a session with its platform."""

    def __init__(self, client_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.client_type = client_type
        super().__init__(f"{client_type} connection failed: {message}", details)


class NotConnectedException(FleetSyncException):
    """Raised when an operation is attempted before a successful connect."""

    def __init__(self, client_type: str, operation: str):
        self.client_type = client_type
        self.operation = operation
        super().__init__(f"{client_type} is not connected (attempted {operation})")


class HealthCheckException(FleetSyncException):
    """Raised when a connected session fails its liveness probe."""

    def __init__(self, client_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.client_type = client_type
        super().__init__(f"{client_type} health check failed: {message}", details)


class DiscoveryException(FleetSyncException):
    """Raised when discovery operations fail."""

    def __init__(self, discovery_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.discovery_type = discovery_type
        super().__init__(f"Discovery failed for {discovery_type}: {message}", details)


class PartialScopeException(FleetSyncException):
    """A single sub-scope (namespace, region, resource group...) failed to enumerate."""

    def __init__(self, client_type: str, scope: str, cause: BaseException):
        self.client_type = client_type
        self.scope = scope
        self.cause = cause
        super().__init__(
            f"{client_type} scope {scope!r} failed: {cause}",
            {"scope": scope, "error_type": type(cause).__name__},
        )


class UpsertException(FleetSyncException):
    """Raised when a single asset cannot be persisted."""

    def __init__(self, instance_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.instance_id = instance_id
        super().__init__(f"Failed to upsert asset {instance_id!r}: {message}", details)


class StorageException(FleetSyncException):
    """Raised when storage operations fail."""
    pass


class ConfigurationException(FleetSyncException):
    """Raised when configuration is invalid."""
    pass


class SchedulerException(FleetSyncException):
    """Raised for invalid scheduler operations."""
    pass
