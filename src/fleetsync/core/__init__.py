from .exceptions import *
from .utils import parse_duration, retry_with_backoff, setup_logging

__all__ = [
    "FleetSyncException",
    "ClientConnectionException",
    "NotConnectedException",
    "HealthCheckException",
    "DiscoveryException",
    "PartialScopeException",
    "UpsertException",
    "StorageException",
    "ConfigurationException",
    "SchedulerException",
    "parse_duration",
    "retry_with_backoff",
    "setup_logging",
]
