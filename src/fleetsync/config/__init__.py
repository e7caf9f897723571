from .settings import Settings, SchedulerSettings, DiscoverySettings, StorageSettings, StorageBackend
from .connectors import (
    ScopeFilter,
    KubernetesConfig,
    AWSConfig,
    AzureConfig,
    GCPConfig,
    VSphereConfig,
    ConnectorDefinition,
    build_platform_config,
    load_connector_definitions,
)

__all__ = [
    "Settings",
    "SchedulerSettings",
    "DiscoverySettings",
    "StorageSettings",
    "StorageBackend",
    "ScopeFilter",
    "KubernetesConfig",
    "AWSConfig",
    "AzureConfig",
    "GCPConfig",
    "VSphereConfig",
    "ConnectorDefinition",
    "build_platform_config",
    "load_connector_definitions",
]
