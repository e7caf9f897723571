"""Connector factory: platform -> connector class."""

from typing import Any, Dict, Optional, Type, Union

import structlog

from fleetsync.config.connectors import PlatformConfig
from fleetsync.config.settings import DiscoverySettings
from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ConfigurationException
from fleetsync.models.asset import Platform
from .aws import EC2Connector
from .azure import AzureComputeConnector
from .gcp import GCPComputeConnector
from .kubernetes import KubernetesConnector
from .vsphere import VCenterConnector

logger = structlog.get_logger(__name__)


class ConnectorFactory:
    """Factory for creating platform connectors."""

    _connectors: Dict[Platform, Type[BaseConnector]] = {
        Platform.KUBERNETES: KubernetesConnector,
        Platform.AWS: EC2Connector,
        Platform.AZURE: AzureComputeConnector,
        Platform.GCP: GCPComputeConnector,
        Platform.VSPHERE: VCenterConnector,
    }

    def __init__(self, settings: Optional[DiscoverySettings] = None):
        self.settings = settings or DiscoverySettings()
        self.logger = logger.bind(factory="connectors")

    @classmethod
    def register(cls, platform: Platform, connector_class: Type[BaseConnector]) -> None:
        """Register a connector class for a platform."""
        cls._connectors[Platform.parse(platform)] = connector_class

    @classmethod
    def supported_platforms(cls):
        return sorted(platform.value for platform in cls._connectors)

    def create(self,
               platform: Union[str, Platform],
               config: Union[Dict[str, Any], PlatformConfig],
               name: Optional[str] = None) -> BaseConnector:
        """Create a connector for ``platform`` from a raw or typed config."""
        try:
            platform = Platform.parse(platform)
        except ValueError:
            raise ConfigurationException(
                f"Unsupported platform: {platform}",
                {"supported": self.supported_platforms()}
            )

        connector_class = self._connectors.get(platform)
        if connector_class is None:
            raise ConfigurationException(
                f"No connector registered for platform: {platform.value}",
                {"supported": self.supported_platforms()}
            )

        self.logger.debug("Creating connector", platform=platform.value, name=name)
        return connector_class(config, name, self.settings)
