"""Live connectors keyed by (tenant, platform)."""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

import structlog

from fleetsync.clients.factory import ConnectorFactory
from fleetsync.config.connectors import ConnectorDefinition
from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ConfigurationException
from fleetsync.models.asset import Platform

logger = structlog.get_logger(__name__)

RegistryKey = Tuple[str, Platform]


@dataclass
class RegisteredConnector:
    """A connector together with the scheduling options it was defined with."""
    tenant: str
    connector: BaseConnector
    interval: Optional[str] = None
    timeout_seconds: Optional[float] = None
    discover_images: bool = False

    @property
    def platform(self) -> Platform:
        return self.connector.platform

    @property
    def key(self) -> RegistryKey:
        return (self.tenant, self.platform)

    @property
    def name(self) -> str:
        return self.connector.name


class ConnectorRegistry:
    """Holds one connector per (tenant, platform)."""

    def __init__(self, factory: Optional[ConnectorFactory] = None):
        self.factory = factory or ConnectorFactory()
        self._entries: Dict[RegistryKey, RegisteredConnector] = {}
        self.logger = logger.bind(component="registry")

    def register(self,
                 tenant: str,
                 connector: BaseConnector,
                 interval: Optional[str] = None,
                 timeout_seconds: Optional[float] = None,
                 discover_images: bool = False) -> RegisteredConnector:
        entry = RegisteredConnector(
            tenant=tenant,
            connector=connector,
            interval=interval,
            timeout_seconds=timeout_seconds,
            discover_images=discover_images,
        )
        if entry.key in self._entries:
            existing = self._entries[entry.key]
            raise ConfigurationException(
                f"A connector is already registered for tenant {tenant!r} on {entry.platform.value}",
                {"existing": existing.name, "new": connector.name}
            )
        self._entries[entry.key] = entry
        self.logger.info("Connector registered", tenant=tenant, platform=entry.platform.value, connector=connector.name)
        return entry

    def unregister(self, tenant: str, platform: Union[str, Platform]) -> Optional[RegisteredConnector]:
        entry = self._entries.pop((tenant, Platform.parse(platform)), None)
        if entry is not None:
            self.logger.info("Connector unregistered", tenant=tenant, platform=entry.platform.value)
        return entry

    def get(self, tenant: str, platform: Union[str, Platform]) -> Optional[RegisteredConnector]:
        return self._entries.get((tenant, Platform.parse(platform)))

    def filter(self, tenant: Optional[str] = None,
               platform: Optional[Union[str, Platform]] = None) -> List[RegisteredConnector]:
        wanted = Platform.parse(platform) if platform else None
        return [
            entry for entry in self
            if (tenant is None or entry.tenant == tenant) and (wanted is None or entry.platform == wanted)
        ]

    def __iter__(self) -> Iterator[RegisteredConnector]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        tenant, platform = key
        return (tenant, Platform.parse(platform)) in self._entries

    def load_definitions(self, definitions: List[ConnectorDefinition]) -> List[RegisteredConnector]:
        """Build and register a connector for every enabled definition."""
        loaded = []
        for definition in definitions:
            if not definition.enabled:
                self.logger.info("Skipping disabled connector", connector=definition.name)
                continue
            connector = self.factory.create(definition.platform, definition.config, definition.name)
            loaded.append(self.register(
                definition.tenant,
                connector,
                interval=definition.interval,
                timeout_seconds=definition.timeout_seconds,
                discover_images=definition.discover_images,
            ))
        self.logger.info("Connector definitions loaded", loaded=len(loaded), total=len(definitions))
        return loaded

    async def close_all(self) -> None:
        for entry in self:
            try:
                await entry.connector.close()
            except Exception as e:
                self.logger.warning("Failed to close connector", connector=entry.name, error=str(e))
