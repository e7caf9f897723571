"""Base connector interface for all discovery platforms."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar, Union

import structlog

from fleetsync.config.connectors import PlatformConfig, build_platform_config
from fleetsync.config.settings import DiscoverySettings
from fleetsync.core.exceptions import (
    ClientConnectionException,
    DiscoveryException,
    FleetSyncException,
    HealthCheckException,
    NotConnectedException,
    PartialScopeException,
)
from fleetsync.models.asset import ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

T = TypeVar('T')


class ConnectorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CLOSED = "closed"


class BaseConnector(ABC):
    """Abstract base class for platform connectors.

    A connector owns exactly one live session to its platform. Subclasses
    implement the ``_connect``/``_close``/``_health_check`` hooks and the two
    discovery hooks; the public coroutines enforce the session lifecycle and
    wrap SDK errors into the exception taxonomy.
    """

    platform: Platform

    def __init__(self,
                 config: Union[Dict[str, Any], PlatformConfig],
                 name: Optional[str] = None,
                 settings: Optional[DiscoverySettings] = None):
        self.config = build_platform_config(self.platform, config)
        self.name = name or self.__class__.__name__
        self.settings = settings or DiscoverySettings()
        self.request_timeout = self.settings.request_timeout_seconds
        self.max_scope_failure_ratio = self.settings.max_scope_failure_ratio

        self._state = ConnectorState.DISCONNECTED
        self.scope_failures: List[PartialScopeException] = []
        self.logger = logger.bind(connector=self.name, platform=self.platform.value)

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if connector is connected."""
        return self._state == ConnectorState.CONNECTED

    @property
    def failed_scopes(self) -> List[str]:
        return [failure.scope for failure in self.scope_failures]

    # Lifecycle

    async def connect(self) -> None:
        """Establish the platform session. A second call is a no-op."""
        if self.is_connected:
            return
        try:
            await self._connect()
        except ClientConnectionException:
            raise
        except Exception as e:
            raise ClientConnectionException(self.platform.value, str(e), {"error_type": type(e).__name__})
        self._state = ConnectorState.CONNECTED
        self.logger.info("Connector connected")

    async def close(self) -> None:
        """Release the session. Safe on closed or never-connected connectors."""
        if self._state == ConnectorState.CONNECTED:
            try:
                await self._close()
            except Exception as e:
                self.logger.warning("Error while closing session", error=str(e))
            self.logger.info("Connector closed")
        self._state = ConnectorState.CLOSED

    async def reconnect(self) -> None:
        """Drop the current session and build a new one."""
        self.logger.info("Reconnecting")
        await self.close()
        self._state = ConnectorState.DISCONNECTED
        await self.connect()

    async def health_check(self) -> None:
        """Lightweight liveness probe; raises when the session is unusable."""
        self._require_connected("health_check")
        try:
            await self._health_check()
        except HealthCheckException:
            raise
        except Exception as e:
            raise HealthCheckException(self.platform.value, str(e), {"error_type": type(e).__name__})

    # Discovery

    async def discover_assets(self, tenant: str,
                              cancel: Optional[asyncio.Event] = None) -> List[NormalizedAsset]:
        """Enumerate the platform's compute resources.

        Sub-scope failures are recorded in ``scope_failures`` and skipped.
        When ``cancel`` is set the assets collected so far are returned.
        """
        self._require_connected("discover_assets")
        self.scope_failures = []
        try:
            assets = await self._discover_assets(tenant, cancel)
        except FleetSyncException:
            raise
        except Exception as e:
            raise DiscoveryException(self.platform.value, str(e), {"error_type": type(e).__name__})

        self.logger.info(
            "Asset discovery finished",
            tenant=tenant,
            assets=len(assets),
            failed_scopes=len(self.scope_failures)
        )
        return assets

    async def discover_images(self, cancel: Optional[asyncio.Event] = None) -> List[ImageInfo]:
        """Enumerate templates and base images, same failure policy as assets."""
        self._require_connected("discover_images")
        self.scope_failures = []
        try:
            images = await self._discover_images(cancel)
        except FleetSyncException:
            raise
        except Exception as e:
            raise DiscoveryException(self.platform.value, str(e), {"error_type": type(e).__name__})

        self.logger.info("Image discovery finished", images=len(images))
        return images

    def asset_scope(self, asset: NormalizedAsset) -> str:
        """Scope name an asset was enumerated under."""
        return asset.region

    # Hooks

    @abstractmethod
    async def _connect(self) -> None:
        pass

    @abstractmethod
    async def _close(self) -> None:
        pass

    @abstractmethod
    async def _health_check(self) -> None:
        pass

    @abstractmethod
    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        pass

    @abstractmethod
    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        pass

    # Helpers for subclasses

    def _require_connected(self, operation: str) -> None:
        if not self.is_connected:
            raise NotConnectedException(self.platform.value, operation)

    async def _run_blocking(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking SDK call in a worker thread."""
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _scan_scopes(self,
                           scopes: Iterable[str],
                           scan: Callable[[str], Awaitable[List[T]]],
                           cancel: Optional[asyncio.Event] = None) -> List[T]:
        """Run ``scan`` for every scope, isolating per-scope failures.

        Raises DiscoveryException when every scope failed or the failed
        fraction is above ``max_scope_failure_ratio``.
        """
        scopes = list(scopes)
        results: List[T] = []
        failures: List[PartialScopeException] = []

        for index, scope in enumerate(scopes):
            if cancel is not None and cancel.is_set():
                self.logger.info("Discovery cancelled", scanned=index, remaining=len(scopes) - index)
                return results
            try:
                results.extend(await scan(scope))
            except Exception as e:
                failure = PartialScopeException(self.platform.value, scope, e)
                failures.append(failure)
                self.scope_failures.append(failure)
                self.logger.warning("Scope enumeration failed", scope=scope, error=str(e))

        if failures:
            ratio = len(failures) / len(scopes)
            if len(failures) == len(scopes) or ratio > self.max_scope_failure_ratio:
                raise DiscoveryException(
                    self.platform.value,
                    f"{len(failures)} of {len(scopes)} scopes failed",
                    {
                        "failed_scopes": [failure.scope for failure in failures],
                        "failure_ratio": ratio,
                        "max_failure_ratio": self.max_scope_failure_ratio,
                    }
                )
        return results

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
