import asyncio
from typing import Dict, List, Optional, Union

import pytest

from fleetsync.config.settings import DiscoverySettings
from fleetsync.core.base_connector import BaseConnector
from fleetsync.models.asset import AssetState, ImageInfo, NormalizedAsset, Platform
from fleetsync.storage.memory import MemoryAssetStore


def make_asset(instance_id: str,
               region: str = "us-east-1",
               state: AssetState = AssetState.RUNNING,
               platform: Platform = Platform.AWS,
               **fields) -> NormalizedAsset:
    return NormalizedAsset(
        platform=platform,
        account=fields.pop("account", "123456789012"),
        region=region,
        instance_id=instance_id,
        state=state,
        **fields
    )


class FakeConnector(BaseConnector):
    """In-memory connector: every key of ``scopes`` is one scope.

    A scope maps to a list of assets, or to an exception raised when it is
    scanned.
    """

    platform = Platform.AWS

    def __init__(self,
                 scopes: Optional[Dict[str, Union[List[NormalizedAsset], Exception]]] = None,
                 name: Optional[str] = None,
                 settings: Optional[DiscoverySettings] = None,
                 delay: float = 0.0):
        super().__init__({}, name or "fake", settings)
        self.scopes = scopes if scopes is not None else {}
        self.delay = delay
        self.images: List[ImageInfo] = []
        self.connect_error: Optional[Exception] = None
        self.healthy = True
        self.connect_calls = 0
        self.close_calls = 0
        self.discover_calls = 0
        self.active = 0
        self.max_active = 0

    async def _connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def _close(self) -> None:
        self.close_calls += 1

    async def _health_check(self) -> None:
        if not self.healthy:
            raise RuntimeError("probe failed")

    async def _discover_assets(self, tenant, cancel):
        self.discover_calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)

            async def scan(scope):
                value = self.scopes[scope]
                if isinstance(value, Exception):
                    raise value
                return list(value)

            return await self._scan_scopes(list(self.scopes), scan, cancel)
        finally:
            self.active -= 1

    async def _discover_images(self, cancel):
        return list(self.images)


class FakeKubernetesConnector(FakeConnector):
    platform = Platform.KUBERNETES


@pytest.fixture
def store():
    return MemoryAssetStore()


@pytest.fixture
def fake_connector():
    return FakeConnector({"us-east-1": [make_asset("i-1")]})
