"""Persistence contract consumed by the reconciliation engine."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from fleetsync.models.asset import Platform, StoredAsset


class AssetStore(ABC):
    """Asset rows keyed by (tenant, platform, instance_id)."""

    @abstractmethod
    async def upsert_asset(self,
                           tenant: str,
                           platform: Union[str, Platform],
                           instance_id: str,
                           fields: Dict[str, Any]) -> Tuple[StoredAsset, bool]:
        """Insert or update one asset; returns the stored row and whether it was new."""

    @abstractmethod
    async def list_assets_by_platform(self, tenant: str, platform: Union[str, Platform]) -> List[StoredAsset]:
        pass

    @abstractmethod
    async def mark_asset_terminated(self, asset_id: str) -> None:
        pass

    @abstractmethod
    async def get_asset(self, asset_id: str) -> Optional[StoredAsset]:
        pass

    @asynccontextmanager
    async def transaction(self, tenant: str, platform: Union[str, Platform]) -> AsyncIterator[None]:
        """Scope of one reconciliation pass."""
        yield

    async def close(self) -> None:
        pass
