"""Process-local asset store."""

from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import ValidationError

from fleetsync.core.exceptions import StorageException, UpsertException
from fleetsync.core.utils import utcnow
from fleetsync.models.asset import MUTABLE_FIELDS, AssetState, Platform, StoredAsset
from .base import AssetStore

logger = structlog.get_logger(__name__)

AssetKey = Tuple[str, Platform, str]


class MemoryAssetStore(AssetStore):
    """Keeps every row in a dict; rows handed out are copies."""

    def __init__(self):
        self._assets: Dict[str, StoredAsset] = {}
        self._index: Dict[AssetKey, str] = {}
        self.logger = logger.bind(store=self.__class__.__name__)

    async def upsert_asset(self,
                           tenant: str,
                           platform: Union[str, Platform],
                           instance_id: str,
                           fields: Dict[str, Any]) -> Tuple[StoredAsset, bool]:
        platform = Platform.parse(platform)
        if not instance_id:
            raise UpsertException(instance_id, "instance_id must not be empty")
        unknown = set(fields) - set(MUTABLE_FIELDS)
        if unknown:
            raise UpsertException(instance_id, "fields are not mutable", {"fields": sorted(unknown)})

        key = (tenant, platform, instance_id)
        now = utcnow()
        existing_id = self._index.get(key)

        try:
            if existing_id is not None:
                current = self._assets[existing_id]
                record = StoredAsset.model_validate({**current.model_dump(), **fields, "updated_at": now})
                was_new = False
            else:
                record = StoredAsset(
                    tenant=tenant,
                    platform=platform,
                    instance_id=instance_id,
                    discovered_at=now,
                    updated_at=now,
                    **fields
                )
                was_new = True
        except ValidationError as e:
            raise UpsertException(instance_id, "invalid asset fields", {"errors": e.errors(include_url=False)})

        self._put(record)
        return record.model_copy(deep=True), was_new

    async def list_assets_by_platform(self, tenant: str, platform: Union[str, Platform]) -> List[StoredAsset]:
        platform = Platform.parse(platform)
        return [
            asset.model_copy(deep=True)
            for asset in self._assets.values()
            if asset.tenant == tenant and asset.platform == platform
        ]

    async def mark_asset_terminated(self, asset_id: str) -> None:
        current = self._assets.get(asset_id)
        if current is None:
            raise StorageException(f"Asset not found: {asset_id}")
        self._put(current.model_copy(update={"state": AssetState.TERMINATED, "updated_at": utcnow()}))

    async def get_asset(self, asset_id: str) -> Optional[StoredAsset]:
        asset = self._assets.get(asset_id)
        return asset.model_copy(deep=True) if asset else None

    def _put(self, record: StoredAsset) -> None:
        self._assets[record.id] = record
        self._index[(record.tenant, record.platform, record.instance_id)] = record.id

    def _rows(self, tenant: str, platform: Platform) -> List[StoredAsset]:
        return [a for a in self._assets.values() if a.tenant == tenant and a.platform == platform]

    def _drop_rows(self, tenant: str, platform: Platform) -> None:
        for asset_id in [a.id for a in self._rows(tenant, platform)]:
            asset = self._assets.pop(asset_id)
            self._index.pop((asset.tenant, asset.platform, asset.instance_id), None)

    def __len__(self) -> int:
        return len(self._assets)
