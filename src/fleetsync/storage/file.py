"""JSON-file asset store: one document per tenant."""

import asyncio
import json
import os
import re
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple, Union

from fleetsync.core.exceptions import StorageException
from fleetsync.models.asset import Platform, StoredAsset
from .memory import MemoryAssetStore

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')

TransactionKey = Tuple[str, Platform]


def tenant_filename(tenant: str) -> str:
    return f"{_UNSAFE_CHARS.sub('_', tenant) or '_'}.json"


class FileAssetStore(MemoryAssetStore):
    """Memory store backed by ``<base_path>/<tenant>.json``.

    Transactions are scoped to one ``(tenant, platform)``. While one is open
    its rows stay in memory and the document keeps the platform's rows as
    they were at entry, so passes of other platforms can commit meanwhile.
    A clean exit writes the document; an error, or a failed write, puts the
    platform's rows back to the entry snapshot. Other platforms are never
    touched by a rollback.
    """

    def __init__(self, base_path: Union[str, Path]):
        super().__init__()
        self.base_path = Path(base_path)
        self._loaded: Set[str] = set()
        self._open_transactions: Dict[TransactionKey, int] = {}
        self._snapshots: Dict[TransactionKey, List[StoredAsset]] = {}
        self._tenant_locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, tenant: str) -> Path:
        return self.base_path / tenant_filename(tenant)

    async def upsert_asset(self,
                           tenant: str,
                           platform: Union[str, Platform],
                           instance_id: str,
                           fields: Dict[str, Any]) -> Tuple[StoredAsset, bool]:
        await self._ensure_loaded(tenant)
        result = await super().upsert_asset(tenant, platform, instance_id, fields)
        await self._persist_outside_transaction(tenant, Platform.parse(platform))
        return result

    async def list_assets_by_platform(self, tenant: str, platform: Union[str, Platform]) -> List[StoredAsset]:
        await self._ensure_loaded(tenant)
        return await super().list_assets_by_platform(tenant, platform)

    async def mark_asset_terminated(self, asset_id: str) -> None:
        await super().mark_asset_terminated(asset_id)
        asset = self._assets[asset_id]
        await self._persist_outside_transaction(asset.tenant, asset.platform)

    @asynccontextmanager
    async def transaction(self, tenant: str, platform: Union[str, Platform]) -> AsyncIterator[None]:
        platform = Platform.parse(platform)
        key = (tenant, platform)
        await self._ensure_loaded(tenant)

        depth = self._open_transactions.get(key, 0)
        if depth == 0:
            self._snapshots[key] = [a.model_copy(deep=True) for a in self._rows(tenant, platform)]
        self._open_transactions[key] = depth + 1

        try:
            yield
        except BaseException:
            self.logger.warning("Rolling back platform changes", tenant=tenant, platform=platform.value)
            self._restore(key)
            self._leave(key)
            raise

        if depth > 0:
            self._leave(key)
            return

        try:
            await self._write(tenant, committing=key)
        except StorageException:
            self.logger.error("Commit failed, restoring platform rows", tenant=tenant, platform=platform.value)
            self._restore(key)
            raise
        finally:
            self._leave(key)

    def _leave(self, key: TransactionKey) -> None:
        self._open_transactions[key] -= 1
        if not self._open_transactions[key]:
            del self._open_transactions[key]
            self._snapshots.pop(key, None)

    def _restore(self, key: TransactionKey) -> None:
        tenant, platform = key
        self._drop_rows(tenant, platform)
        for asset in self._snapshots.get(key, []):
            self._put(asset.model_copy(deep=True))

    async def _persist_outside_transaction(self, tenant: str, platform: Platform) -> None:
        if not self._open_transactions.get((tenant, platform)):
            await self._write(tenant)

    def _lock_for(self, tenant: str) -> asyncio.Lock:
        if tenant not in self._tenant_locks:
            self._tenant_locks[tenant] = asyncio.Lock()
        return self._tenant_locks[tenant]

    async def _ensure_loaded(self, tenant: str) -> None:
        if tenant in self._loaded:
            return
        async with self._lock_for(tenant):
            if tenant in self._loaded:
                return
            for asset in await asyncio.to_thread(self._read, tenant):
                if asset.id not in self._assets:
                    self._put(asset)
            self._loaded.add(tenant)

    def _read(self, tenant: str) -> List[StoredAsset]:
        path = self.path_for(tenant)
        if not path.exists():
            return []
        try:
            with open(path, 'r') as f:
                document = json.load(f)
            return [StoredAsset.model_validate(item) for item in document.get("assets", [])]
        except (OSError, ValueError) as e:
            raise StorageException(f"Failed to read {path}: {e}", {"tenant": tenant})

    def _committed_rows(self, tenant: str, committing: Optional[TransactionKey] = None) -> List[dict]:
        """Rows of ``tenant`` as of the last commit of every platform."""
        rows = []
        for asset in self._assets.values():
            key = (asset.tenant, asset.platform)
            if asset.tenant == tenant and (key == committing or key not in self._open_transactions):
                rows.append(asset)
        for key, snapshot in self._snapshots.items():
            if key[0] == tenant and key != committing:
                rows.extend(snapshot)
        return [a.model_dump(mode="json") for a in rows]

    async def _write(self, tenant: str, committing: Optional[TransactionKey] = None) -> None:
        # Snapshot and write under one lock: documents land in snapshot order.
        async with self._lock_for(tenant):
            assets = self._committed_rows(tenant, committing)
            await asyncio.to_thread(self._write_document, tenant, assets)
        self.logger.debug("Wrote asset document", tenant=tenant, assets=len(assets))

    def _write_document(self, tenant: str, assets: List[dict]) -> None:
        path = self.path_for(tenant)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                'w', dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
            ) as f:
                tmp_name = f.name
                json.dump({"tenant": tenant, "assets": assets}, f, indent=2, default=str)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageException(f"Failed to write {path}: {e}", {"tenant": tenant})
