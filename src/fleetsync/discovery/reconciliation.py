"""Reconciliation of discovered assets against the stored inventory."""

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import structlog

from fleetsync.core.exceptions import UpsertException
from fleetsync.core.utils import utcnow
from fleetsync.models.asset import AssetState, NormalizedAsset, Platform, StoredAsset, SyncResult
from fleetsync.storage.base import AssetStore

logger = structlog.get_logger(__name__)

ScopeOf = Callable[[NormalizedAsset], str]


def default_scope(asset: NormalizedAsset) -> str:
    return asset.region


class ReconciliationEngine:
    """Upserts a discovery batch and soft-terminates what disappeared.

    A pass for one ``(tenant, platform)`` holds a per-key lock and runs
    inside a single store transaction, so the termination sweep always sees
    the rows written by the same pass.
    """

    def __init__(self, store: AssetStore):
        self.store = store
        self._locks: Dict[Tuple[str, Platform], asyncio.Lock] = {}
        self.logger = logger.bind(component="reconciliation")

    def _lock_for(self, tenant: str, platform: Platform) -> asyncio.Lock:
        key = (tenant, platform)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def sync(self,
                   tenant: str,
                   platform: Union[str, Platform],
                   discovered: Iterable[NormalizedAsset],
                   failed_scopes: Optional[Iterable[object]] = None,
                   scope_of: Optional[ScopeOf] = None) -> SyncResult:
        """Reconcile ``discovered`` into the store.

        ``failed_scopes`` holds scope names (or ``PartialScopeException``
        objects) that could not be enumerated; stored assets whose scope,
        as computed by ``scope_of``, is among them are not terminated.
        """
        platform = Platform.parse(platform)
        discovered = list(discovered)
        started = time.monotonic()
        log = self.logger.bind(tenant=tenant, platform=platform.value)

        failures = list(failed_scopes or [])
        protected = {getattr(failure, "scope", failure) for failure in failures}
        scope_of = scope_of or default_scope

        result = SyncResult(
            platform=platform,
            tenant=tenant,
            assets_found=len(discovered),
            scope_errors=[str(failure) for failure in failures],
        )

        async with self._lock_for(tenant, platform):
            async with self.store.transaction(tenant, platform):
                stored = {
                    asset.instance_id: asset
                    for asset in await self.store.list_assets_by_platform(tenant, platform)
                }
                seen = await self._upsert_batch(tenant, platform, discovered, stored, result, log)
                await self._terminate_missing(stored, seen, protected, scope_of, result, log)

        result.duration = time.monotonic() - started
        result.completed_at = utcnow()
        log.info(
            "Reconciliation completed",
            found=result.assets_found,
            new=result.assets_new,
            updated=result.assets_updated,
            removed=result.assets_removed,
            errors=len(result.errors),
            scope_errors=len(result.scope_errors),
            duration_seconds=round(result.duration, 3)
        )
        return result

    async def _upsert_batch(self, tenant: str, platform: Platform,
                            discovered: List[NormalizedAsset],
                            stored: Dict[str, StoredAsset],
                            result: SyncResult, log) -> set:
        seen = set()
        current: Dict[str, StoredAsset] = dict(stored)

        for asset in discovered:
            if asset.platform != platform:
                result.errors.append(
                    f"{asset.instance_id}: platform {asset.platform.value} does not match {platform.value}"
                )
                log.warning("Skipping asset from another platform",
                            instance_id=asset.instance_id, asset_platform=asset.platform.value)
                continue

            # Marked before the write so a failed upsert never looks like a removal.
            seen.add(asset.instance_id)
            fields = asset.mutable_fields()
            previous = current.get(asset.instance_id)

            try:
                record, was_new = await self.store.upsert_asset(tenant, platform, asset.instance_id, fields)
            except UpsertException as e:
                result.errors.append(e.message)
                log.warning("Asset upsert failed", instance_id=asset.instance_id, error=e.message)
                continue
            except Exception as e:
                message = str(UpsertException(asset.instance_id, str(e)))
                result.errors.append(message)
                log.warning("Asset upsert failed", instance_id=asset.instance_id, error=str(e))
                continue

            if was_new:
                result.assets_new += 1
            elif previous is None or previous.differs_from(fields):
                result.assets_updated += 1
            current[asset.instance_id] = record

        return seen

    async def _terminate_missing(self, stored: Dict[str, StoredAsset], seen: set,
                                 protected: set, scope_of: ScopeOf,
                                 result: SyncResult, log) -> None:
        for instance_id, asset in stored.items():
            if instance_id in seen or asset.state == AssetState.TERMINATED:
                continue
            scope = scope_of(asset)
            if scope in protected:
                log.info("Keeping asset from failed scope", instance_id=instance_id, scope=scope)
                continue
            try:
                await self.store.mark_asset_terminated(asset.id)
            except Exception as e:
                result.errors.append(f"{instance_id}: failed to mark terminated: {e}")
                log.warning("Failed to mark asset terminated", instance_id=instance_id, error=str(e))
                continue
            result.assets_removed += 1
            log.info("Asset terminated", instance_id=instance_id, name=asset.name, scope=scope)
