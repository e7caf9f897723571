"""GCP connector: Compute Engine instances across zones."""

import asyncio
from typing import Dict, List, Optional

import structlog
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import compute_v1
from google.oauth2 import service_account

from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.mappers import tag_mapper as tags_ns
from fleetsync.mappers.image_mapper import gcp_version_from_image_name, parse_gcp_image_url, resource_name
from fleetsync.mappers.state_mapper import GCP_INSTANCE_STATES, map_state
from fleetsync.models.asset import ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

CREATED_BY_KEY = "created-by"
MIG_MARKER = "/instanceGroupManagers/"
GLOBAL_REGION = "global"


def region_from_zone(zone: str) -> str:
    """``us-central1-a`` -> ``us-central1``."""
    head, sep, _ = zone.rpartition('-')
    return head if sep else zone


def managed_instance_group(instance) -> Optional[str]:
    """MIG name from the ``created-by`` metadata item, if any."""
    items = instance.metadata.items if instance.metadata else []
    for item in items or []:
        if item.key == CREATED_BY_KEY and MIG_MARKER in (item.value or ""):
            return resource_name(item.value)
    return None


class GCPComputeConnector(BaseConnector):
    """Discovers Compute Engine instances; every zone is one scope."""

    platform = Platform.GCP

    def __init__(self, config_dict, name: Optional[str] = None, settings=None):
        super().__init__(config_dict, name or "GCPComputeConnector", settings)
        self.project_id = self.config.project_id
        self._instances_client: Optional[compute_v1.InstancesClient] = None
        self._disks_client: Optional[compute_v1.DisksClient] = None
        self._zones_client: Optional[compute_v1.ZonesClient] = None
        self._images_client: Optional[compute_v1.ImagesClient] = None

    def _get_credentials(self):
        if self.config.credentials_file:
            return service_account.Credentials.from_service_account_file(self.config.credentials_file)
        # Application default credentials.
        return None

    async def _connect(self) -> None:
        try:
            credentials = await self._run_blocking(self._get_credentials)
            self._instances_client = compute_v1.InstancesClient(credentials=credentials)
            self._disks_client = compute_v1.DisksClient(credentials=credentials)
            self._zones_client = compute_v1.ZonesClient(credentials=credentials)
            self._images_client = compute_v1.ImagesClient(credentials=credentials)
        except (GoogleAuthError, OSError, ValueError) as e:
            raise ClientConnectionException("gcp", f"Failed to create clients: {e}")

        self.logger.info(
            "Connected to GCP",
            project_id=self.project_id,
            credentials_file=bool(self.config.credentials_file),
            zone_filter=self.config.zones.is_restricted
        )

    async def _close(self) -> None:
        for sdk_client in (self._instances_client, self._disks_client, self._zones_client, self._images_client):
            transport = getattr(sdk_client, "transport", None)
            if transport is not None:
                await self._run_blocking(transport.close)
        self._instances_client = None
        self._disks_client = None
        self._zones_client = None
        self._images_client = None

    async def _health_check(self) -> None:
        await self._run_blocking(self._list_zone_names, 1)

    def _list_zone_names(self, limit: Optional[int] = None) -> List[str]:
        names = []
        for zone in self._zones_client.list(project=self.project_id, timeout=self.request_timeout):
            names.append(zone.name)
            if limit and len(names) >= limit:
                break
        return names

    async def _zones_to_scan(self) -> List[str]:
        zones = self.config.zones
        if zones.include:
            return zones.filter(list(zones.include))
        return zones.filter(await self._run_blocking(self._list_zone_names))

    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        zones = await self._zones_to_scan()

        async def scan(zone: str) -> List[NormalizedAsset]:
            return await self._run_blocking(self._discover_zone, zone)

        return await self._scan_scopes(zones, scan, cancel)

    def _discover_zone(self, zone: str) -> List[NormalizedAsset]:
        instances = list(self._instances_client.list(
            project=self.project_id, zone=zone, timeout=self.request_timeout
        ))

        disk_images = {}
        if self.config.resolve_images and instances:
            disk_images = self._boot_disk_images(zone)

        assets = [self.normalize_instance(instance, zone, disk_images) for instance in instances]
        self.logger.debug("Discovered instances", zone=zone, count=len(assets))
        return assets

    def _boot_disk_images(self, zone: str) -> Dict[str, str]:
        """Disk self-link -> source image URL for every disk in ``zone``."""
        images = {}
        try:
            for disk in self._disks_client.list(project=self.project_id, zone=zone, timeout=self.request_timeout):
                if disk.source_image:
                    images[disk.self_link] = disk.source_image
                    images[disk.name] = disk.source_image
        except GoogleAPIError as e:
            self.logger.warning("Failed to list disks", zone=zone, error=str(e))
        return images

    def _source_image(self, instance, disk_images: Dict[str, str]) -> str:
        for disk in instance.disks or []:
            if not disk.boot:
                continue
            params = getattr(disk, "initialize_params", None)
            if params is not None and params.source_image:
                return params.source_image
            if disk.source:
                return disk_images.get(disk.source) or disk_images.get(resource_name(disk.source)) or ""
        return ""

    def normalize_instance(self, instance, zone: str,
                           disk_images: Optional[Dict[str, str]] = None) -> NormalizedAsset:
        image_ref, image_version = parse_gcp_image_url(
            self._source_image(instance, disk_images or {}), self.project_id
        )

        tags = tags_ns.namespaced(tags_ns.LABEL_PREFIX, dict(instance.labels or {}))
        tags[tags_ns.ZONE] = zone
        if instance.machine_type:
            tags[tags_ns.HW_SIZE] = resource_name(instance.machine_type)

        mig = managed_instance_group(instance)
        if mig:
            tags[tags_ns.OWNER_KIND] = "InstanceGroupManager"
            tags[tags_ns.OWNER_NAME] = mig

        return NormalizedAsset(
            platform=Platform.GCP,
            account=self.project_id,
            region=region_from_zone(zone),
            instance_id=str(instance.id),
            name=instance.name or "",
            image_ref=image_ref,
            image_version=image_version,
            state=map_state(GCP_INSTANCE_STATES, instance.status),
            tags=tags,
        )

    def asset_scope(self, asset: NormalizedAsset) -> str:
        return asset.tags.get(tags_ns.ZONE, "")

    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        async def scan(project: str) -> List[ImageInfo]:
            return await self._run_blocking(self._project_images, project)

        images = await self._scan_scopes([self.project_id], scan, cancel)
        return images + self.family_entries(images)

    def _project_images(self, project: str) -> List[ImageInfo]:
        images = []
        for image in self._images_client.list(project=project, timeout=self.request_timeout):
            tags = dict(image.labels or {})
            tags_ns.put(tags, "family", image.family)
            tags_ns.put(tags, "status", image.status)
            tags_ns.put(tags, "architecture", image.architecture)
            if image.disk_size_gb:
                tags["disk_size_gb"] = str(image.disk_size_gb)
            if image.source_disk:
                tags["source_disk"] = resource_name(image.source_disk)
            tags_ns.put(tags, "version", gcp_version_from_image_name(image.name))

            images.append(ImageInfo(
                platform=Platform.GCP,
                identifier=image.name,
                name=image.name,
                region=GLOBAL_REGION,
                created_at=image.creation_timestamp or "",
                description=image.description or "",
                tags=tags,
            ))
        return images

    @staticmethod
    def family_entries(images: List[ImageInfo]) -> List[ImageInfo]:
        """One synthetic entry per image family pointing at its newest image."""
        latest: Dict[str, ImageInfo] = {}
        for image in images:
            family = image.tags.get("family")
            if not family:
                continue
            current = latest.get(family)
            if current is None or image.created_at > current.created_at:
                latest[family] = image

        return [
            ImageInfo(
                platform=Platform.GCP,
                identifier=f"family/{family}",
                name=f"{family} (family)",
                region=GLOBAL_REGION,
                created_at=image.created_at,
                description=f"Image family: {family} (latest: {image.name})",
                tags={"type": "family", "family": family, "latest_image": image.name},
            )
            for family, image in sorted(latest.items())
        ]
