"""Azure connector: virtual machines and scale-set instances."""

import asyncio
from typing import List, Optional

import structlog
from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.resource import ResourceManagementClient

from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.core.utils import safe_get
from fleetsync.mappers import tag_mapper as tags_ns
from fleetsync.mappers.image_mapper import parse_azure_image_reference, resource_name
from fleetsync.mappers.state_mapper import azure_power_state
from fleetsync.models.asset import AssetState, ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

VMSS_TAG = "vmss"


class AzureComputeConnector(BaseConnector):
    """Discovers VMs and VMSS instances; every resource group is one scope."""

    platform = Platform.AZURE

    def __init__(self, config_dict, name: Optional[str] = None, settings=None):
        super().__init__(config_dict, name or "AzureComputeConnector", settings)
        self.subscription_id = self.config.subscription_id
        self._credential = None
        self._compute_client: Optional[ComputeManagementClient] = None
        self._resource_client: Optional[ResourceManagementClient] = None

    def _get_credential(self):
        """Get Azure credential based on configuration."""
        if self.config.client_id and self.config.client_secret and self.config.tenant_id:
            self.logger.info("Using service principal authentication")
            return ClientSecretCredential(
                tenant_id=self.config.tenant_id,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret
            )
        self.logger.info("Using default credential chain")
        return DefaultAzureCredential()

    async def _connect(self) -> None:
        try:
            self._credential = self._get_credential()
            client_kwargs = {
                "credential": self._credential,
                "subscription_id": self.subscription_id,
                "connection_timeout": self.request_timeout,
                "read_timeout": self.request_timeout,
            }
            self._compute_client = ComputeManagementClient(**client_kwargs)
            self._resource_client = ResourceManagementClient(**client_kwargs)
        except (AzureError, ValueError) as e:
            raise ClientConnectionException("azure", f"Failed to create clients: {e}")

        self.logger.info("Connected to Azure", subscription_id=self.subscription_id)

    async def _close(self) -> None:
        for sdk_client in (self._compute_client, self._resource_client, self._credential):
            close = getattr(sdk_client, "close", None)
            if close is not None:
                await self._run_blocking(close)
        self._compute_client = None
        self._resource_client = None
        self._credential = None

    async def _health_check(self) -> None:
        def probe():
            next(iter(self._resource_client.resource_groups.list()), None)

        await self._run_blocking(probe)

    async def _resource_groups_to_scan(self) -> List[str]:
        groups = await self._run_blocking(
            lambda: [rg.name for rg in self._resource_client.resource_groups.list()]
        )
        return self.config.resource_groups.filter(groups)

    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        groups = await self._resource_groups_to_scan()

        async def scan(resource_group: str) -> List[NormalizedAsset]:
            return await self._run_blocking(self._discover_resource_group, resource_group)

        return await self._scan_scopes(groups, scan, cancel)

    def _discover_resource_group(self, resource_group: str) -> List[NormalizedAsset]:
        compute = self._compute_client
        assets = []

        for vm in compute.virtual_machines.list(resource_group):
            statuses = None
            try:
                view = compute.virtual_machines.instance_view(resource_group, vm.name)
                statuses = view.statuses
            except AzureError as e:
                self.logger.warning(
                    "Failed to get instance view",
                    vm=vm.name,
                    resource_group=resource_group,
                    error=str(e)
                )
            assets.append(self.normalize_vm(vm, resource_group, statuses))

        if self.config.discover_scale_sets:
            for vmss in compute.virtual_machine_scale_sets.list(resource_group):
                image_reference = safe_get(vmss, "virtual_machine_profile.storage_profile.image_reference")
                try:
                    instances = list(compute.virtual_machine_scale_set_vms.list(
                        resource_group, vmss.name, expand="instanceView"
                    ))
                except AzureError as e:
                    self.logger.warning(
                        "Failed to list scale set instances",
                        vmss=vmss.name,
                        resource_group=resource_group,
                        error=str(e)
                    )
                    continue
                for vm in instances:
                    assets.append(self.normalize_vmss_vm(vm, vmss.name, resource_group, image_reference))

        self.logger.debug("Discovered virtual machines", resource_group=resource_group, count=len(assets))
        return assets

    def _base_tags(self, resource, resource_group: str) -> dict:
        tags = tags_ns.namespaced(tags_ns.TAG_PREFIX, resource.tags)
        tags[tags_ns.RESOURCE_GROUP] = resource_group
        zones = getattr(resource, "zones", None)
        if zones:
            tags[tags_ns.ZONE] = ",".join(zones)
        tags_ns.put(tags, tags_ns.OS_FAMILY, safe_get(resource, "storage_profile.os_disk.os_type"))
        return tags

    def normalize_vm(self, vm, resource_group: str, statuses=None) -> NormalizedAsset:
        image_ref, image_version = parse_azure_image_reference(
            safe_get(vm, "storage_profile.image_reference")
        )
        tags = self._base_tags(vm, resource_group)
        tags_ns.put(tags, tags_ns.HW_SIZE, safe_get(vm, "hardware_profile.vm_size"))

        return NormalizedAsset(
            platform=Platform.AZURE,
            account=self.subscription_id,
            region=vm.location or "",
            instance_id=vm.vm_id or resource_name(vm.id) or vm.name,
            name=vm.name or "",
            image_ref=image_ref,
            image_version=image_version,
            state=azure_power_state(statuses) if statuses else AssetState.UNKNOWN,
            tags=tags,
        )

    def normalize_vmss_vm(self, vm, vmss_name: str, resource_group: str,
                          vmss_image_reference=None) -> NormalizedAsset:
        image_reference = safe_get(vm, "storage_profile.image_reference") or vmss_image_reference
        image_ref, image_version = parse_azure_image_reference(image_reference)

        tags = self._base_tags(vm, resource_group)
        tags[VMSS_TAG] = vmss_name
        tags[tags_ns.OWNER_KIND] = "VirtualMachineScaleSet"
        tags[tags_ns.OWNER_NAME] = vmss_name
        tags_ns.put(tags, tags_ns.HW_SIZE, safe_get(vm, "sku.name"))

        instance_id = vm.vm_id
        if not instance_id and vm.instance_id is not None:
            instance_id = f"{vmss_name}_{vm.instance_id}"

        return NormalizedAsset(
            platform=Platform.AZURE,
            account=self.subscription_id,
            region=vm.location or "",
            instance_id=instance_id or resource_name(vm.id),
            name=vm.name or "",
            image_ref=image_ref,
            image_version=image_version,
            state=azure_power_state(safe_get(vm, "instance_view.statuses")),
            tags=tags,
        )

    def asset_scope(self, asset: NormalizedAsset) -> str:
        return asset.tags.get(tags_ns.RESOURCE_GROUP, "")

    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        groups = await self._resource_groups_to_scan()

        async def scan(resource_group: str) -> List[ImageInfo]:
            return await self._run_blocking(self._images_in_resource_group, resource_group)

        return await self._scan_scopes(groups, scan, cancel)

    def _images_in_resource_group(self, resource_group: str) -> List[ImageInfo]:
        compute = self._compute_client
        images = []

        for image in compute.images.list_by_resource_group(resource_group):
            tags = dict(image.tags or {})
            tags["image_type"] = "managed"
            images.append(ImageInfo(
                platform=Platform.AZURE,
                identifier=image.id or "",
                name=image.name or "",
                region=image.location or "",
                tags=tags,
            ))

        for gallery in compute.galleries.list_by_resource_group(resource_group):
            for definition in compute.gallery_images.list_by_gallery(resource_group, gallery.name):
                try:
                    versions = list(compute.gallery_image_versions.list_by_gallery_image(
                        resource_group, gallery.name, definition.name
                    ))
                except AzureError as e:
                    self.logger.warning(
                        "Failed to list image versions",
                        gallery=gallery.name,
                        image=definition.name,
                        error=str(e)
                    )
                    continue

                for version in versions:
                    tags = dict(version.tags or {})
                    tags["image_type"] = "gallery"
                    tags["gallery"] = gallery.name
                    tags_ns.put(tags, "os_type", definition.os_type)
                    published = safe_get(version, "publishing_profile.published_date")
                    images.append(ImageInfo(
                        platform=Platform.AZURE,
                        identifier=version.id or "",
                        name=f"{definition.name}/{version.name}",
                        region=gallery.location or "",
                        created_at=published.isoformat() if published else "",
                        description=definition.description or "",
                        tags=tags,
                    ))

        return images
