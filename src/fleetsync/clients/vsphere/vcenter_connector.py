"""vSphere connector: virtual machines managed by a vCenter."""

import asyncio
from typing import Dict, List, Optional
from urllib.parse import urlparse

import structlog
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.core.utils import safe_get
from fleetsync.mappers import tag_mapper as tags_ns
from fleetsync.mappers.state_mapper import VSPHERE_POWER_STATES, map_state
from fleetsync.models.asset import ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

GUESTINFO_KEY_PREFIX = "guestinfo."


def vcenter_host(value: str) -> str:
    """Host part of a vCenter URL or bare host name."""
    parsed = urlparse(value if "://" in value else f"https://{value}")
    return parsed.hostname or value


def guestinfo_tags(extra_config) -> Dict[str, str]:
    tags = {}
    for option in extra_config or []:
        key = getattr(option, "key", "") or ""
        value = getattr(option, "value", None)
        if key.startswith(GUESTINFO_KEY_PREFIX) and isinstance(value, str):
            tags[f"{tags_ns.GUESTINFO_PREFIX}{key[len(GUESTINFO_KEY_PREFIX):]}"] = value
    return tags


def cluster_of(host) -> str:
    parent = getattr(host, "parent", None) if host is not None else None
    if isinstance(parent, vim.ClusterComputeResource):
        return parent.name
    return ""


class VCenterConnector(BaseConnector):
    """Discovers vCenter VMs; every datacenter is one scope. Templates are images."""

    platform = Platform.VSPHERE

    def __init__(self, config_dict, name: Optional[str] = None, settings=None):
        super().__init__(config_dict, name or "VCenterConnector", settings)
        self.account = vcenter_host(self.config.host)
        self.service_instance = None

    async def _connect(self) -> None:
        try:
            self.service_instance = await self._run_blocking(
                SmartConnect,
                host=self.account,
                user=self.config.username,
                pwd=self.config.password,
                port=self.config.port,
                disableSslCertValidation=self.config.insecure,
                httpConnectionTimeout=int(self.request_timeout),
            )
        except (vmodl.MethodFault, OSError) as e:
            raise ClientConnectionException("vsphere", f"Failed to connect to {self.account}: {e}")

        self.logger.info(
            "Connected to vCenter",
            host=self.account,
            insecure=self.config.insecure,
            datacenter_filter=self.config.datacenters.is_restricted,
            cluster_filter=self.config.clusters.is_restricted
        )

    async def _close(self) -> None:
        if self.service_instance is not None:
            await self._run_blocking(Disconnect, self.service_instance)
        self.service_instance = None

    async def _health_check(self) -> None:
        await self._run_blocking(self.service_instance.CurrentTime)

    def _content(self):
        return self.service_instance.RetrieveContent()

    def _list_objects(self, root, kind) -> list:
        view = self._content().viewManager.CreateContainerView(root, [kind], True)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def _datacenters(self) -> Dict[str, object]:
        content = self._content()
        return {dc.name: dc for dc in self._list_objects(content.rootFolder, vim.Datacenter)}

    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        datacenters = await self._run_blocking(self._datacenters)
        names = self.config.datacenters.filter(sorted(datacenters))

        async def scan(name: str) -> List[NormalizedAsset]:
            return await self._run_blocking(self._discover_datacenter, name, datacenters[name])

        return await self._scan_scopes(names, scan, cancel)

    def _discover_datacenter(self, name: str, datacenter) -> List[NormalizedAsset]:
        assets = []
        for vm in self._list_objects(datacenter.vmFolder, vim.VirtualMachine):
            if safe_get(vm, "config.template", False):
                continue
            cluster = cluster_of(safe_get(vm, "runtime.host"))
            if self.config.clusters.is_restricted and not self.config.clusters.allows(cluster):
                continue
            assets.append(self.normalize_vm(vm, name, cluster))
        self.logger.debug("Discovered virtual machines", datacenter=name, count=len(assets))
        return assets

    def normalize_vm(self, vm, datacenter: str, cluster: str = "") -> NormalizedAsset:
        config = vm.config
        tags = guestinfo_tags(safe_get(config, "extraConfig"))
        tags[tags_ns.DATACENTER] = datacenter
        tags_ns.put(tags, tags_ns.CLUSTER, cluster)
        tags_ns.put(tags, tags_ns.HOST, safe_get(vm, "runtime.host.name"))
        tags_ns.put(tags, tags_ns.RESOURCE_POOL, safe_get(vm, "resourcePool.name"))
        tags_ns.put(tags, "annotation", safe_get(vm, "summary.config.annotation"))

        tags_ns.put(tags, tags_ns.HW_CPU, safe_get(config, "hardware.numCPU"))
        tags_ns.put(tags, tags_ns.HW_MEMORY, safe_get(config, "hardware.memoryMB"))
        cores = safe_get(config, "hardware.numCoresPerSocket", 0)
        if cores:
            tags[tags_ns.HW_CORES_PER_SOCKET] = str(cores)

        tags_ns.put(tags, "guest:ip_address", safe_get(vm, "guest.ipAddress"))
        tags_ns.put(tags, "guest:hostname", safe_get(vm, "guest.hostName"))
        tags_ns.put(tags, "guest:tools_status", safe_get(vm, "guest.toolsStatus"))

        return NormalizedAsset(
            platform=Platform.VSPHERE,
            account=self.account,
            region=datacenter,
            instance_id=vm._moId,
            name=vm.name or "",
            image_ref=safe_get(config, "guestId", ""),
            image_version=safe_get(config, "guestFullName", ""),
            state=map_state(VSPHERE_POWER_STATES, safe_get(vm, "runtime.powerState")),
            tags=tags,
        )

    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        datacenters = await self._run_blocking(self._datacenters)
        names = self.config.datacenters.filter(sorted(datacenters))

        async def scan(name: str) -> List[ImageInfo]:
            return await self._run_blocking(self._templates_in_datacenter, name, datacenters[name])

        return await self._scan_scopes(names, scan, cancel)

    def _templates_in_datacenter(self, name: str, datacenter) -> List[ImageInfo]:
        images = []
        for vm in self._list_objects(datacenter.vmFolder, vim.VirtualMachine):
            config = vm.config
            if not safe_get(config, "template", False):
                continue
            annotation = safe_get(vm, "summary.config.annotation", "")
            tags = {tags_ns.DATACENTER: name}
            tags_ns.put(tags, "guest_id", safe_get(config, "guestId"))
            tags_ns.put(tags, "guest_os", safe_get(config, "guestFullName"))
            tags_ns.put(tags, tags_ns.HW_CPU, safe_get(config, "hardware.numCPU"))
            tags_ns.put(tags, tags_ns.HW_MEMORY, safe_get(config, "hardware.memoryMB"))
            images.append(ImageInfo(
                platform=Platform.VSPHERE,
                identifier=vm._moId,
                name=vm.name or "",
                region=name,
                description=annotation,
                tags=tags,
            ))
        return images
