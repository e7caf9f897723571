"""Kubernetes connector: pods and, optionally, nodes."""

import asyncio
from typing import Dict, List, Optional
from urllib.parse import urlparse

import yaml
import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as TransportError

from fleetsync.core.base_connector import BaseConnector
from fleetsync.core.exceptions import ClientConnectionException
from fleetsync.core.utils import first_or_none, retry_with_backoff
from fleetsync.mappers import tag_mapper as tags_ns
from fleetsync.mappers.image_mapper import parse_container_image
from fleetsync.mappers.state_mapper import KUBERNETES_NODE_STATES, KUBERNETES_POD_STATES, map_state
from fleetsync.models.asset import AssetState, ImageInfo, NormalizedAsset, Platform

logger = structlog.get_logger(__name__)

# Scope name for the cluster-wide node listing; never a valid namespace name.
NODES_SCOPE = "<nodes>"

REPORTED_POD_PHASES = ("Running", "Pending")
ZONE_LABELS = ("topology.kubernetes.io/zone", "failure-domain.beta.kubernetes.io/zone")
RAW_KUBECONFIG_MARKERS = (
    "certificate-authority-data:",
    "client-certificate-data:",
    "client-key-data:",
)


def is_raw_kubeconfig(value: Optional[str]) -> bool:
    """Tell kubeconfig YAML content apart from a file path."""
    text = (value or "").strip()
    if text.startswith("apiVersion:"):
        return True
    if "\n" in text and ": " in text:
        return True
    return any(marker in text for marker in RAW_KUBECONFIG_MARKERS)


def is_transient_error(error: BaseException) -> bool:
    """Throttling, server errors and transport failures are worth a retry."""
    if isinstance(error, ApiException):
        status = error.status or 0
        return status == 429 or status >= 500
    return isinstance(error, (TransportError, ConnectionError, TimeoutError))


def deployment_name_for_replicaset(replicaset_name: str) -> Optional[str]:
    """ReplicaSets are named ``<deployment>-<pod-template-hash>``."""
    parts = replicaset_name.split('-')
    if len(parts) < 2:
        return None
    return '-'.join(parts[:-1])


class KubernetesConnector(BaseConnector):
    """Discovers pods (and nodes) from one cluster."""

    platform = Platform.KUBERNETES

    def __init__(self, config_dict, name: Optional[str] = None, settings=None):
        super().__init__(config_dict, name or "KubernetesConnector", settings)
        self.cluster_name = self.config.cluster_name or ""
        self.api_client: Optional[client.ApiClient] = None
        self.core_v1: Optional[client.CoreV1Api] = None
        self.apps_v1: Optional[client.AppsV1Api] = None

    async def _connect(self) -> None:
        try:
            self.api_client = await self._run_blocking(self._build_api_client)
        except (ConfigException, yaml.YAMLError, OSError) as e:
            raise ClientConnectionException("kubernetes", f"Failed to load kubeconfig: {e}")

        self.core_v1 = client.CoreV1Api(self.api_client)
        self.apps_v1 = client.AppsV1Api(self.api_client)
        self.cluster_name = self._determine_cluster_name()
        self.logger = self.logger.bind(cluster=self.cluster_name)
        self.logger.info("Connected to Kubernetes cluster", host=self.api_client.configuration.host)

    def _build_api_client(self) -> client.ApiClient:
        kubeconfig = self.config.kubeconfig
        context = self.config.context

        if kubeconfig:
            if is_raw_kubeconfig(kubeconfig):
                config_dict = yaml.safe_load(kubeconfig)
                self.logger.info("Loading kubeconfig from inline content")
                return config.new_client_from_config_dict(config_dict, context=context)
            self.logger.info("Loading kubeconfig", path=kubeconfig)
            return config.new_client_from_config(config_file=kubeconfig, context=context)

        try:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            self.logger.info("Using in-cluster configuration")
            return client.ApiClient(configuration)
        except ConfigException:
            self.logger.info("Not running in-cluster, loading default kubeconfig")
            return config.new_client_from_config(context=context)

    def _determine_cluster_name(self) -> str:
        if self.config.cluster_name:
            return self.config.cluster_name
        if self.config.context:
            return self.config.context
        host = self.api_client.configuration.host if self.api_client else ""
        if host:
            parsed = urlparse(host if "://" in host else f"https://{host}")
            if parsed.hostname:
                return parsed.hostname
        return "unknown-cluster"

    async def _close(self) -> None:
        if self.api_client is not None:
            await self._run_blocking(self.api_client.close)
        self.api_client = None
        self.core_v1 = None
        self.apps_v1 = None

    async def _health_check(self) -> None:
        await self._call(client.VersionApi(self.api_client).get_code)

    async def _call(self, func, *args, **kwargs):
        """Blocking API call with the request timeout and transient retries."""
        @retry_with_backoff(
            max_retries=self.settings.retry_attempts,
            backoff_factor=self.settings.retry_backoff_factor,
            retry_on=is_transient_error
        )
        async def attempt():
            return await self._run_blocking(func, *args, _request_timeout=self.request_timeout, **kwargs)

        return await attempt()

    async def _namespaces_to_scan(self) -> List[str]:
        namespaces = self.config.namespaces
        if namespaces.include:
            return namespaces.filter(list(namespaces.include))
        listed = await self._call(self.core_v1.list_namespace)
        return namespaces.filter([ns.metadata.name for ns in listed.items or []])

    async def _discover_assets(self, tenant: str,
                               cancel: Optional[asyncio.Event]) -> List[NormalizedAsset]:
        namespaces = await self._namespaces_to_scan()
        scopes = list(namespaces)
        if self.config.discover_nodes:
            scopes.append(NODES_SCOPE)

        async def scan(scope: str) -> List[NormalizedAsset]:
            if scope == NODES_SCOPE:
                return await self._discover_nodes()
            return await self._discover_pods(scope)

        return await self._scan_scopes(scopes, scan, cancel)

    async def _discover_pods(self, namespace: str) -> List[NormalizedAsset]:
        kwargs = {}
        if self.config.label_selector:
            kwargs["label_selector"] = self.config.label_selector
        pods = await self._call(self.core_v1.list_namespaced_pod, namespace, **kwargs)

        deployments = {}
        if self.config.resolve_owners:
            deployments = await self._deployment_replicas(namespace)

        assets = []
        for pod in pods.items or []:
            if not pod.status or pod.status.phase not in REPORTED_POD_PHASES:
                continue
            if not (pod.metadata and pod.metadata.uid):
                self.logger.warning(
                    "Skipping pod without uid",
                    namespace=namespace,
                    pod=pod.metadata.name if pod.metadata else None
                )
                continue
            assets.append(self.normalize_pod(pod, deployments))
        self.logger.debug("Discovered pods", namespace=namespace, count=len(assets))
        return assets

    async def _deployment_replicas(self, namespace: str) -> Dict[str, int]:
        try:
            listed = await self._call(self.apps_v1.list_namespaced_deployment, namespace)
        except Exception as e:
            self.logger.warning("Failed to list deployments", namespace=namespace, error=str(e))
            return {}
        return {
            deploy.metadata.name: (deploy.spec.replicas or 0) if deploy.spec else 0
            for deploy in listed.items or []
        }

    async def _discover_nodes(self) -> List[NormalizedAsset]:
        nodes = await self._call(self.core_v1.list_node)
        assets = []
        for node in nodes.items or []:
            if not (node.metadata and node.metadata.uid):
                self.logger.warning("Skipping node without uid", node=node.metadata.name if node.metadata else None)
                continue
            assets.append(self.normalize_node(node))
        self.logger.debug("Discovered nodes", count=len(assets))
        return assets

    def normalize_pod(self, pod, deployments: Optional[Dict[str, int]] = None) -> NormalizedAsset:
        metadata = pod.metadata
        containers = (pod.spec.containers if pod.spec else None) or []

        image_ref, image_version = "", ""
        if containers:
            image_ref, image_version = parse_container_image(containers[0].image)

        tags = tags_ns.namespaced(tags_ns.LABEL_PREFIX, metadata.labels)
        tags[tags_ns.NAMESPACE] = metadata.namespace or ""
        tags_ns.put(tags, tags_ns.NODE, pod.spec.node_name if pod.spec else None)

        owner = first_or_none(metadata.owner_references)
        if owner is not None:
            tags[tags_ns.OWNER_KIND] = owner.kind
            tags[tags_ns.OWNER_NAME] = owner.name
            if owner.kind == "ReplicaSet" and deployments:
                deployment = deployment_name_for_replicaset(owner.name)
                if deployment in deployments:
                    tags["deployment"] = deployment
                    tags["deployment:replicas"] = str(deployments[deployment])

        for index, container in enumerate(containers):
            tags.update(tags_ns.container_tags(index, container.name, container.image))

        return NormalizedAsset(
            platform=Platform.KUBERNETES,
            account=self.cluster_name,
            region=metadata.namespace or "",
            instance_id=metadata.uid,
            name=metadata.name or "",
            image_ref=image_ref,
            image_version=image_version,
            state=map_state(KUBERNETES_POD_STATES, pod.status.phase if pod.status else None),
            tags=tags,
        )

    def normalize_node(self, node) -> NormalizedAsset:
        metadata = node.metadata
        status = node.status
        labels = metadata.labels or {}
        info = status.node_info if status else None

        tags = tags_ns.namespaced(tags_ns.LABEL_PREFIX, labels)
        tags[tags_ns.RESOURCE_KIND] = "node"
        if info is not None:
            tags_ns.put(tags, tags_ns.HW_ARCH, info.architecture)
            tags_ns.put(tags, tags_ns.OS_NAME, info.operating_system)
            tags_ns.put(tags, tags_ns.OS_KERNEL, info.kernel_version)
            tags_ns.put(tags, "os:container_runtime", info.container_runtime_version)
        capacity = (status.capacity if status else None) or {}
        tags_ns.put(tags, tags_ns.HW_CPU, capacity.get("cpu"))
        tags_ns.put(tags, tags_ns.HW_MEMORY, capacity.get("memory"))

        ready = None
        for condition in (status.conditions if status else None) or []:
            if condition.type == "Ready":
                ready = condition.status
                break
        state = map_state(KUBERNETES_NODE_STATES, ready) if ready is not None else AssetState.UNKNOWN

        region = next((labels[label] for label in ZONE_LABELS if labels.get(label)), "")

        return NormalizedAsset(
            platform=Platform.KUBERNETES,
            account=self.cluster_name,
            region=region,
            instance_id=metadata.uid,
            name=metadata.name or "",
            image_ref=(info.os_image if info else None) or "",
            image_version=(info.kubelet_version if info else None) or "",
            state=state,
            tags=tags,
        )

    def asset_scope(self, asset: NormalizedAsset) -> str:
        if asset.tags.get(tags_ns.RESOURCE_KIND) == "node":
            return NODES_SCOPE
        return asset.tags.get(tags_ns.NAMESPACE, asset.region)

    async def _discover_images(self, cancel: Optional[asyncio.Event]) -> List[ImageInfo]:
        namespaces = await self._namespaces_to_scan()
        seen = set()

        async def scan(namespace: str) -> List[ImageInfo]:
            pods = await self._call(self.core_v1.list_namespaced_pod, namespace)
            images = []
            for pod in pods.items or []:
                for container in (pod.spec.containers if pod.spec else None) or []:
                    if not container.image or container.image in seen:
                        continue
                    seen.add(container.image)
                    image_ref, version = parse_container_image(container.image)
                    images.append(ImageInfo(
                        platform=Platform.KUBERNETES,
                        identifier=container.image,
                        name=image_ref,
                        region=namespace,
                        tags={"version": version, tags_ns.NAMESPACE: namespace},
                    ))
            return images

        return await self._scan_scopes(namespaces, scan, cancel)
