"""Connector configuration models.

Configuration is supplied once when a connector is built and is frozen for
the connector's lifetime.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fleetsync.core.exceptions import ConfigurationException
from fleetsync.models.asset import Platform


class FrozenConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ScopeFilter(FrozenConfig):
    """Include/exclude list over scope names, compared case-insensitively.

    An empty include list allows everything; exclude always wins.
    """

    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)

    @field_validator('include', 'exclude', mode='before')
    @classmethod
    def coerce_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    def allows(self, name: Optional[str]) -> bool:
        key = (name or "").lower()
        if key in {item.lower() for item in self.exclude}:
            return False
        if not self.include:
            return True
        return key in {item.lower() for item in self.include}

    def filter(self, names: List[str]) -> List[str]:
        return [name for name in names if self.allows(name)]

    @property
    def is_restricted(self) -> bool:
        return bool(self.include or self.exclude)


class KubernetesConfig(FrozenConfig):
    kubeconfig: Optional[str] = Field(None, description="Kubeconfig path or raw kubeconfig YAML")
    context: Optional[str] = None
    cluster_name: Optional[str] = None
    namespaces: ScopeFilter = Field(default_factory=ScopeFilter)
    label_selector: Optional[str] = None
    discover_nodes: bool = True
    resolve_owners: bool = True


class AWSConfig(FrozenConfig):
    region: str = "us-east-1"
    regions: ScopeFilter = Field(default_factory=ScopeFilter)
    profile: Optional[str] = None
    assume_role_arn: Optional[str] = None
    external_id: Optional[str] = None


class AzureConfig(FrozenConfig):
    subscription_id: str
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    resource_groups: ScopeFilter = Field(default_factory=ScopeFilter)
    discover_scale_sets: bool = True


class GCPConfig(FrozenConfig):
    project_id: str
    credentials_file: Optional[str] = None
    zones: ScopeFilter = Field(default_factory=ScopeFilter)
    resolve_images: bool = True


class VSphereConfig(FrozenConfig):
    host: str = Field(..., description="vCenter host name or URL")
    username: str
    password: str
    port: int = 443
    insecure: bool = False
    datacenters: ScopeFilter = Field(default_factory=ScopeFilter)
    clusters: ScopeFilter = Field(default_factory=ScopeFilter)


PLATFORM_CONFIGS = {
    Platform.KUBERNETES: KubernetesConfig,
    Platform.AWS: AWSConfig,
    Platform.AZURE: AzureConfig,
    Platform.GCP: GCPConfig,
    Platform.VSPHERE: VSphereConfig,
}

PlatformConfig = Union[KubernetesConfig, AWSConfig, AzureConfig, GCPConfig, VSphereConfig]


class ConnectorDefinition(FrozenConfig):
    """One entry of the connectors file."""

    name: str
    tenant: str
    platform: Platform
    enabled: bool = True
    interval: Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)
    discover_images: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('platform', mode='before')
    @classmethod
    def validate_platform(cls, v):
        return Platform.parse(v)


def build_platform_config(platform: Union[str, Platform], raw: Union[Dict[str, Any], BaseModel]) -> PlatformConfig:
    """Validate a raw mapping into the platform's config model."""
    try:
        platform = Platform.parse(platform)
    except ValueError:
        raise ConfigurationException(f"Unsupported platform: {platform}")

    model = PLATFORM_CONFIGS[platform]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigurationException(
            f"Invalid {platform.value} connector configuration",
            {"errors": e.errors(include_url=False)}
        )


def load_connector_definitions(path: Union[str, Path]) -> List[ConnectorDefinition]:
    """Read connector definitions from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationException(f"Connectors file not found: {path}")

    with open(path, 'r') as f:
        document = yaml.safe_load(f) or {}

    entries = document.get("connectors", []) if isinstance(document, dict) else document
    if not isinstance(entries, list):
        raise ConfigurationException(f"Connectors file {path} must contain a list of connectors")

    definitions = []
    for index, entry in enumerate(entries):
        try:
            definitions.append(ConnectorDefinition.model_validate(entry))
        except (ValidationError, ValueError) as e:
            raise ConfigurationException(
                f"Invalid connector definition #{index} in {path}",
                {"error": str(e)}
            )
    return definitions
