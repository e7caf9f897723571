"""Canonical asset data models shared by every connector."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from fleetsync.core.utils import utcnow


class Platform(str, Enum):
    """Platforms a connector can produce assets for."""
    KUBERNETES = "kubernetes"
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    VSPHERE = "vsphere"

    @classmethod
    def parse(cls, value: "str | Platform") -> "Platform":
        if isinstance(value, Platform):
            return value
        text = str(value).strip().lower()
        if text == "k8s":
            return cls.KUBERNETES
        return cls(text)


class AssetState(str, Enum):
    """Normalized lifecycle state."""
    RUNNING = "running"
    PENDING = "pending"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"


# Fields a discovery run is allowed to overwrite on an existing row.
MUTABLE_FIELDS = (
    "account",
    "region",
    "name",
    "image_ref",
    "image_version",
    "state",
    "tags",
)


class NormalizedAsset(BaseModel):
    """Platform-agnostic view of one compute resource."""

    platform: Platform
    account: str = ""
    region: str = ""
    instance_id: str
    name: str = ""
    image_ref: str = ""
    image_version: str = ""
    state: AssetState = AssetState.UNKNOWN
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator('instance_id')
    @classmethod
    def validate_instance_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("instance_id must not be empty")
        return v

    def mutable_fields(self) -> Dict[str, object]:
        """Fields carried into an upsert."""
        return {name: getattr(self, name) for name in MUTABLE_FIELDS}


class StoredAsset(NormalizedAsset):
    """Persisted asset row."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant: str
    discovered_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def differs_from(self, fields: Dict[str, object]) -> bool:
        """True when any mutable field would change."""
        for name in MUTABLE_FIELDS:
            if name in fields and getattr(self, name) != fields[name]:
                return True
        return False


class ImageInfo(BaseModel):
    """Template or base image reported by a platform."""

    platform: Platform
    identifier: str
    name: str = ""
    region: str = ""
    created_at: str = ""
    description: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Outcome of one reconciliation pass for a (tenant, platform)."""

    platform: Platform
    tenant: str
    assets_found: int = 0
    assets_new: int = 0
    assets_updated: int = 0
    assets_removed: int = 0
    errors: List[str] = Field(default_factory=list)
    scope_errors: List[str] = Field(default_factory=list)
    duration: float = 0.0
    completed_at: Optional[datetime] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors or self.scope_errors)
