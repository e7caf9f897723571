"""Tag namespacing helpers."""

from typing import Dict, Iterable, Mapping, Optional, Tuple

LABEL_PREFIX = "label:"
TAG_PREFIX = "tag:"
GUESTINFO_PREFIX = "guestinfo:"

OWNER_KIND = "owner:kind"
OWNER_NAME = "owner:name"
NODE = "node"
HOST = "host"
CLUSTER = "cluster"
NAMESPACE = "namespace"
DATACENTER = "datacenter"
RESOURCE_GROUP = "resource_group"
ZONE = "zone"
IMAGE_NAME = "image:name"
RESOURCE_KIND = "resource:kind"
RESOURCE_POOL = "resource_pool"
OS_NAME = "os:name"
OS_KERNEL = "os:kernel"
OS_FAMILY = "os:family"

HW_CPU = "hw:cpu"
HW_MEMORY = "hw:memory"
HW_SIZE = "hw:size"
HW_ARCH = "hw:arch"
HW_CORES_PER_SOCKET = "hw:cores_per_socket"


def namespaced(prefix: str, values: Optional[Mapping[str, object]]) -> Dict[str, str]:
    """Prefix every key of ``values``; ``None`` values are dropped."""
    if not values:
        return {}
    return {f"{prefix}{key}": str(value) for key, value in values.items() if value is not None}


def key_value_pairs(prefix: str, pairs: Optional[Iterable[Tuple[object, object]]]) -> Dict[str, str]:
    """Namespace a list of (key, value) pairs such as AWS ``Tags``."""
    return namespaced(prefix, {str(k): v for k, v in (pairs or []) if k is not None})


def container_tags(index: int, name: str, image: str) -> Dict[str, str]:
    return {
        f"container:{index}:name": name or "",
        f"container:{index}:image": image or "",
    }


def put(tags: Dict[str, str], key: str, value: Optional[object]) -> None:
    """Set ``key`` only when ``value`` carries information."""
    value = getattr(value, "value", value)
    if value is None or value == "":
        return
    tags[key] = str(value)
