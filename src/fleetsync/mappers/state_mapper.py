"""Native lifecycle state tables.

Each table maps every native value a platform reports onto exactly one
canonical :class:`AssetState`. Lookups are case-insensitive and anything
missing from a table resolves to ``unknown``.
"""

from types import MappingProxyType
from typing import Mapping, Optional

from fleetsync.models.asset import AssetState, Platform

_RUNNING = AssetState.RUNNING
_PENDING = AssetState.PENDING
_STOPPED = AssetState.STOPPED
_TERMINATED = AssetState.TERMINATED
_UNKNOWN = AssetState.UNKNOWN


KUBERNETES_POD_STATES: Mapping[str, AssetState] = MappingProxyType({
    "running": _RUNNING,
    "pending": _PENDING,
    "succeeded": _TERMINATED,
    "failed": _TERMINATED,
    "unknown": _UNKNOWN,
})

# Status of the node "Ready" condition.
KUBERNETES_NODE_STATES: Mapping[str, AssetState] = MappingProxyType({
    "true": _RUNNING,
    "false": _STOPPED,
    "unknown": _UNKNOWN,
})

AWS_INSTANCE_STATES: Mapping[str, AssetState] = MappingProxyType({
    "pending": _PENDING,
    "running": _RUNNING,
    "stopping": _PENDING,
    "shutting-down": _PENDING,
    "stopped": _STOPPED,
    "terminated": _TERMINATED,
})

# Suffix of the "PowerState/<x>" instance view status code.
AZURE_POWER_STATES: Mapping[str, AssetState] = MappingProxyType({
    "running": _RUNNING,
    "starting": _PENDING,
    "stopping": _PENDING,
    "deallocating": _PENDING,
    "stopped": _STOPPED,
    "deallocated": _STOPPED,
})

# GCP TERMINATED is a stopped instance that still exists.
GCP_INSTANCE_STATES: Mapping[str, AssetState] = MappingProxyType({
    "provisioning": _PENDING,
    "staging": _PENDING,
    "running": _RUNNING,
    "stopping": _PENDING,
    "suspending": _PENDING,
    "repairing": _PENDING,
    "stopped": _STOPPED,
    "suspended": _STOPPED,
    "terminated": _STOPPED,
})

VSPHERE_POWER_STATES: Mapping[str, AssetState] = MappingProxyType({
    "poweredon": _RUNNING,
    "poweredoff": _STOPPED,
    "suspended": _STOPPED,
})

STATE_TABLES: Mapping[str, Mapping[str, AssetState]] = MappingProxyType({
    "kubernetes_pod": KUBERNETES_POD_STATES,
    "kubernetes_node": KUBERNETES_NODE_STATES,
    Platform.AWS.value: AWS_INSTANCE_STATES,
    Platform.AZURE.value: AZURE_POWER_STATES,
    Platform.GCP.value: GCP_INSTANCE_STATES,
    Platform.VSPHERE.value: VSPHERE_POWER_STATES,
})


def map_state(table: Mapping[str, AssetState], native: Optional[object]) -> AssetState:
    """Resolve a native state value against ``table``."""
    if native is None:
        return _UNKNOWN
    # SDK enums (e.g. pyVmomi, kubernetes) stringify to their wire value.
    key = getattr(native, 'value', native)
    return table.get(str(key).strip().lower(), _UNKNOWN)


def azure_power_state(statuses) -> AssetState:
    """Find the ``PowerState/`` entry in an Azure instance view status list."""
    for status in statuses or []:
        code = getattr(status, 'code', None) or ""
        if code.startswith("PowerState/"):
            return map_state(AZURE_POWER_STATES, code[len("PowerState/"):])
    return _UNKNOWN
