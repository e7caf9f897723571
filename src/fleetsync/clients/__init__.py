from .aws import EC2Connector
from .azure import AzureComputeConnector
from .factory import ConnectorFactory
from .gcp import GCPComputeConnector
from .kubernetes import KubernetesConnector
from .vsphere import VCenterConnector

__all__ = [
    "AzureComputeConnector",
    "ConnectorFactory",
    "EC2Connector",
    "GCPComputeConnector",
    "KubernetesConnector",
    "VCenterConnector",
]
