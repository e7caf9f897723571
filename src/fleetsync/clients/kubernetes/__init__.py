from .k8s_connector import KubernetesConnector

__all__ = ["KubernetesConnector"]
