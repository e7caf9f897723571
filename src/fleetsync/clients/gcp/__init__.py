from .compute_connector import GCPComputeConnector

__all__ = ["GCPComputeConnector"]
