from .compute_connector import AzureComputeConnector

__all__ = ["AzureComputeConnector"]
