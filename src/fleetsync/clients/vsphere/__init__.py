from .vcenter_connector import VCenterConnector

__all__ = ["VCenterConnector"]
