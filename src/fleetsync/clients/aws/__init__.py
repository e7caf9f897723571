from .ec2_connector import EC2Connector

__all__ = ["EC2Connector"]
