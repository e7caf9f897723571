"""fleetsync: compute asset discovery and inventory reconciliation."""

__version__ = "0.1.0"
