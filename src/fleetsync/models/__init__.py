from .asset import *

__all__ = [
    "Platform",
    "AssetState",
    "MUTABLE_FIELDS",
    "NormalizedAsset",
    "StoredAsset",
    "ImageInfo",
    "SyncResult",
]
