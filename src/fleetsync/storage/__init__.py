"""Asset store backends."""

from fleetsync.config.settings import StorageBackend, StorageSettings
from .base import AssetStore
from .file import FileAssetStore
from .memory import MemoryAssetStore


def create_store(settings: StorageSettings) -> AssetStore:
    """Build the store selected by ``STORAGE_BACKEND``."""
    if settings.backend == StorageBackend.FILE:
        return FileAssetStore(settings.base_path)
    return MemoryAssetStore()


__all__ = [
    "AssetStore",
    "MemoryAssetStore",
    "FileAssetStore",
    "create_store",
]
