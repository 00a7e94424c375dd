from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a storage mutation cannot satisfy its invariants."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AssetWriteError(StorageError):
    """The asset binary could not be decoded or written; nothing was persisted."""


class InvalidSnapshotId(StorageError):
    """Snapshot id is empty or would escape the snapshot root."""


__all__ = ["StorageError", "AssetWriteError", "InvalidSnapshotId"]
