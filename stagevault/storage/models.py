from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ASSET_EXTENSION = "png"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImageMetadata:
    """Caller-supplied description of an image being saved."""

    title: str
    model_id: str
    width: int
    height: int
    prompt: Optional[str] = None
    meta: Dict[str, Any] | None = None
    user_id: Optional[str] = None
    chat_id: Optional[str] = None


@dataclass
class Asset:
    id: str
    title: str
    model_id: str
    file_path: str
    url: str
    width: int
    height: int
    created_at: datetime = field(default_factory=utcnow)
    prompt: Optional[str] = None
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SnapshotPayload:
    text_drafts: List[Any] = field(default_factory=list)
    image_drafts: List[Any] = field(default_factory=list)
    composed_draft: Optional[Dict[str, Any]] = None


@dataclass
class Snapshot:
    id: str
    timestamp: datetime
    payload: SnapshotPayload = field(default_factory=SnapshotPayload)
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None
    is_manual_save: bool = False

    @property
    def text_drafts(self) -> List[Any]:
        return self.payload.text_drafts

    @property
    def image_drafts(self) -> List[Any]:
        return self.payload.image_drafts

    @property
    def composed_draft(self) -> Optional[Dict[str, Any]]:
        return self.payload.composed_draft


@dataclass
class DirectoryStats:
    total_size: int = 0
    file_count: int = 0

    @property
    def total_size_mb(self) -> float:
        return self.total_size / (1024 * 1024)
