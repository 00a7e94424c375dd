from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from stagevault.storage.common import MAX_RECORD_ID_BYTES
from stagevault.storage.models import Asset, Snapshot

# Maximum nested JSON depth accepted in drafts and metadata
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "server_error",
}


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject payloads nested deeper than ``max_depth`` or with oversized arrays.

    Raises:
        ValueError: If depth or array length exceeds the limit
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ImageCreateRequest(BaseModel):
    image_data: str = Field(..., min_length=1, description="Base64 PNG, optionally a data URI")
    title: str = Field("Untitled image", max_length=512)
    prompt: Optional[str] = Field(None, max_length=8192)
    model_id: str = Field("unknown", max_length=255)
    width: int = Field(512, ge=0, le=16384)
    height: int = Field(512, ge=0, le=16384)
    meta: Optional[dict] = None
    conversation_id: Optional[str] = Field(None, max_length=255)

    @field_validator("meta")
    @classmethod
    def _validate_meta(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class ImageResponse(BaseModel):
    id: str
    title: str
    prompt: Optional[str] = None
    model_id: str
    url: str
    width: int
    height: int
    created_at: datetime
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None
    meta: dict = Field(default_factory=dict)

    @classmethod
    def from_asset(cls, asset: Asset) -> "ImageResponse":
        return cls(
            id=asset.id,
            title=asset.title,
            prompt=asset.prompt,
            model_id=asset.model_id,
            url=asset.url,
            width=asset.width,
            height=asset.height,
            created_at=asset.created_at,
            owner_id=asset.owner_id,
            conversation_id=asset.conversation_id,
            meta=asset.meta or {},
        )


class ImageListResponse(BaseModel):
    items: List[ImageResponse]


class SnapshotRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=MAX_RECORD_ID_BYTES)
    text_drafts: List[Any] = Field(default_factory=list)
    image_drafts: List[Any] = Field(default_factory=list)
    conversation_id: Optional[str] = Field(None, max_length=255)
    composed_draft: Optional[dict] = None
    is_manual_save: bool = False

    @field_validator("text_drafts", "image_drafts")
    @classmethod
    def _validate_drafts(cls, value: List[Any]) -> List[Any]:
        _validate_json_depth(value)
        return value

    @field_validator("composed_draft")
    @classmethod
    def _validate_composed(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class SnapshotResponse(BaseModel):
    id: str
    timestamp: datetime
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None
    is_manual_save: bool = False
    text_drafts: List[Any] = Field(default_factory=list)
    image_drafts: List[Any] = Field(default_factory=list)
    composed_draft: Optional[dict] = None

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SnapshotResponse":
        return cls(
            id=snapshot.id,
            timestamp=snapshot.timestamp,
            owner_id=snapshot.owner_id,
            conversation_id=snapshot.conversation_id,
            is_manual_save=snapshot.is_manual_save,
            text_drafts=snapshot.text_drafts,
            image_drafts=snapshot.image_drafts,
            composed_draft=snapshot.composed_draft,
        )


class SnapshotListResponse(BaseModel):
    items: List[SnapshotResponse]


class EvictionResponse(BaseModel):
    size_before_mb: float
    size_after_mb: float
    target_mb: float
    deleted_ids: List[str]
