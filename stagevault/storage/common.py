"""Common storage utilities shared between filesystem and postgres implementations.

Both stores write asset binaries to the same on-disk layout and exchange
snapshots as the same JSON document shape, so the codecs and the in-memory
filter live here.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Union

from stagevault.storage.errors import AssetWriteError, InvalidSnapshotId, StorageError
from stagevault.storage.models import (
    ASSET_EXTENSION,
    Asset,
    Snapshot,
    SnapshotPayload,
)

# Ids become "<id>.json" plus a ".<id>.json.XXXXXXXX.tmp" sibling while written;
# this keeps both under the 255-byte file name limit.
MAX_RECORD_ID_BYTES = 200

_DATA_URI_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)
IMAGE_FILE_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)


# ============================================================================
# ASSET HELPERS
# ============================================================================

def decode_image_data(data: Union[bytes, bytearray, str]) -> bytes:
    """Return raw image bytes from bytes or a (data-URI prefixed) base64 string.

    Raises:
        AssetWriteError: If ``data`` is empty or not valid base64
    """
    if isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
    elif isinstance(data, str):
        encoded = _DATA_URI_PREFIX.sub("", data.strip(), count=1)
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AssetWriteError("image data is not valid base64") from exc
    else:
        raise AssetWriteError(
            "image data must be bytes or a base64 string",
            {"type": type(data).__name__},
        )
    if not raw:
        raise AssetWriteError("image data is empty")
    return raw


def asset_file_name(asset_id: str) -> str:
    return f"{asset_id}.{ASSET_EXTENSION}"


def asset_url(base_url: str, file_path: str) -> str:
    return f"{base_url.rstrip('/')}/{file_path}"


def is_valid_record_id(record_id: Optional[str]) -> bool:
    """Ids become file names, so they must be a single non-empty path segment."""
    if not record_id or not isinstance(record_id, str) or not record_id.strip():
        return False
    if record_id in {".", ".."}:
        return False
    if len(record_id.encode("utf-8", "surrogatepass")) > MAX_RECORD_ID_BYTES:
        return False
    return "/" not in record_id and "\\" not in record_id and "\x00" not in record_id


def validate_snapshot_id(snapshot_id: Optional[str]) -> str:
    if not is_valid_record_id(snapshot_id):
        raise InvalidSnapshotId("invalid snapshot id", {"snapshot_id": snapshot_id})
    return snapshot_id


def serialize_asset(asset: Asset) -> dict:
    return {
        "id": asset.id,
        "owner_id": asset.owner_id,
        "conversation_id": asset.conversation_id,
        "title": asset.title,
        "prompt": asset.prompt,
        "model_id": asset.model_id,
        "file_path": asset.file_path,
        "width": asset.width,
        "height": asset.height,
        "created_at": asset.created_at.isoformat(),
        "meta": asset.meta,
    }


def deserialize_asset(data: dict, base_url: str) -> Asset:
    file_path = data["file_path"]
    return Asset(
        id=str(data["id"]),
        owner_id=data.get("owner_id"),
        conversation_id=data.get("conversation_id"),
        title=data.get("title") or "",
        prompt=data.get("prompt"),
        model_id=data.get("model_id") or "unknown",
        file_path=file_path,
        url=asset_url(base_url, file_path),
        width=int(data.get("width") or 0),
        height=int(data.get("height") or 0),
        created_at=parse_ts(data.get("created_at")) or datetime.now(timezone.utc),
        meta=load_json_field(data.get("meta")) or {},
    )


# ============================================================================
# SNAPSHOT HELPERS
# ============================================================================

def payload_to_dict(payload: SnapshotPayload) -> dict:
    return {
        "text_drafts": list(payload.text_drafts),
        "image_drafts": list(payload.image_drafts),
        "composed_draft": payload.composed_draft,
    }


def payload_from_blob(raw: Any) -> SnapshotPayload:
    """Best-effort, versionless payload decoding.

    Accepts a dict or its JSON text. Missing draft lists default to empty;
    anything that is not a JSON object raises ``ValueError``.
    """
    data = load_json_field(raw)
    if not isinstance(data, dict):
        raise ValueError("snapshot payload is not an object")
    text_drafts = data.get("text_drafts", data.get("textDrafts")) or []
    image_drafts = data.get("image_drafts", data.get("imageDrafts")) or []
    composed = data.get("composed_draft", data.get("blogPostDraft"))
    if not isinstance(text_drafts, list) or not isinstance(image_drafts, list):
        raise ValueError("snapshot drafts must be lists")
    if composed is not None and not isinstance(composed, dict):
        raise ValueError("composed draft must be an object")
    return SnapshotPayload(
        text_drafts=text_drafts, image_drafts=image_drafts, composed_draft=composed
    )


def serialize_snapshot(snapshot: Snapshot) -> dict:
    return {
        "id": snapshot.id,
        "timestamp": snapshot.timestamp.isoformat(),
        "owner_id": snapshot.owner_id,
        "conversation_id": snapshot.conversation_id,
        "is_manual_save": snapshot.is_manual_save,
        **payload_to_dict(snapshot.payload),
    }


def deserialize_snapshot(data: Any) -> Snapshot:
    """Rebuild a snapshot from its file document; raises on malformed input."""
    if not isinstance(data, dict):
        raise ValueError("snapshot document is not an object")
    timestamp = parse_ts(data.get("timestamp"))
    if timestamp is None:
        raise ValueError("snapshot timestamp missing or invalid")
    return Snapshot(
        id=str(data["id"]),
        timestamp=timestamp,
        owner_id=data.get("owner_id"),
        conversation_id=data.get("conversation_id"),
        is_manual_save=bool(data.get("is_manual_save", False)),
        payload=payload_from_blob(data),
    )


def filter_snapshots(
    snapshots: Iterable[Snapshot],
    *,
    owner_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    snapshot_id: Optional[str] = None,
    only_manual: bool = False,
) -> List[Snapshot]:
    """Apply the AND-combined snapshot filters and order newest first."""
    matched = [
        snap
        for snap in snapshots
        if (snapshot_id is None or snap.id == snapshot_id)
        and (owner_id is None or snap.owner_id == owner_id)
        and (conversation_id is None or snap.conversation_id == conversation_id)
        and (not only_manual or snap.is_manual_save)
    ]
    matched.sort(key=lambda snap: snap.timestamp, reverse=True)
    return matched


# ============================================================================
# VALUE HELPERS
# ============================================================================

def parse_ts(value: Optional[Any]) -> Optional[datetime]:
    """Parse a datetime or ISO string into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def load_json_field(value: Any) -> Any:
    """Decode JSON text/bytes columns; pass already-decoded values through."""
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return value


def dump_json_document(value: Any) -> str:
    """Serialize a record for storage, surfacing unserializable drafts."""
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise StorageError("record is not JSON-serializable", {"error": str(exc)}) from exc
