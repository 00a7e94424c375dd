from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from stagevault.api.schemas import (
    Envelope,
    EvictionResponse,
    ImageCreateRequest,
    ImageListResponse,
    ImageResponse,
    SnapshotListResponse,
    SnapshotRequest,
    SnapshotResponse,
)
from stagevault.logging import get_logger
from stagevault.service.errors import NotFoundError, ValidationError
from stagevault.service.runtime import get_runtime
from stagevault.storage.common import decode_image_data
from stagevault.storage.errors import AssetWriteError
from stagevault.storage.models import Asset, ImageMetadata

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Principal:
    """Identity asserted by the authenticating gateway in front of this service."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise _http_error("unauthorized", "missing user identity", status_code=401)
    role = (x_user_role or "user").strip().lower() or "user"
    return Principal(user_id=user_id, role=role)


async def get_admin_user(principal: Principal = Depends(get_user)) -> Principal:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _get_visible_image(asset_id: str, principal: Principal) -> Asset:
    """Load an asset the caller may see; other owners' assets read as missing."""
    asset = get_runtime().store.get_image(asset_id)
    if asset is None:
        raise NotFoundError("image not found", detail={"id": asset_id})
    if asset.owner_id not in (None, principal.user_id) and not principal.is_admin:
        raise NotFoundError("image not found", detail={"id": asset_id})
    return asset


# images
@router.get("/images", response_model=Envelope, tags=["images"])
async def list_images(
    conversation_id: Optional[str] = Query(None, max_length=255),
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    assets = runtime.store.get_all_images(
        owner_id=principal.user_id, conversation_id=conversation_id
    )
    items = [ImageResponse.from_asset(asset) for asset in assets]
    return Envelope(status="ok", data=ImageListResponse(items=items))


@router.post("/images", response_model=Envelope, status_code=201, tags=["images"])
async def create_image(body: ImageCreateRequest, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    try:
        raw = decode_image_data(body.image_data)
    except AssetWriteError as exc:
        raise ValidationError(exc.message, detail={"field": "image_data"}) from exc
    if len(raw) > runtime.settings.max_upload_bytes:
        raise ValidationError(
            "image exceeds upload limit",
            status_code=413,
            detail={"max_bytes": runtime.settings.max_upload_bytes},
        )
    metadata = ImageMetadata(
        title=body.title,
        prompt=body.prompt,
        model_id=body.model_id,
        width=body.width,
        height=body.height,
        meta=body.meta,
        user_id=principal.user_id,
        chat_id=body.conversation_id,
    )
    asset = runtime.store.save_image(raw, metadata)
    return Envelope(status="ok", data=ImageResponse.from_asset(asset))


@router.get("/images/{asset_id}", response_model=Envelope, tags=["images"])
async def get_image(asset_id: str, principal: Principal = Depends(get_user)):
    asset = _get_visible_image(asset_id, principal)
    return Envelope(status="ok", data=ImageResponse.from_asset(asset))


@router.get("/images/{asset_id}/content", tags=["images"])
async def get_image_content(asset_id: str, principal: Principal = Depends(get_user)):
    _get_visible_image(asset_id, principal)
    content = get_runtime().store.read_image_bytes(asset_id)
    if content is None:
        raise NotFoundError("image not found", detail={"id": asset_id})
    return Response(content=content, media_type="image/png")


@router.delete("/images/{asset_id}", response_model=Envelope, tags=["images"])
async def delete_image(asset_id: str, principal: Principal = Depends(get_user)):
    _get_visible_image(asset_id, principal)
    if not get_runtime().store.delete_image(asset_id):
        raise NotFoundError("image not found", detail={"id": asset_id})
    return Envelope(status="ok", data={"id": asset_id, "deleted": True})


# stage history
@router.get("/stage-history", response_model=Envelope, tags=["stage-history"])
async def list_stage_history(
    conversation_id: Optional[str] = Query(None, max_length=255),
    snapshot_id: Optional[str] = Query(None, max_length=255),
    only_manual: bool = False,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    snapshots = runtime.store.get_stage_snapshots(
        owner_id=principal.user_id,
        conversation_id=conversation_id,
        snapshot_id=snapshot_id,
        only_manual=only_manual,
    )
    items = [SnapshotResponse.from_snapshot(snap) for snap in snapshots]
    return Envelope(status="ok", data=SnapshotListResponse(items=items))


@router.post("/stage-history", response_model=Envelope, tags=["stage-history"])
async def save_stage_history(body: SnapshotRequest, principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    existing = runtime.store.get_stage_snapshots(snapshot_id=body.id)
    if existing and existing[0].owner_id not in (None, principal.user_id):
        raise _http_error("forbidden", "snapshot belongs to another user", status_code=403)
    runtime.store.save_stage_snapshot(
        body.id,
        body.text_drafts,
        body.image_drafts,
        owner_id=principal.user_id,
        conversation_id=body.conversation_id,
        composed_draft=body.composed_draft,
        is_manual_save=body.is_manual_save,
    )
    return Envelope(status="ok", data={"id": body.id, "is_manual_save": body.is_manual_save})


@router.delete("/stage-history/{snapshot_id}", response_model=Envelope, tags=["stage-history"])
async def delete_stage_history(snapshot_id: str, principal: Principal = Depends(get_user)):
    get_runtime().store.delete_stage_snapshot(snapshot_id, principal.user_id)
    return Envelope(status="ok", data={"id": snapshot_id})


@router.delete("/stage-history", response_model=Envelope, tags=["stage-history"])
async def clear_stage_history(principal: Principal = Depends(get_user)):
    get_runtime().store.clear_stage_snapshots(owner_id=principal.user_id)
    return Envelope(status="ok", data={"owner_id": principal.user_id})


# admin
@router.post("/admin/snapshots/clear", response_model=Envelope, tags=["admin"])
async def admin_clear_snapshots(principal: Principal = Depends(get_admin_user)):
    get_runtime().store.clear_stage_snapshots()
    logger.warning("admin_snapshots_cleared", admin_id=principal.user_id)
    return Envelope(status="ok", data={"cleared": True})


@router.post("/admin/images/reset", response_model=Envelope, tags=["admin"])
async def admin_reset_images(principal: Principal = Depends(get_admin_user)):
    deleted = await asyncio.to_thread(get_runtime().store.reset_all_images)
    logger.warning("admin_images_reset", admin_id=principal.user_id, deleted=deleted)
    return Envelope(status="ok", data={"deleted": deleted})


@router.post("/admin/images/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup_images(
    max_size_mb: Optional[float] = Query(None, gt=0),
    principal: Principal = Depends(get_admin_user),
):
    runtime = get_runtime()
    limit = max_size_mb if max_size_mb is not None else runtime.settings.max_image_storage_mb
    result = await asyncio.to_thread(runtime.eviction.cleanup_old_images, limit)
    logger.info(
        "admin_images_cleanup",
        admin_id=principal.user_id,
        max_size_mb=limit,
        deleted=len(result.deleted_ids),
    )
    return Envelope(
        status="ok",
        data=EvictionResponse(
            size_before_mb=result.size_before_mb,
            size_after_mb=result.size_after_mb,
            target_mb=result.target_mb,
            deleted_ids=result.deleted_ids,
        ),
    )
