from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from stagevault.logging import get_logger
from stagevault.service.fs import PathTraversalError, safe_join, write_atomic
from stagevault.storage.common import (
    IMAGE_FILE_PATTERN,
    asset_file_name,
    asset_url,
    decode_image_data,
    deserialize_asset,
    deserialize_snapshot,
    dump_json_document,
    filter_snapshots,
    is_valid_record_id,
    serialize_asset,
    serialize_snapshot,
    validate_snapshot_id,
)
from stagevault.storage.errors import AssetWriteError, StorageError
from stagevault.storage.models import (
    Asset,
    DirectoryStats,
    ImageMetadata,
    Snapshot,
    SnapshotPayload,
    utcnow,
)


class FilesystemStore:
    """Filesystem-backed store used when no relational backend is available.

    Layout under ``fs_root``::

        uploads/images/<id>.png        asset binaries
        uploads/image_meta/<id>.json   asset metadata sidecars
        uploads/snapshots/<id>.json    one document per snapshot
    """

    backend_name = "filesystem"

    def __init__(self, fs_root: str, *, image_base_url: str = "/uploads/images") -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.image_base_url = image_base_url
        self.asset_root = self.fs_root / "uploads" / "images"
        self.asset_meta_root = self.fs_root / "uploads" / "image_meta"
        self.snapshot_root = self.fs_root / "uploads" / "snapshots"
        for directory in (self.asset_root, self.asset_meta_root, self.snapshot_root):
            directory.mkdir(parents=True, exist_ok=True)

    def close(self) -> None:
        return None

    # assets
    def save_image(self, data: Union[bytes, str], metadata: ImageMetadata) -> Asset:
        asset = self.write_image_file(data, metadata)
        self.logger.info(
            "image_saved",
            asset_id=asset.id,
            owner_id=asset.owner_id,
            conversation_id=asset.conversation_id,
            backend=self.backend_name,
        )
        return asset

    def write_image_file(self, data: Union[bytes, str], metadata: ImageMetadata) -> Asset:
        """Decode and write the binary plus its sidecar; return the new record.

        Raises ``AssetWriteError`` when the binary cannot be written, in which
        case no sidecar exists either.
        """
        raw = decode_image_data(data)
        asset_id = str(uuid.uuid4())
        file_name = asset_file_name(asset_id)
        asset = Asset(
            id=asset_id,
            title=metadata.title,
            prompt=metadata.prompt,
            model_id=metadata.model_id,
            file_path=file_name,
            url=asset_url(self.image_base_url, file_name),
            width=metadata.width,
            height=metadata.height,
            created_at=utcnow(),
            owner_id=metadata.user_id,
            conversation_id=metadata.chat_id,
            meta=dict(metadata.meta or {}),
        )
        try:
            write_atomic(self.asset_root / file_name, raw)
        except OSError as exc:
            self.logger.error("image_write_failed", asset_id=asset_id, error=str(exc))
            raise AssetWriteError(
                "image could not be written", {"asset_id": asset_id}
            ) from exc
        try:
            write_atomic(
                self._sidecar_path(asset_id),
                dump_json_document(serialize_asset(asset)).encode("utf-8"),
            )
        except (OSError, StorageError) as exc:
            # Binary is the durability floor; a missing sidecar degrades to a legacy record
            self.logger.warning(
                "image_sidecar_write_failed", asset_id=asset_id, error=str(exc)
            )
        return asset

    def get_image(self, asset_id: str) -> Optional[Asset]:
        path = self.find_image_file(asset_id)
        if path is None:
            return None
        return self._asset_from_file(path)

    def read_image_bytes(self, asset_id: str) -> Optional[bytes]:
        path = self.find_image_file(asset_id)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def get_all_images(
        self,
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        *,
        oldest_first: bool = False,
    ) -> List[Asset]:
        assets: List[Asset] = []
        try:
            for path in self._iter_image_files():
                asset = self._asset_from_file(path)
                if asset is None:
                    continue
                if owner_id is not None and asset.owner_id != owner_id:
                    continue
                if conversation_id is not None and asset.conversation_id != conversation_id:
                    continue
                assets.append(asset)
        except OSError as exc:
            self.logger.error("image_list_failed", error=str(exc))
            return []
        assets.sort(key=lambda a: a.created_at, reverse=not oldest_first)
        return assets

    def delete_image(self, asset_id: str) -> bool:
        path = self.find_image_file(asset_id)
        if path is None:
            return False
        removed = self.remove_image_file(path.name)
        if removed:
            self.logger.info("image_deleted", asset_id=asset_id, backend=self.backend_name)
        return removed

    def remove_image_file(self, file_path: str) -> bool:
        """Delete a binary and then its sidecar. False if the binary was already gone."""
        try:
            path = safe_join(self.asset_root, file_path)
        except PathTraversalError:
            self.logger.warning("image_path_rejected", file_path=file_path)
            return False
        asset_id = Path(file_path).stem
        try:
            path.unlink()
            existed = True
        except FileNotFoundError:
            existed = False
        except OSError as exc:
            self.logger.error("image_delete_failed", asset_id=asset_id, error=str(exc))
            raise StorageError("image could not be deleted", {"asset_id": asset_id}) from exc
        try:
            self._sidecar_path(asset_id).unlink(missing_ok=True)
        except OSError as exc:
            self.logger.warning("image_meta_delete_failed", asset_id=asset_id, error=str(exc))
        return existed

    def find_image_file(self, asset_id: str) -> Optional[Path]:
        """Locate ``<asset_id>.<ext>`` under the asset root by name prefix."""
        if not is_valid_record_id(asset_id):
            return None
        prefix = f"{asset_id}."
        try:
            for path in self._iter_image_files():
                if path.name.startswith(prefix):
                    return path
        except OSError as exc:
            self.logger.error("image_lookup_failed", asset_id=asset_id, error=str(exc))
        return None

    def asset_file_size(self, file_path: str) -> Optional[int]:
        try:
            return safe_join(self.asset_root, file_path).stat().st_size
        except (OSError, PathTraversalError):
            return None

    def directory_stats(self) -> DirectoryStats:
        stats = DirectoryStats()
        try:
            for entry in self.asset_root.iterdir():
                if entry.is_file():
                    stats.total_size += entry.stat().st_size
                    stats.file_count += 1
        except OSError as exc:
            self.logger.error("image_dir_stats_failed", error=str(exc))
            return DirectoryStats()
        return stats

    def reset_all_images(self) -> int:
        deleted = 0
        for entry in list(self.asset_root.iterdir()):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            entry.unlink(missing_ok=True)
            deleted += 1
        for sidecar in list(self.asset_meta_root.glob("*.json")):
            sidecar.unlink(missing_ok=True)
        self.logger.warning("images_reset", deleted=deleted, backend=self.backend_name)
        return deleted

    def _iter_image_files(self) -> Iterator[Path]:
        for entry in self.asset_root.iterdir():
            if IMAGE_FILE_PATTERN.search(entry.name) and not entry.name.startswith("."):
                if entry.is_file():
                    yield entry

    def _sidecar_path(self, asset_id: str) -> Path:
        return self.asset_meta_root / f"{asset_id}.json"

    def _asset_from_file(self, path: Path) -> Optional[Asset]:
        asset_id = path.stem
        sidecar = self._sidecar_path(asset_id)
        try:
            data = json.loads(sidecar.read_text(encoding="utf-8"))
            asset = deserialize_asset(data, self.image_base_url)
            if asset.file_path == path.name:
                return asset
            self.logger.warning("image_sidecar_mismatch", asset_id=asset_id)
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self.logger.warning(
                "image_sidecar_parse_failed", asset_id=asset_id, error=str(exc)
            )
        return self._legacy_asset(path)

    def _legacy_asset(self, path: Path) -> Optional[Asset]:
        """Minimal record for a binary without readable metadata."""
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        asset_id = path.stem
        return Asset(
            id=asset_id,
            title=f"Image {asset_id}",
            model_id="unknown",
            file_path=path.name,
            url=asset_url(self.image_base_url, path.name),
            width=0,
            height=0,
            created_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
        )

    # snapshots
    def save_stage_snapshot(
        self,
        snapshot_id: str,
        text_drafts: List[Any],
        image_drafts: List[Any],
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        composed_draft: Optional[Dict[str, Any]] = None,
        is_manual_save: bool = False,
    ) -> None:
        snapshot = Snapshot(
            id=validate_snapshot_id(snapshot_id),
            timestamp=utcnow(),
            owner_id=owner_id,
            conversation_id=conversation_id,
            is_manual_save=bool(is_manual_save),
            payload=SnapshotPayload(
                text_drafts=list(text_drafts or []),
                image_drafts=list(image_drafts or []),
                composed_draft=composed_draft,
            ),
        )
        self.write_snapshot(snapshot)

    def write_snapshot(self, snapshot: Snapshot) -> None:
        """Replace ``<id>.json`` in one rename so readers never see a mixed record."""
        document = dump_json_document(serialize_snapshot(snapshot)).encode("utf-8")
        path = self._snapshot_path(snapshot.id)
        try:
            write_atomic(path, document)
        except OSError as exc:
            self.logger.error(
                "snapshot_write_failed", snapshot_id=snapshot.id, error=str(exc)
            )
            raise StorageError(
                "snapshot could not be written", {"snapshot_id": snapshot.id}
            ) from exc
        self.logger.info(
            "snapshot_saved",
            snapshot_id=snapshot.id,
            owner_id=snapshot.owner_id,
            conversation_id=snapshot.conversation_id,
            is_manual_save=snapshot.is_manual_save,
            backend=self.backend_name,
        )

    def get_stage_snapshots(
        self,
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        snapshot_id: Optional[str] = None,
        only_manual: bool = False,
    ) -> List[Snapshot]:
        if snapshot_id is not None:
            if not is_valid_record_id(snapshot_id):
                return []
            single = self._load_snapshot(self._snapshot_path(snapshot_id))
            candidates = [single] if single else []
        else:
            candidates = list(self._iter_snapshots())
        return filter_snapshots(
            candidates,
            owner_id=owner_id,
            conversation_id=conversation_id,
            snapshot_id=snapshot_id,
            only_manual=only_manual,
        )

    def delete_stage_snapshot(self, snapshot_id: str, owner_id: Optional[str]) -> None:
        if owner_id is None or not is_valid_record_id(snapshot_id):
            return
        path = self._snapshot_path(snapshot_id)
        snapshot = self._load_snapshot(path)
        if snapshot is None or snapshot.owner_id != owner_id:
            return
        path.unlink(missing_ok=True)
        self.logger.info(
            "snapshot_deleted", snapshot_id=snapshot_id, owner_id=owner_id,
            backend=self.backend_name,
        )

    def clear_stage_snapshots(self, owner_id: Optional[str] = None) -> None:
        deleted = 0
        for path in self._snapshot_files():
            if owner_id is not None:
                snapshot = self._load_snapshot(path)
                if snapshot is None or snapshot.owner_id != owner_id:
                    continue
            path.unlink(missing_ok=True)
            deleted += 1
        self.logger.info(
            "snapshots_cleared", owner_id=owner_id, deleted=deleted,
            backend=self.backend_name,
        )

    def _snapshot_path(self, snapshot_id: str) -> Path:
        return safe_join(self.snapshot_root, f"{snapshot_id}.json")

    def _snapshot_files(self) -> List[Path]:
        try:
            # Atomic-write temp files end in .tmp, so the glob never sees them
            return list(self.snapshot_root.glob("*.json"))
        except OSError as exc:
            self.logger.error("snapshot_list_failed", error=str(exc))
            return []

    def _iter_snapshots(self) -> Iterator[Snapshot]:
        for path in self._snapshot_files():
            snapshot = self._load_snapshot(path)
            if snapshot is not None:
                yield snapshot

    def _load_snapshot(self, path: Path) -> Optional[Snapshot]:
        try:
            return deserialize_snapshot(json.loads(path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self.logger.warning(
                "snapshot_payload_parse_failed", snapshot_file=path.name, error=str(exc)
            )
            return None
