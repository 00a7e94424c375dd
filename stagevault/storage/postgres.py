from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import psycopg
from psycopg_pool import ConnectionPool

from stagevault.logging import get_logger
from stagevault.service.fs import PathTraversalError, safe_join
from stagevault.storage.common import (
    deserialize_asset,
    dump_json_document,
    is_valid_record_id,
    parse_ts,
    payload_from_blob,
    payload_to_dict,
    validate_snapshot_id,
)
from stagevault.storage.errors import StorageError
from stagevault.storage.filesystem import FilesystemStore
from stagevault.storage.models import (
    Asset,
    DirectoryStats,
    ImageMetadata,
    Snapshot,
    SnapshotPayload,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS stage_image (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        conversation_id TEXT,
        title TEXT NOT NULL,
        prompt TEXT,
        model_id TEXT NOT NULL,
        file_path TEXT NOT NULL,
        width INTEGER NOT NULL,
        height INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stage_snapshot (
        id TEXT PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
        data JSONB
    )
    """,
    # Tables created before owner/conversation scoping existed
    "ALTER TABLE stage_image ADD COLUMN IF NOT EXISTS owner_id TEXT",
    "ALTER TABLE stage_image ADD COLUMN IF NOT EXISTS conversation_id TEXT",
    "ALTER TABLE stage_snapshot ADD COLUMN IF NOT EXISTS owner_id TEXT",
    "ALTER TABLE stage_snapshot ADD COLUMN IF NOT EXISTS conversation_id TEXT",
    "ALTER TABLE stage_snapshot ADD COLUMN IF NOT EXISTS is_manual_save BOOLEAN NOT NULL DEFAULT false",
    "CREATE INDEX IF NOT EXISTS stage_image_created_idx ON stage_image (created_at)",
    "CREATE INDEX IF NOT EXISTS stage_image_owner_idx ON stage_image (owner_id, created_at)",
    "CREATE INDEX IF NOT EXISTS stage_image_conversation_idx ON stage_image (conversation_id, created_at)",
    "CREATE INDEX IF NOT EXISTS stage_snapshot_owner_idx ON stage_snapshot (owner_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS stage_snapshot_conversation_idx ON stage_snapshot (conversation_id, timestamp)",
)


class PostgresStore:
    """Postgres-backed store; rows are authoritative, binaries stay on disk.

    Asset binaries (and their sidecars) are written through a
    ``FilesystemStore`` over the same ``fs_root``. That store also serves
    reads, and takes snapshot writes, when the database drops out at call
    time.
    """

    backend_name = "postgres"

    def __init__(
        self,
        pool: ConnectionPool,
        fs_root: str,
        *,
        image_base_url: str = "/uploads/images",
    ) -> None:
        self.pool = pool
        self.logger = get_logger(__name__)
        self.image_base_url = image_base_url
        self.files = FilesystemStore(fs_root, image_base_url=image_base_url)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes, adding scope columns missing from older schemas."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.files.close()

    # assets
    def save_image(self, data: Union[bytes, str], metadata: ImageMetadata) -> Asset:
        asset = self.files.write_image_file(data, metadata)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO stage_image (id, owner_id, conversation_id, title, prompt, model_id, file_path, width, height, created_at, meta) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        asset.id,
                        asset.owner_id,
                        asset.conversation_id,
                        asset.title,
                        asset.prompt,
                        asset.model_id,
                        asset.file_path,
                        asset.width,
                        asset.height,
                        asset.created_at,
                        dump_json_document(asset.meta),
                    ),
                )
        except (psycopg.Error, StorageError) as exc:
            # The file on disk is the durability floor; the row is a best-effort mirror
            self.logger.warning(
                "image_row_insert_failed",
                asset_id=asset.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self.logger.info(
            "image_saved",
            asset_id=asset.id,
            owner_id=asset.owner_id,
            conversation_id=asset.conversation_id,
            backend=self.backend_name,
        )
        return asset

    def get_image(self, asset_id: str) -> Optional[Asset]:
        if not is_valid_record_id(asset_id):
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM stage_image WHERE id = %s", (asset_id,)
                ).fetchone()
        except psycopg.OperationalError as exc:
            self.logger.warning("image_lookup_fallback", asset_id=asset_id, error=str(exc))
            return self.files.get_image(asset_id)
        if not row:
            # Saved while the row mirror was failing
            return self.files.get_image(asset_id)
        return self._asset_from_row(row)

    def read_image_bytes(self, asset_id: str) -> Optional[bytes]:
        asset = self.get_image(asset_id)
        if asset is None:
            return None
        try:
            return safe_join(self.files.asset_root, asset.file_path).read_bytes()
        except (FileNotFoundError, PathTraversalError):
            return None

    def get_all_images(
        self,
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        *,
        oldest_first: bool = False,
    ) -> List[Asset]:
        clauses = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if conversation_id is not None:
            clauses.append("conversation_id = %s")
            params.append(conversation_id)
        where = ""
        if clauses:
            where = " WHERE " + " AND ".join(clauses)
        direction = "ASC" if oldest_first else "DESC"
        query = (
            "SELECT * FROM stage_image"
            + where
            + f" ORDER BY created_at {direction}, id {direction}"
        )
        try:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except psycopg.OperationalError as exc:
            self.logger.warning("image_list_fallback", error=str(exc))
            return self.files.get_all_images(
                owner_id, conversation_id, oldest_first=oldest_first
            )
        assets: List[Asset] = []
        for row in rows:
            try:
                assets.append(self._asset_from_row(row))
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning(
                    "image_row_parse_failed", asset_id=row.get("id"), error=str(exc)
                )
        return assets

    def delete_image(self, asset_id: str) -> bool:
        if not is_valid_record_id(asset_id):
            return False
        binary_removed = False
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "DELETE FROM stage_image WHERE id = %s RETURNING file_path",
                    (asset_id,),
                ).fetchone()
                if row:
                    # Binary goes first; a failed unlink rolls the row delete back
                    self.files.remove_image_file(row["file_path"])
                    binary_removed = True
        except psycopg.Error as exc:
            self.logger.error("image_delete_failed", asset_id=asset_id, error=str(exc))
            if binary_removed:
                return self._delete_orphaned_row(asset_id)
            raise StorageError(
                "image store unavailable", {"asset_id": asset_id}
            ) from exc
        if not row:
            return self.files.delete_image(asset_id)
        self.logger.info("image_deleted", asset_id=asset_id, backend=self.backend_name)
        return True

    def _delete_orphaned_row(self, asset_id: str) -> bool:
        """Drop a row whose binary is already gone after its commit failed.

        If this retry fails too the row stays behind; a later ``delete_image``
        for the same id still removes it, since a missing binary is not an error.
        """
        self.logger.warning("image_row_orphaned", asset_id=asset_id)
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM stage_image WHERE id = %s", (asset_id,))
        except psycopg.Error as exc:
            self.logger.error("image_row_cleanup_failed", asset_id=asset_id, error=str(exc))
            raise StorageError(
                "image store unavailable", {"asset_id": asset_id}
            ) from exc
        self.logger.info("image_deleted", asset_id=asset_id, backend=self.backend_name)
        return True

    def asset_file_size(self, file_path: str) -> Optional[int]:
        return self.files.asset_file_size(file_path)

    def directory_stats(self) -> DirectoryStats:
        return self.files.directory_stats()

    def reset_all_images(self) -> int:
        with self._connect() as conn:
            conn.execute("DELETE FROM stage_image")
        return self.files.reset_all_images()

    def _asset_from_row(self, row: Dict[str, Any]) -> Asset:
        return deserialize_asset(row, self.image_base_url)

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
        data = dump_json_document(payload_to_dict(snapshot.payload))
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO stage_snapshot (id, timestamp, owner_id, conversation_id, is_manual_save, data)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        timestamp = EXCLUDED.timestamp,
                        owner_id = EXCLUDED.owner_id,
                        conversation_id = EXCLUDED.conversation_id,
                        is_manual_save = EXCLUDED.is_manual_save,
                        data = EXCLUDED.data
                    """,
                    (
                        snapshot.id,
                        snapshot.timestamp,
                        snapshot.owner_id,
                        snapshot.conversation_id,
                        snapshot.is_manual_save,
                        data,
                    ),
                )
        except psycopg.OperationalError as exc:
            self.logger.warning(
                "snapshot_save_fallback", snapshot_id=snapshot.id, error=str(exc)
            )
            self.files.write_snapshot(snapshot)
            return
        except psycopg.Error as exc:
            self.logger.error(
                "snapshot_save_failed", snapshot_id=snapshot.id, error=str(exc)
            )
            raise StorageError(
                "snapshot could not be saved", {"snapshot_id": snapshot.id}
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
        clauses = []
        params: list[Any] = []
        if snapshot_id is not None:
            clauses.append("id = %s")
            params.append(snapshot_id)
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        if conversation_id is not None:
            clauses.append("conversation_id = %s")
            params.append(conversation_id)
        if only_manual:
            clauses.append("is_manual_save = TRUE")
        where = ""
        if clauses:
            where = " WHERE " + " AND ".join(clauses)
        query = "SELECT * FROM stage_snapshot" + where + " ORDER BY timestamp DESC"
        try:
            with self._connect() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except psycopg.OperationalError as exc:
            self.logger.warning("snapshot_list_fallback", error=str(exc))
            return self.files.get_stage_snapshots(
                owner_id, conversation_id, snapshot_id, only_manual
            )
        snapshots: List[Snapshot] = []
        for row in rows:
            try:
                timestamp = parse_ts(row.get("timestamp"))
                if timestamp is None:
                    raise ValueError("snapshot timestamp missing or invalid")
                snapshots.append(
                    Snapshot(
                        id=str(row["id"]),
                        timestamp=timestamp,
                        owner_id=row.get("owner_id"),
                        conversation_id=row.get("conversation_id"),
                        is_manual_save=bool(row.get("is_manual_save")),
                        payload=payload_from_blob(row.get("data")),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning(
                    "snapshot_payload_parse_failed",
                    snapshot_id=row.get("id"),
                    error=str(exc),
                )
        return snapshots

    def delete_stage_snapshot(self, snapshot_id: str, owner_id: Optional[str]) -> None:
        if owner_id is None:
            return
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM stage_snapshot WHERE id = %s AND owner_id = %s",
                    (snapshot_id, owner_id),
                )
        except psycopg.OperationalError as exc:
            self.logger.error(
                "snapshot_delete_failed", snapshot_id=snapshot_id, error=str(exc)
            )
            raise StorageError(
                "snapshot store unavailable", {"snapshot_id": snapshot_id}
            ) from exc
        # Drop any copy written while the database was unreachable
        self.files.delete_stage_snapshot(snapshot_id, owner_id)
        self.logger.info(
            "snapshot_deleted", snapshot_id=snapshot_id, owner_id=owner_id,
            backend=self.backend_name,
        )

    def clear_stage_snapshots(self, owner_id: Optional[str] = None) -> None:
        try:
            with self._connect() as conn:
                if owner_id is None:
                    conn.execute("DELETE FROM stage_snapshot")
                else:
                    conn.execute(
                        "DELETE FROM stage_snapshot WHERE owner_id = %s", (owner_id,)
                    )
        except psycopg.OperationalError as exc:
            self.logger.error("snapshot_clear_failed", owner_id=owner_id, error=str(exc))
            raise StorageError(
                "snapshot store unavailable", {"owner_id": owner_id}
            ) from exc
        self.files.clear_stage_snapshots(owner_id)
