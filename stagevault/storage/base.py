from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Union

from stagevault.storage.models import Asset, DirectoryStats, ImageMetadata, Snapshot


class StageStore(Protocol):
    """Operations shared by the filesystem and Postgres stores.

    The runtime picks one implementation at startup; callers only ever see
    this interface.
    """

    backend_name: str

    # assets
    def save_image(
        self, data: Union[bytes, str], metadata: ImageMetadata
    ) -> Asset: ...

    def get_image(self, asset_id: str) -> Optional[Asset]: ...

    def read_image_bytes(self, asset_id: str) -> Optional[bytes]: ...

    def get_all_images(
        self,
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        *,
        oldest_first: bool = False,
    ) -> List[Asset]: ...

    def delete_image(self, asset_id: str) -> bool: ...

    def asset_file_size(self, file_path: str) -> Optional[int]: ...

    def directory_stats(self) -> DirectoryStats: ...

    def reset_all_images(self) -> int: ...

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
    ) -> None: ...

    def get_stage_snapshots(
        self,
        owner_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        snapshot_id: Optional[str] = None,
        only_manual: bool = False,
    ) -> List[Snapshot]: ...

    def delete_stage_snapshot(self, snapshot_id: str, owner_id: Optional[str]) -> None: ...

    def clear_stage_snapshots(self, owner_id: Optional[str] = None) -> None: ...

    def close(self) -> None: ...
