from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from stagevault.logging import get_logger
from stagevault.storage.base import StageStore
from stagevault.storage.errors import StorageError

logger = get_logger(__name__)

_BYTES_PER_MB = 1024 * 1024


@dataclass
class EvictionResult:
    size_before_mb: float
    size_after_mb: float
    target_mb: float
    deleted_ids: List[str] = field(default_factory=list)


class EvictionPolicy:
    """Keeps the asset root under a size ceiling by removing the oldest assets.

    A pass starts only when the directory has reached ``max_size_mb`` and then
    deletes oldest-first until the running total drops to the low-water mark
    (``LOW_WATER_RATIO * max_size_mb``), so the next few saves do not trigger
    another pass straight away.
    """

    LOW_WATER_RATIO = 0.8

    def __init__(self, store: StageStore) -> None:
        self.store = store

    def cleanup_old_images(self, max_size_mb: float) -> EvictionResult:
        if max_size_mb <= 0:
            raise ValueError("max_size_mb must be positive")
        stats = self.store.directory_stats()
        before_mb = stats.total_size_mb
        target_mb = max_size_mb * self.LOW_WATER_RATIO
        result = EvictionResult(
            size_before_mb=before_mb, size_after_mb=before_mb, target_mb=target_mb
        )
        if before_mb < max_size_mb:
            logger.debug(
                "image_cleanup_skipped", size_mb=round(before_mb, 3), max_size_mb=max_size_mb
            )
            return result

        current = stats.total_size
        target = target_mb * _BYTES_PER_MB
        for asset in self.store.get_all_images(oldest_first=True):
            if current <= target:
                break
            size = self.store.asset_file_size(asset.file_path)
            if size is None:
                continue
            try:
                deleted = self.store.delete_image(asset.id)
            except StorageError as exc:
                logger.error(
                    "image_cleanup_aborted",
                    asset_id=asset.id,
                    deleted=len(result.deleted_ids),
                    error=exc.message,
                )
                break
            if deleted:
                current -= size
                result.deleted_ids.append(asset.id)

        result.size_after_mb = max(current, 0) / _BYTES_PER_MB
        logger.info(
            "image_cleanup_completed",
            size_before_mb=round(before_mb, 3),
            size_after_mb=round(result.size_after_mb, 3),
            target_mb=target_mb,
            deleted=len(result.deleted_ids),
        )
        return result
