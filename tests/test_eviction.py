from pathlib import Path

import pytest

from stagevault.service.eviction import EvictionPolicy, EvictionResult
from stagevault.storage.errors import StorageError
from stagevault.storage.filesystem import FilesystemStore

KB = 1024
MB = 1024 * KB


@pytest.fixture
def store(tmp_path: Path) -> FilesystemStore:
    return FilesystemStore(str(tmp_path))


def _fill(store, make_metadata, count, size):
    return [store.save_image(b"\x89" * size, make_metadata()) for _ in range(count)]


def test_below_ceiling_is_noop(store, make_metadata, fake_clock):
    _fill(store, make_metadata, 3, 100 * KB)

    result = EvictionPolicy(store).cleanup_old_images(1)

    assert result.deleted_ids == []
    assert store.directory_stats().file_count == 3


def test_evicts_oldest_until_low_water_mark(store, make_metadata, fake_clock):
    # 10 x 200KB ~= 1.95MB against a 1MB ceiling; target is 0.8MB
    assets = _fill(store, make_metadata, 10, 200 * KB)

    result = EvictionPolicy(store).cleanup_old_images(1)

    remaining = {a.id for a in store.get_all_images()}
    assert result.deleted_ids == [a.id for a in assets[: len(result.deleted_ids)]]
    assert remaining == {a.id for a in assets[len(result.deleted_ids):]}
    assert result.target_mb == pytest.approx(0.8)
    assert result.size_after_mb <= result.target_mb
    # Stopping one asset earlier would have left the directory above target
    assert result.size_after_mb + 200 * KB / MB > result.target_mb
    assert store.directory_stats().total_size / MB == pytest.approx(result.size_after_mb)


def test_exactly_at_ceiling_triggers_pass(store, make_metadata, fake_clock):
    _fill(store, make_metadata, 4, 256 * KB)

    result = EvictionPolicy(store).cleanup_old_images(1)

    assert result.size_before_mb == pytest.approx(1.0)
    assert len(result.deleted_ids) == 1


def test_rejects_non_positive_ceiling(store):
    with pytest.raises(ValueError):
        EvictionPolicy(store).cleanup_old_images(0)


def test_storage_failure_ends_pass(store, make_metadata, fake_clock, monkeypatch):
    assets = _fill(store, make_metadata, 6, 256 * KB)
    original_delete = store.delete_image
    calls = []

    def flaky_delete(asset_id):
        calls.append(asset_id)
        if len(calls) == 2:
            raise StorageError("image store unavailable")
        return original_delete(asset_id)

    monkeypatch.setattr(store, "delete_image", flaky_delete)

    result = EvictionPolicy(store).cleanup_old_images(1)

    assert result.deleted_ids == [assets[0].id]
    assert len(calls) == 2


def test_undeletable_binary_ends_pass_with_result(store, make_metadata, fake_clock, monkeypatch):
    assets = _fill(store, make_metadata, 6, 256 * KB)
    original_unlink = Path.unlink

    def read_only_unlink(path, missing_ok=False):
        if path.parent.name == "images":
            raise PermissionError("read-only file system")
        return original_unlink(path, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", read_only_unlink)

    result = EvictionPolicy(store).cleanup_old_images(1)

    assert isinstance(result, EvictionResult)
    assert result.deleted_ids == []
    assert result.size_after_mb == result.size_before_mb
    assert {a.id for a in store.get_all_images()} == {a.id for a in assets}
