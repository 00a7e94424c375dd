import itertools
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="stagevault_test_")
os.environ["SHARED_FS_ROOT"] = _test_tmp_dir
# Tests never reach a real database; partial or stray DB settings would change the backend
for _name in ("DB_HOST", "DB_USER", "DB_PASSWORD", "DB_NAME"):
    os.environ.pop(_name, None)
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stagevault.service.runtime import reset_runtime_for_tests  # noqa: E402
from stagevault.storage.models import ImageMetadata  # noqa: E402

# PNG signature followed by filler; stores never inspect image contents
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + bytes(range(64))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def make_metadata():
    def _make(user_id=None, chat_id=None, **overrides) -> ImageMetadata:
        values = {
            "title": "Harbour at dusk",
            "model_id": "sdxl",
            "width": 1,
            "height": 1,
            "prompt": "a harbour at dusk",
        }
        values.update(overrides)
        return ImageMetadata(user_id=user_id, chat_id=chat_id, **values)

    return _make


@pytest.fixture
def fake_clock(monkeypatch):
    """Make every store timestamp one second later than the previous one."""
    import stagevault.storage.filesystem as filesystem_module
    import stagevault.storage.postgres as postgres_module

    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ticks = itertools.count()

    def _now() -> datetime:
        return start + timedelta(seconds=next(ticks))

    monkeypatch.setattr(filesystem_module, "utcnow", _now)
    monkeypatch.setattr(postgres_module, "utcnow", _now)
    return _now
