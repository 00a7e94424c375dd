import base64
from datetime import datetime, timezone

import pytest

from stagevault.storage.common import (
    MAX_RECORD_ID_BYTES,
    decode_image_data,
    dump_json_document,
    is_valid_record_id,
    parse_ts,
    payload_from_blob,
)
from stagevault.storage.errors import AssetWriteError, StorageError


def test_decode_passes_bytes_through():
    assert decode_image_data(b"\x01\x02") == b"\x01\x02"


@pytest.mark.parametrize(
    "prefix", ["", "data:image/png;base64,", "DATA:image/webp;base64,"]
)
def test_decode_strips_data_uri_prefix(prefix):
    encoded = base64.b64encode(b"pixels").decode("ascii")

    assert decode_image_data(prefix + encoded) == b"pixels"


@pytest.mark.parametrize("bad", ["", "data:image/png;base64,", "%%%", b"", 42])
def test_decode_rejects_bad_input(bad):
    with pytest.raises(AssetWriteError):
        decode_image_data(bad)


def test_record_ids_are_single_path_segments():
    assert is_valid_record_id("4f1c-snapshot")
    assert not is_valid_record_id(None)
    assert not is_valid_record_id("a/b")
    assert not is_valid_record_id("a\\b")
    assert not is_valid_record_id("..")


def test_record_id_length_is_capped_in_bytes():
    assert is_valid_record_id("a" * MAX_RECORD_ID_BYTES)
    assert is_valid_record_id(".draft")
    assert not is_valid_record_id("a" * (MAX_RECORD_ID_BYTES + 1))
    # two bytes per character in UTF-8
    assert is_valid_record_id("é" * (MAX_RECORD_ID_BYTES // 2))
    assert not is_valid_record_id("é" * (MAX_RECORD_ID_BYTES // 2 + 1))


def test_parse_ts_normalises_to_utc():
    assert parse_ts("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_ts(datetime(2024, 1, 2)).tzinfo is timezone.utc
    assert parse_ts("yesterday") is None
    assert parse_ts(None) is None


def test_payload_defaults_missing_lists():
    payload = payload_from_blob('{"composed_draft": {"title": "t"}}')

    assert payload.text_drafts == []
    assert payload.image_drafts == []
    assert payload.composed_draft == {"title": "t"}


@pytest.mark.parametrize(
    "raw",
    ['"text"', "[]", '{"text_drafts": "nope"}', '{"composed_draft": [1]}'],
)
def test_payload_rejects_wrong_shapes(raw):
    with pytest.raises(ValueError):
        payload_from_blob(raw)


def test_dump_surfaces_unserialisable_values():
    with pytest.raises(StorageError):
        dump_json_document({"when": object()})
