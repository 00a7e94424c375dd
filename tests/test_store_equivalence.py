"""Both backends answer the same sequence of calls with the same records."""

import contextlib
import re
from pathlib import Path

import pytest

from stagevault.storage.filesystem import FilesystemStore
from stagevault.storage.postgres import PostgresStore

_COLUMNS = {
    "stage_image": (
        "id", "owner_id", "conversation_id", "title", "prompt", "model_id",
        "file_path", "width", "height", "created_at", "meta",
    ),
    "stage_snapshot": (
        "id", "timestamp", "owner_id", "conversation_id", "is_manual_save", "data",
    ),
}
_TABLE = re.compile(r"^(?:SELECT \* FROM|DELETE FROM|INSERT INTO) (\w+)")
_EQUALS = re.compile(r"(\w+) = %s")
_ORDER = re.compile(r" ORDER BY (\w+) (ASC|DESC)")


class TableConnection:
    """Keeps rows in memory and answers the statements the store issues."""

    def __init__(self):
        self.tables = {name: {} for name in _COLUMNS}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return contextlib.nullcontext()

    def execute(self, sql, params=()):
        statement = " ".join(sql.split())
        match = _TABLE.match(statement)
        if match is None:
            # schema DDL
            return Cursor([])
        table = self.tables[match.group(1)]
        if statement.startswith("INSERT"):
            row = dict(zip(_COLUMNS[match.group(1)], params))
            table[row["id"]] = row
            return Cursor([])
        selected = self._select(statement, params, table.values())
        if statement.startswith("DELETE"):
            for row in selected:
                del table[row["id"]]
            return Cursor([{"file_path": row.get("file_path")} for row in selected])
        order = _ORDER.search(statement)
        if order:
            column, direction = order.groups()
            selected.sort(key=lambda row: (row[column], row["id"]), reverse=direction == "DESC")
        return Cursor(selected)

    @staticmethod
    def _select(statement, params, rows):
        where = statement.partition(" WHERE ")[2]
        where = re.split(r" ORDER BY | RETURNING ", where)[0]
        filters = dict(zip(_EQUALS.findall(where), params))
        manual_only = "is_manual_save = TRUE" in where
        return [
            dict(row)
            for row in rows
            if all(row.get(column) == value for column, value in filters.items())
            and (not manual_only or row["is_manual_save"])
        ]


class Cursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class TablePool:
    def __init__(self):
        self.conn = TableConnection()

    def connection(self):
        return self.conn


@pytest.fixture(params=["filesystem", "postgres"])
def store(request, tmp_path: Path):
    if request.param == "filesystem":
        return FilesystemStore(str(tmp_path))
    return PostgresStore(TablePool(), str(tmp_path))


def _ids(records):
    return [record.id for record in records]


def test_snapshot_sequence(store, fake_clock):
    store.save_stage_snapshot("s1", [{"body": "one"}], [], owner_id="u1", conversation_id="c1")
    store.save_stage_snapshot(
        ".draft", [], [{"asset_id": "a1"}], owner_id="u1", conversation_id="c2",
        is_manual_save=True,
    )
    store.save_stage_snapshot("s3", [], [], owner_id="u2", conversation_id="c1")
    store.save_stage_snapshot(
        "s1", [{"body": "one, edited"}], [], owner_id="u1", conversation_id="c1",
        is_manual_save=True,
    )

    assert _ids(store.get_stage_snapshots()) == ["s1", "s3", ".draft"]
    assert _ids(store.get_stage_snapshots(owner_id="u1")) == ["s1", ".draft"]
    assert _ids(store.get_stage_snapshots(conversation_id="c1")) == ["s1", "s3"]
    assert _ids(store.get_stage_snapshots(only_manual=True)) == ["s1", ".draft"]
    assert _ids(store.get_stage_snapshots(owner_id="u2", only_manual=True)) == []

    [edited] = store.get_stage_snapshots(snapshot_id="s1")
    assert edited.text_drafts == [{"body": "one, edited"}]
    assert edited.is_manual_save is True
    [draft] = store.get_stage_snapshots(snapshot_id=".draft")
    assert draft.image_drafts == [{"asset_id": "a1"}]

    store.delete_stage_snapshot("s3", "u1")
    assert _ids(store.get_stage_snapshots(owner_id="u2")) == ["s3"]

    store.clear_stage_snapshots(owner_id="u1")
    assert _ids(store.get_stage_snapshots()) == ["s3"]

    store.delete_stage_snapshot("s3", "u2")
    assert store.get_stage_snapshots() == []


def test_asset_sequence(store, png_bytes, make_metadata, fake_clock):
    first = store.save_image(png_bytes, make_metadata(user_id="u1", chat_id="c1"))
    second = store.save_image(
        png_bytes, make_metadata(user_id="u1", chat_id="c2", meta={"seed": 3})
    )
    other = store.save_image(png_bytes, make_metadata(user_id="u2", chat_id="c1"))

    assert _ids(store.get_all_images(owner_id="u1")) == [second.id, first.id]
    assert _ids(store.get_all_images(conversation_id="c1")) == [other.id, first.id]
    assert _ids(store.get_all_images(oldest_first=True)) == [first.id, second.id, other.id]

    loaded = store.get_image(second.id)
    assert (loaded.owner_id, loaded.conversation_id, loaded.meta) == ("u1", "c2", {"seed": 3})
    assert loaded.url == second.url
    assert loaded.created_at == second.created_at
    assert store.read_image_bytes(first.id) == png_bytes

    assert store.delete_image(first.id) is True
    assert store.delete_image(first.id) is False
    assert store.get_image(first.id) is None
    assert _ids(store.get_all_images()) == [other.id, second.id]
    assert store.directory_stats().file_count == 2
