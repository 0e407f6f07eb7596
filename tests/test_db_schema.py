from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from msgstore import db, schema
from msgstore.errors import InvalidArgument, SchemaNotInitialized, StorageUnavailable

EXPECTED_TABLES = {
    "Tag",
    "Message",
    "session",
    "tagged-by",
    "sessionLinks",
    "collects",
    "sequences",
}


def _objects(conn: sqlite3.Connection, kind: str) -> list[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = ?", (kind,)).fetchall()
    return [str(row["name"]) for row in rows]


def test_ensure_schema_creates_namespace(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    try:
        created = schema.ensure_schema(conn)
        tables = _objects(conn, "table")
        indices = _objects(conn, "index")
        sequence = conn.execute(
            "SELECT value, increment FROM sequences WHERE name = ?", (schema.ID_SEQUENCE,)
        ).fetchone()
    finally:
        conn.close()

    assert EXPECTED_TABLES <= set(tables)
    assert schema.TAG_NAME_INDEX in indices
    assert schema.ID_SEQUENCE in created
    assert sequence["value"] == 0
    assert sequence["increment"] == 1


def test_ensure_schema_is_idempotent(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    try:
        first = schema.ensure_schema(conn)
        second = schema.ensure_schema(conn)
        schema.SCHEMA_STATE.reset()
        third = schema.ensure_schema(conn)
    finally:
        conn.close()

    assert first
    assert second == []
    assert third == []


def test_ensure_schema_concurrent_callers_create_each_object_once(tmp_path: Path) -> None:
    db_path = tmp_path / "store.sqlite"
    results: list[list[str]] = []
    errors: list[BaseException] = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        conn = db.connect(db_path)
        try:
            barrier.wait()
            results.append(schema.ensure_schema(conn))
        except BaseException as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors
    assert sum(1 for created in results if created) == 1

    conn = db.connect(db_path)
    try:
        tables = _objects(conn, "table")
        indices = _objects(conn, "index")
        sequences = conn.execute(
            "SELECT COUNT(*) FROM sequences WHERE name = ?", (schema.ID_SEQUENCE,)
        ).fetchone()[0]
    finally:
        conn.close()
    for name in EXPECTED_TABLES:
        assert tables.count(name) == 1
    assert indices.count(schema.TAG_NAME_INDEX) == 1
    assert sequences == 1


def test_ensure_schema_rejects_missing_backend() -> None:
    with pytest.raises(InvalidArgument):
        schema.ensure_schema(None)


def test_ensure_schema_failure_leaves_nothing_and_retry_converges(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    original = schema._add_index

    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    try:
        monkeypatch.setattr(schema, "_add_index", _broken)
        with pytest.raises(StorageUnavailable):
            schema.ensure_schema(conn)
        assert _objects(conn, "table") == []

        monkeypatch.setattr(schema, "_add_index", original)
        created = schema.ensure_schema(conn)
        assert schema.schema_complete(conn)
    finally:
        conn.close()
    assert schema.TAG_NAME_INDEX in created


def test_connect_reports_unreachable_backend(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with pytest.raises(StorageUnavailable):
        db.connect(blocker / "store.sqlite")


def test_require_schema_before_setup(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    try:
        with pytest.raises(SchemaNotInitialized):
            schema.require_schema(conn)
        schema.ensure_schema(conn)
        schema.require_schema(conn)
    finally:
        conn.close()


def test_require_schema_accepts_schema_created_elsewhere(tmp_path: Path) -> None:
    db_path = tmp_path / "store.sqlite"
    setup_conn = db.connect(db_path)
    try:
        schema.ensure_schema(setup_conn)
    finally:
        setup_conn.close()
    # Simulates another process having run setup.
    schema.SCHEMA_STATE.reset()

    conn = db.connect(db_path)
    try:
        schema.require_schema(conn)
        assert schema.SCHEMA_STATE.is_initialized(db.database_key(conn))
    finally:
        conn.close()


def test_sequence_values_are_issued_in_order(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    try:
        schema.ensure_schema(conn)
        with db.transaction(conn):
            first = schema.next_sequence_value(conn, schema.ID_SEQUENCE)
            second = schema.next_sequence_value(conn, schema.ID_SEQUENCE)
        current = schema.current_sequence_value(conn, schema.ID_SEQUENCE)
    finally:
        conn.close()

    assert (first, second, current) == (1, 2, 2)


def test_translate_errors_maps_missing_tables(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "store.sqlite")
    try:
        with pytest.raises(SchemaNotInitialized):
            with db.translate_errors("probe"):
                conn.execute('SELECT * FROM "Message"')
    finally:
        conn.close()
