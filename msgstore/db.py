from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from .config import DEFAULT_DB_PATH as _DEFAULT_DB_PATH
from .errors import SchemaNotInitialized, StorageUnavailable

DEFAULT_DB_PATH = Path(_DEFAULT_DB_PATH).expanduser()
DEFAULT_TIMEOUT_S = 5.0


@contextlib.contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map sqlite3 failures onto the msgstore error taxonomy."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        if "no such table" in str(exc):
            raise SchemaNotInitialized(f"{action}: schema not initialized ({exc})") from exc
        raise StorageUnavailable(f"{action}: {exc}") from exc
    except sqlite3.Error as exc:
        raise StorageUnavailable(f"{action}: {exc}") from exc


def connect(db_path: Path | str, *, timeout_s: float | None = None) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageUnavailable(f"connect: {exc}") from exc
    with translate_errors("connect"):
        # isolation_level=None: transactions are opened explicitly by transaction().
        conn = sqlite3.connect(
            path,
            timeout=DEFAULT_TIMEOUT_S if timeout_s is None else timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.OperationalError:
            conn.execute("PRAGMA journal_mode = DELETE")
        conn.execute("PRAGMA synchronous = NORMAL")
    return conn


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """Run the block as one atomic unit.

    BEGIN IMMEDIATE takes the write lock up front, so concurrent writers queue
    on the busy timeout instead of failing on a lock upgrade. Everything is
    rolled back if the block or the COMMIT raises.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def schema_object_exists(conn: sqlite3.Connection, kind: str, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = ? AND name = ? COLLATE NOCASE",
        (kind, name),
    ).fetchone()
    return row is not None


def database_key(conn: sqlite3.Connection) -> str:
    row = conn.execute("PRAGMA database_list").fetchone()
    if row is None or not row["file"]:
        return f"memory:{id(conn)}"
    return str(Path(row["file"]).resolve())
