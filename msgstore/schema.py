"""Graph namespace and schema registrar.

The store is a property graph laid out on SQLite: every vertex class and edge
class is a table with an integer ``rid`` key, edge tables carry ``out_rid`` and
``in_rid`` endpoints, and sequences live as rows of the ``sequences`` table.
Class, property, sequence and index names are part of the persisted contract
and must not change.
"""

from __future__ import annotations

import logging
import sqlite3
import threading

from . import db
from .errors import InvalidArgument, SchemaNotInitialized

logger = logging.getLogger(__name__)

ID_SEQUENCE = "IDs"
SEQUENCE_TABLE = "sequences"

TAG_CLASS = "Tag"
TAG_NAME_PROPERTY = "name"
TAG_NAME_INDEX = "Tag.NameIndex"

MESSAGE_CLASS = "Message"
MESSAGE_ID_PROPERTY = "mid"
MESSAGE_TIMESTAMP_PROPERTY = "ts"
MESSAGE_CONTENT_PROPERTY = "d"
MESSAGE_TIMESTAMP_INDEX = "Message.TsIndex"
MESSAGE_TAG_RELATIONSHIP = "tagged-by"

INACTIVE_TAG = "inactive"

# Legacy stores named the session class in lowercase; SQLite resolves table
# names case-insensitively, so "Session" and "session" are the same class.
SESSION_CLASS = "session"
SESSION_ID_KEY = "sessionId"
SESSION_CHANNEL_KEY = "channelName"
SESSION_NEXT_INDEX_KEY = "nextIndex"
SESSION_MAX_BUFFER_PERIOD_IN_SEC_KEY = "maxBufferPeriodInSec"
SESSION_STATE_KEY = "state"
SESSION_OPENED_AT_KEY = "openedAt"
SESSION_CHANNEL_INDEX = "session.ChannelIndex"
SESSION_SESSION_RELATIONSHIP = "sessionLinks"
SESSION_MESSAGE_RELATIONSHIP = "collects"
SESSION_MESSAGE_RELATIONSHIP_INDEX = "index"

VERTEX_CLASSES: dict[str, list[str]] = {
    TAG_CLASS: [f"{TAG_NAME_PROPERTY} TEXT NOT NULL"],
    MESSAGE_CLASS: [
        f"{MESSAGE_ID_PROPERTY} INTEGER NOT NULL UNIQUE",
        f"{MESSAGE_TIMESTAMP_PROPERTY} REAL NOT NULL",
        f"{MESSAGE_CONTENT_PROPERTY} BLOB NOT NULL",
    ],
    SESSION_CLASS: [
        f"{SESSION_ID_KEY} TEXT NOT NULL UNIQUE",
        f"{SESSION_CHANNEL_KEY} TEXT NOT NULL",
        f"{SESSION_NEXT_INDEX_KEY} INTEGER NOT NULL DEFAULT 0",
        f"{SESSION_MAX_BUFFER_PERIOD_IN_SEC_KEY} INTEGER NOT NULL",
        f"{SESSION_STATE_KEY} TEXT NOT NULL DEFAULT 'open'",
        f"{SESSION_OPENED_AT_KEY} REAL NOT NULL",
    ],
}

# edge class -> (out vertex class, in vertex class, extra columns, extra constraints)
EDGE_CLASSES: dict[str, tuple[str, str, list[str], list[str]]] = {
    MESSAGE_TAG_RELATIONSHIP: (MESSAGE_CLASS, TAG_CLASS, [], ["UNIQUE(out_rid, in_rid)"]),
    # One successor and one predecessor per session: the chain stays linear.
    SESSION_SESSION_RELATIONSHIP: (
        SESSION_CLASS,
        SESSION_CLASS,
        [],
        ["UNIQUE(out_rid)", "UNIQUE(in_rid)"],
    ),
    SESSION_MESSAGE_RELATIONSHIP: (
        SESSION_CLASS,
        MESSAGE_CLASS,
        [f'"{SESSION_MESSAGE_RELATIONSHIP_INDEX}" INTEGER NOT NULL'],
        [f'UNIQUE(out_rid, "{SESSION_MESSAGE_RELATIONSHIP_INDEX}")'],
    ),
}

# index name -> (class, columns, unique)
INDICES: dict[str, tuple[str, list[str], bool]] = {
    TAG_NAME_INDEX: (TAG_CLASS, [TAG_NAME_PROPERTY], True),
    MESSAGE_TIMESTAMP_INDEX: (
        MESSAGE_CLASS,
        [MESSAGE_TIMESTAMP_PROPERTY, MESSAGE_ID_PROPERTY],
        False,
    ),
    SESSION_CHANNEL_INDEX: (SESSION_CLASS, [SESSION_CHANNEL_KEY], False),
}

SEQUENCES = [ID_SEQUENCE]

_SCHEMA_LOCK = threading.Lock()


class SchemaState:
    """Process-wide record of databases whose schema setup completed.

    Entries are added by ensure_schema (or when require_schema finds a schema
    set up by another process) and only removed by reset().
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._initialized: set[str] = set()

    def mark_initialized(self, key: str) -> None:
        with self._lock:
            self._initialized.add(key)

    def is_initialized(self, key: str) -> bool:
        with self._lock:
            return key in self._initialized

    def reset(self) -> None:
        with self._lock:
            self._initialized.clear()


SCHEMA_STATE = SchemaState()


def ensure_schema(conn: sqlite3.Connection | None) -> list[str]:
    """Create every missing class, sequence and index; return what was created.

    Safe to call repeatedly and concurrently. Creation attempts are serialized
    by a process-wide lock, and the whole setup runs in one transaction so a
    failed attempt leaves nothing behind and a later call converges.
    """
    if conn is None:
        raise InvalidArgument("backend connection is None")

    created: list[str] = []
    with _SCHEMA_LOCK:
        with db.translate_errors("ensure_schema"):
            with db.transaction(conn):
                created.extend(_add_sequence_library(conn))
                for class_name, columns in VERTEX_CLASSES.items():
                    if _add_vertex_class(conn, class_name, columns):
                        created.append(class_name)
                for class_name, (out_class, in_class, columns, constraints) in EDGE_CLASSES.items():
                    if _add_edge_class(conn, class_name, out_class, in_class, columns, constraints):
                        created.append(class_name)
                for sequence_name in SEQUENCES:
                    if _add_sequence(conn, sequence_name):
                        created.append(sequence_name)
                for index_name, (class_name, columns, unique) in INDICES.items():
                    if _add_index(conn, index_name, class_name, columns, unique=unique):
                        created.append(index_name)
            key = db.database_key(conn)
        SCHEMA_STATE.mark_initialized(key)

    for name in created:
        logger.info("schema: created %s", name)
    return created


def schema_complete(conn: sqlite3.Connection) -> bool:
    for class_name in [*VERTEX_CLASSES, *EDGE_CLASSES, SEQUENCE_TABLE]:
        if not db.schema_object_exists(conn, "table", class_name):
            return False
    for index_name in INDICES:
        if not db.schema_object_exists(conn, "index", index_name):
            return False
    for sequence_name in SEQUENCES:
        if not _sequence_exists(conn, sequence_name):
            return False
    return True


def require_schema(conn: sqlite3.Connection) -> None:
    with db.translate_errors("require_schema"):
        key = db.database_key(conn)
        if SCHEMA_STATE.is_initialized(key):
            return
        if schema_complete(conn):
            SCHEMA_STATE.mark_initialized(key)
            return
    raise SchemaNotInitialized("schema setup has not run for this database")


def next_sequence_value(conn: sqlite3.Connection, sequence_name: str) -> int:
    """Advance a sequence. Must run inside the caller's transaction."""
    rows = conn.execute(
        f"""
        UPDATE {SEQUENCE_TABLE}
        SET value = value + increment
        WHERE name = ?
        RETURNING value
        """,
        (sequence_name,),
    ).fetchall()
    if not rows:
        raise SchemaNotInitialized(f"sequence {sequence_name} does not exist")
    return int(rows[0]["value"])


def current_sequence_value(conn: sqlite3.Connection, sequence_name: str) -> int:
    row = conn.execute(
        f"SELECT value FROM {SEQUENCE_TABLE} WHERE name = ?", (sequence_name,)
    ).fetchone()
    if row is None:
        raise SchemaNotInitialized(f"sequence {sequence_name} does not exist")
    return int(row["value"])


def _add_sequence_library(conn: sqlite3.Connection) -> list[str]:
    if db.schema_object_exists(conn, "table", SEQUENCE_TABLE):
        return []
    conn.execute(
        f"""
        CREATE TABLE {SEQUENCE_TABLE} (
            name TEXT PRIMARY KEY,
            value INTEGER NOT NULL,
            increment INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    return [SEQUENCE_TABLE]


def _add_vertex_class(conn: sqlite3.Connection, class_name: str, columns: list[str]) -> bool:
    if db.schema_object_exists(conn, "table", class_name):
        return False
    body = ",\n".join(["rid INTEGER PRIMARY KEY", *columns])
    conn.execute(f"CREATE TABLE {db.quote_ident(class_name)} (\n{body}\n)")
    return True


def _add_edge_class(
    conn: sqlite3.Connection,
    class_name: str,
    out_class: str,
    in_class: str,
    columns: list[str],
    constraints: list[str],
) -> bool:
    if db.schema_object_exists(conn, "table", class_name):
        return False
    body = ",\n".join(
        [
            "rid INTEGER PRIMARY KEY",
            f"out_rid INTEGER NOT NULL REFERENCES {db.quote_ident(out_class)}(rid)",
            f"in_rid INTEGER NOT NULL REFERENCES {db.quote_ident(in_class)}(rid)",
            *columns,
            *constraints,
        ]
    )
    conn.execute(f"CREATE TABLE {db.quote_ident(class_name)} (\n{body}\n)")
    conn.execute(
        f"CREATE INDEX {db.quote_ident(class_name + '.InIndex')} "
        f"ON {db.quote_ident(class_name)}(in_rid)"
    )
    return True


def _sequence_exists(conn: sqlite3.Connection, sequence_name: str) -> bool:
    row = conn.execute(
        f"SELECT 1 FROM {SEQUENCE_TABLE} WHERE name = ?", (sequence_name,)
    ).fetchone()
    return row is not None


def _add_sequence(conn: sqlite3.Connection, sequence_name: str) -> bool:
    if _sequence_exists(conn, sequence_name):
        return False
    # Ordered sequence starting at 0; the first issued value is 1.
    conn.execute(
        f"INSERT INTO {SEQUENCE_TABLE}(name, value, increment) VALUES (?, 0, 1)",
        (sequence_name,),
    )
    return True


def _add_index(
    conn: sqlite3.Connection,
    index_name: str,
    class_name: str,
    columns: list[str],
    *,
    unique: bool,
) -> bool:
    if db.schema_object_exists(conn, "index", index_name):
        return False
    kind = "UNIQUE INDEX" if unique else "INDEX"
    cols = ", ".join(db.quote_ident(c) for c in columns)
    conn.execute(
        f"CREATE {kind} {db.quote_ident(index_name)} ON {db.quote_ident(class_name)}({cols})"
    )
    return True
