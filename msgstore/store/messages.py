from __future__ import annotations

import json
import math
import sqlite3
from typing import Any

from .. import db
from ..errors import InvalidArgument
from ..schema import (
    ID_SEQUENCE,
    MESSAGE_CLASS,
    MESSAGE_CONTENT_PROPERTY,
    MESSAGE_ID_PROPERTY,
    MESSAGE_TAG_RELATIONSHIP,
    MESSAGE_TIMESTAMP_PROPERTY,
    TAG_CLASS,
    TAG_NAME_PROPERTY,
    next_sequence_value,
)
from . import tags as store_tags
from .types import Message

_MESSAGE = db.quote_ident(MESSAGE_CLASS)

# Message and tag names come back from one statement, so a row never shows a
# message without the tag edges committed with it.
SELECT_MESSAGE = f"""
    SELECT
        m.rid AS rid,
        m.{MESSAGE_ID_PROPERTY} AS mid,
        m.{MESSAGE_TIMESTAMP_PROPERTY} AS ts,
        m.{MESSAGE_CONTENT_PROPERTY} AS d,
        (
            SELECT json_group_array(t.{TAG_NAME_PROPERTY})
            FROM {db.quote_ident(MESSAGE_TAG_RELATIONSHIP)} e
            JOIN {db.quote_ident(TAG_CLASS)} t ON t.rid = e.in_rid
            WHERE e.out_rid = m.rid
        ) AS tags_json
    FROM {_MESSAGE} m
"""


def validate_content(content: object) -> bytes:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    raise InvalidArgument(f"content must be bytes, got {type(content).__name__}")


def validate_timestamp(timestamp: object) -> float:
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise InvalidArgument(f"timestamp must be a number, got {timestamp!r}")
    value = float(timestamp)
    if not math.isfinite(value) or value < 0:
        raise InvalidArgument(f"timestamp must be a non-negative number, got {timestamp!r}")
    return value


def row_to_message(row: sqlite3.Row) -> Message:
    names = json.loads(row["tags_json"] or "[]")
    return Message(
        mid=int(row["mid"]),
        ts=float(row["ts"]),
        content=bytes(row["d"]),
        tags=tuple(sorted(str(name) for name in names)),
    )


def insert_message(
    conn: sqlite3.Connection,
    *,
    content: bytes,
    ts: float,
    tag_names: list[str],
) -> Message:
    """Create the message vertex and its tag edges. Runs inside the caller's transaction."""
    mid = next_sequence_value(conn, ID_SEQUENCE)
    cur = conn.execute(
        f"""
        INSERT INTO {_MESSAGE}(
            {MESSAGE_ID_PROPERTY},
            {MESSAGE_TIMESTAMP_PROPERTY},
            {MESSAGE_CONTENT_PROPERTY}
        )
        VALUES (?, ?, ?)
        """,
        (mid, ts, content),
    )
    message_rid = int(cur.lastrowid)
    tag_rids = store_tags.resolve_tags(conn, tag_names)
    store_tags.tag_message(conn, message_rid, tag_rids.values())
    return Message(mid=mid, ts=ts, content=content, tags=tuple(sorted(tag_names)))


def message_rid(conn: sqlite3.Connection, mid: int) -> int | None:
    row = conn.execute(
        f"SELECT rid FROM {_MESSAGE} WHERE {MESSAGE_ID_PROPERTY} = ?", (mid,)
    ).fetchone()
    if row is None:
        return None
    return int(row["rid"])


def message_by_mid(conn: sqlite3.Connection, mid: int) -> Message | None:
    row = conn.execute(
        f"{SELECT_MESSAGE} WHERE m.{MESSAGE_ID_PROPERTY} = ?", (mid,)
    ).fetchone()
    if row is None:
        return None
    return row_to_message(row)


def query_page(
    conn: sqlite3.Connection,
    *,
    where: str,
    params: list[Any],
    after: tuple[float, int] | None,
    limit: int,
) -> list[Message]:
    """One keyset page of matches ordered by (ts, mid)."""
    clauses = [f"({where})"] if where else []
    page_params = list(params)
    if after is not None:
        ts, mid = after
        clauses.append(
            f"(m.{MESSAGE_TIMESTAMP_PROPERTY} > ? "
            f"OR (m.{MESSAGE_TIMESTAMP_PROPERTY} = ? AND m.{MESSAGE_ID_PROPERTY} > ?))"
        )
        page_params.extend([ts, ts, mid])
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        {SELECT_MESSAGE}
        {where_sql}
        ORDER BY m.{MESSAGE_TIMESTAMP_PROPERTY} ASC, m.{MESSAGE_ID_PROPERTY} ASC
        LIMIT ?
        """,
        [*page_params, limit],
    ).fetchall()
    return [row_to_message(row) for row in rows]


def count_messages(conn: sqlite3.Connection, *, where: str, params: list[Any]) -> int:
    where_sql = f"WHERE {where}" if where else ""
    row = conn.execute(f"SELECT COUNT(*) AS n FROM {_MESSAGE} m {where_sql}", params).fetchone()
    return int(row["n"]) if row else 0
