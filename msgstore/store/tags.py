from __future__ import annotations

import sqlite3
from collections.abc import Iterable

from .. import db
from ..errors import InvalidArgument
from ..schema import MESSAGE_TAG_RELATIONSHIP, TAG_CLASS, TAG_NAME_PROPERTY

_TAG = db.quote_ident(TAG_CLASS)
_TAGGED_BY = db.quote_ident(MESSAGE_TAG_RELATIONSHIP)


def validate_tag_names(tags: Iterable[str] | None) -> list[str]:
    """Return the tag names deduplicated in first-seen order.

    Names are case-sensitive and stored verbatim.
    """
    if tags is None:
        return []
    if isinstance(tags, (str, bytes)):
        raise InvalidArgument("tags must be a collection of names, not a single string")
    deduped: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str) or not tag:
            raise InvalidArgument(f"tag names must be non-empty strings, got {tag!r}")
        if tag in seen:
            continue
        seen.add(tag)
        deduped.append(tag)
    return deduped


def resolve_tags(conn: sqlite3.Connection, names: list[str]) -> dict[str, int]:
    """Map each name to its Tag rid, creating missing tags.

    Uniqueness comes from the Tag.NameIndex unique index: a concurrent creator
    of the same name makes our insert a no-op and we read its row back.
    """
    resolved: dict[str, int] = {}
    for name in names:
        conn.execute(
            f"INSERT INTO {_TAG}({TAG_NAME_PROPERTY}) VALUES (?) "
            f"ON CONFLICT({TAG_NAME_PROPERTY}) DO NOTHING",
            (name,),
        )
        row = conn.execute(
            f"SELECT rid FROM {_TAG} WHERE {TAG_NAME_PROPERTY} = ?", (name,)
        ).fetchone()
        if row is None:
            raise RuntimeError(f"Failed to resolve tag {name!r}")
        resolved[name] = int(row["rid"])
    return resolved


def tag_message(conn: sqlite3.Connection, message_rid: int, tag_rids: Iterable[int]) -> None:
    conn.executemany(
        f"INSERT INTO {_TAGGED_BY}(out_rid, in_rid) VALUES (?, ?)",
        [(message_rid, tag_rid) for tag_rid in tag_rids],
    )


def tags_for_message(conn: sqlite3.Connection, message_rid: int) -> list[str]:
    rows = conn.execute(
        f"""
        SELECT t.{TAG_NAME_PROPERTY} AS name
        FROM {_TAGGED_BY} e
        JOIN {_TAG} t ON t.rid = e.in_rid
        WHERE e.out_rid = ?
        ORDER BY t.{TAG_NAME_PROPERTY}
        """,
        (message_rid,),
    ).fetchall()
    return [str(row["name"]) for row in rows]


def all_tag_names(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        f"SELECT {TAG_NAME_PROPERTY} AS name FROM {_TAG} ORDER BY {TAG_NAME_PROPERTY}"
    ).fetchall()
    return [str(row["name"]) for row in rows]
