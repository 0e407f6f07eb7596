from __future__ import annotations

import sqlite3

from .. import db
from ..schema import (
    SESSION_CHANNEL_KEY,
    SESSION_CLASS,
    SESSION_ID_KEY,
    SESSION_MAX_BUFFER_PERIOD_IN_SEC_KEY,
    SESSION_MESSAGE_RELATIONSHIP,
    SESSION_MESSAGE_RELATIONSHIP_INDEX,
    SESSION_NEXT_INDEX_KEY,
    SESSION_OPENED_AT_KEY,
    SESSION_SESSION_RELATIONSHIP,
    SESSION_STATE_KEY,
)
from .messages import SELECT_MESSAGE, row_to_message
from .types import SESSION_CLOSED, SESSION_OPEN, Message, Session

_SESSION = db.quote_ident(SESSION_CLASS)
_LINKS = db.quote_ident(SESSION_SESSION_RELATIONSHIP)
_COLLECTS = db.quote_ident(SESSION_MESSAGE_RELATIONSHIP)
_INDEX = db.quote_ident(SESSION_MESSAGE_RELATIONSHIP_INDEX)


def row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        session_id=str(row[SESSION_ID_KEY]),
        channel_name=str(row[SESSION_CHANNEL_KEY]),
        next_index=int(row[SESSION_NEXT_INDEX_KEY]),
        max_buffer_period_s=int(row[SESSION_MAX_BUFFER_PERIOD_IN_SEC_KEY]),
        state=str(row[SESSION_STATE_KEY]),
        opened_at=float(row[SESSION_OPENED_AT_KEY]),
    )


def insert_session(
    conn: sqlite3.Connection,
    *,
    session_id: str,
    channel_name: str,
    max_buffer_period_s: int,
    opened_at: float,
) -> int:
    cur = conn.execute(
        f"""
        INSERT INTO {_SESSION}(
            {SESSION_ID_KEY},
            {SESSION_CHANNEL_KEY},
            {SESSION_NEXT_INDEX_KEY},
            {SESSION_MAX_BUFFER_PERIOD_IN_SEC_KEY},
            {SESSION_STATE_KEY},
            {SESSION_OPENED_AT_KEY}
        )
        VALUES (?, ?, 0, ?, ?, ?)
        """,
        (session_id, channel_name, max_buffer_period_s, SESSION_OPEN, opened_at),
    )
    return int(cur.lastrowid)


def session_row(conn: sqlite3.Connection, session_id: str) -> sqlite3.Row | None:
    return conn.execute(
        f"SELECT * FROM {_SESSION} WHERE {SESSION_ID_KEY} = ?", (session_id,)
    ).fetchone()


def latest_session_row(conn: sqlite3.Connection, channel_name: str) -> sqlite3.Row | None:
    return conn.execute(
        f"""
        SELECT * FROM {_SESSION}
        WHERE {SESSION_CHANNEL_KEY} = ?
        ORDER BY rid DESC
        LIMIT 1
        """,
        (channel_name,),
    ).fetchone()


def link_sessions(conn: sqlite3.Connection, predecessor_rid: int, successor_rid: int) -> None:
    conn.execute(
        f"INSERT INTO {_LINKS}(out_rid, in_rid) VALUES (?, ?)",
        (predecessor_rid, successor_rid),
    )


def successor_row(conn: sqlite3.Connection, session_rid: int) -> sqlite3.Row | None:
    return conn.execute(
        f"""
        SELECT s.* FROM {_LINKS} l
        JOIN {_SESSION} s ON s.rid = l.in_rid
        WHERE l.out_rid = ?
        """,
        (session_rid,),
    ).fetchone()


def predecessor_row(conn: sqlite3.Connection, session_rid: int) -> sqlite3.Row | None:
    return conn.execute(
        f"""
        SELECT s.* FROM {_LINKS} l
        JOIN {_SESSION} s ON s.rid = l.out_rid
        WHERE l.in_rid = ?
        """,
        (session_rid,),
    ).fetchone()


def channel_history_rows(conn: sqlite3.Connection, channel_name: str) -> list[sqlite3.Row]:
    """Sessions of a channel in chain order, following sessionLinks from the root."""
    return conn.execute(
        f"""
        WITH RECURSIVE chain(rid, depth) AS (
            SELECT s.rid, 0 FROM {_SESSION} s
            WHERE s.{SESSION_CHANNEL_KEY} = ?
              AND NOT EXISTS (SELECT 1 FROM {_LINKS} l WHERE l.in_rid = s.rid)
            UNION ALL
            SELECT l.in_rid, chain.depth + 1
            FROM {_LINKS} l
            JOIN chain ON l.out_rid = chain.rid
        )
        SELECT s.* FROM chain
        JOIN {_SESSION} s ON s.rid = chain.rid
        ORDER BY chain.depth ASC, s.rid ASC
        """,
        (channel_name,),
    ).fetchall()


def close_session_row(conn: sqlite3.Connection, session_id: str) -> bool:
    """Transition open -> closed. Returns False when already closed."""
    cur = conn.execute(
        f"""
        UPDATE {_SESSION}
        SET {SESSION_STATE_KEY} = ?
        WHERE {SESSION_ID_KEY} = ? AND {SESSION_STATE_KEY} = ?
        """,
        (SESSION_CLOSED, session_id, SESSION_OPEN),
    )
    return cur.rowcount == 1


def collect_message(
    conn: sqlite3.Connection, *, session_rid: int, message_rid: int, position: int
) -> None:
    conn.execute(
        f"INSERT INTO {_COLLECTS}(out_rid, in_rid, {_INDEX}) VALUES (?, ?, ?)",
        (session_rid, message_rid, position),
    )
    conn.execute(
        f"""
        UPDATE {_SESSION}
        SET {SESSION_NEXT_INDEX_KEY} = {SESSION_NEXT_INDEX_KEY} + 1
        WHERE rid = ?
        """,
        (session_rid,),
    )


def session_messages(conn: sqlite3.Connection, session_rid: int) -> list[tuple[int, Message]]:
    rows = conn.execute(
        f"""
        SELECT c.{_INDEX} AS position, sub.*
        FROM {_COLLECTS} c
        JOIN ({SELECT_MESSAGE}) sub ON sub.rid = c.in_rid
        WHERE c.out_rid = ?
        ORDER BY c.{_INDEX} ASC
        """,
        (session_rid,),
    ).fetchall()
    return [(int(row["position"]), row_to_message(row)) for row in rows]


def channel_names(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        f"SELECT DISTINCT {SESSION_CHANNEL_KEY} AS name FROM {_SESSION} ORDER BY name"
    ).fetchall()
    return [str(row["name"]) for row in rows]


def count_sessions(conn: sqlite3.Connection) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS n FROM {_SESSION}").fetchone()
    return int(row["n"]) if row else 0
