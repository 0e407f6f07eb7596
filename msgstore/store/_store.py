from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from .. import db
from .. import query as store_query
from .. import schema
from ..config import load_config
from ..errors import InvalidArgument
from . import messages as store_messages
from . import sessions as store_sessions
from . import tags as store_tags
from .types import Message

logger = logging.getLogger(__name__)


class MessageStore:
    """Durable tag-indexed message store.

    Each thread gets its own connection to the database, so persists and
    queries from different threads run concurrently and are isolated by
    SQLite (WAL readers never block the single writer).
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        clock: Callable[[], float] | None = None,
        timeout_s: float | None = None,
        hide_inactive: bool | None = None,
        page_size: int | None = None,
    ):
        cfg = load_config()
        self.config = cfg
        self.db_path = Path(db_path or cfg.db_path).expanduser()
        self.clock = clock or time.time
        self.timeout_s = cfg.backend_timeout_ms / 1000.0 if timeout_s is None else timeout_s
        self.hide_inactive = cfg.hide_inactive if hide_inactive is None else hide_inactive
        self.page_size = cfg.query_page_size if page_size is None else page_size
        if self.page_size <= 0:
            raise InvalidArgument(f"page_size must be positive, got {self.page_size}")
        self._local = threading.local()
        self._conns_lock = threading.Lock()
        self._conns: list[sqlite3.Connection] = []

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = db.connect(self.db_path, timeout_s=self.timeout_s)
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def release_thread_conn(self) -> None:
        """Close the calling thread's connection, if it opened one.

        Short-lived threads (expiry timers) call this before exiting so their
        connections do not pile up until close().
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._conns_lock:
            self._conns = [pooled for pooled in self._conns if pooled is not conn]
        conn.close()

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = self._conns, []
            self._local = threading.local()
        for conn in conns:
            conn.close()

    def ensure_schema(self) -> list[str]:
        return schema.ensure_schema(self.conn)

    def require_schema(self) -> None:
        schema.require_schema(self.conn)

    def persist(
        self,
        content: bytes,
        timestamp: float | None = None,
        tags: Iterable[str] | None = (),
    ) -> Message:
        """Store a message with its tags as one atomic unit and return it with its id."""
        payload = store_messages.validate_content(content)
        tag_names = store_tags.validate_tag_names(tags)
        ts = store_messages.validate_timestamp(self.clock() if timestamp is None else timestamp)
        self.require_schema()
        with db.translate_errors("persist"):
            with db.transaction(self.conn) as conn:
                message = store_messages.insert_message(
                    conn, content=payload, ts=ts, tag_names=tag_names
                )
        logger.debug("persisted message %s with %d tags", message.mid, len(tag_names))
        return message

    def query(
        self, predicate: store_query.Identifier, *, now: float | None = None
    ) -> Iterator[Message]:
        """Lazily yield matches in (timestamp, id) order.

        Absolute bounds are computed here, when the query runs. Results are
        fetched page by page; each message is read together with its tags,
        while separate pages may see different snapshots.
        """
        where, params = self._where(predicate, self.clock() if now is None else now)
        self.require_schema()
        return self._iter_pages(where, params)

    def _where(self, predicate: store_query.Identifier | None, now: float) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if predicate is not None:
            clause, predicate_params = store_query.evaluate(predicate, now)
            clauses.append(f"({clause})")
            params.extend(predicate_params)
        if self.hide_inactive:
            clause, inactive_params = store_query.tag_exists_clause(
                schema.INACTIVE_TAG, negate=True
            )
            clauses.append(clause)
            params.extend(inactive_params)
        return " AND ".join(clauses), params

    def _iter_pages(self, where: str, params: list[Any]) -> Iterator[Message]:
        after: tuple[float, int] | None = None
        while True:
            with db.translate_errors("query"):
                page = store_messages.query_page(
                    self.conn, where=where, params=params, after=after, limit=self.page_size
                )
            yield from page
            if len(page) < self.page_size:
                return
            last = page[-1]
            after = (last.ts, last.mid)

    def count(
        self, predicate: store_query.Identifier | None = None, *, now: float | None = None
    ) -> int:
        where, params = self._where(predicate, self.clock() if now is None else now)
        self.require_schema()
        with db.translate_errors("count"):
            return store_messages.count_messages(self.conn, where=where, params=params)

    def get(self, mid: int) -> Message | None:
        self.require_schema()
        with db.translate_errors("get"):
            return store_messages.message_by_mid(self.conn, mid)

    def tags_for(self, mid: int) -> list[str]:
        self.require_schema()
        with db.translate_errors("tags_for"):
            rid = store_messages.message_rid(self.conn, mid)
            if rid is None:
                return []
            return store_tags.tags_for_message(self.conn, rid)

    def tag_names(self) -> list[str]:
        self.require_schema()
        with db.translate_errors("tag_names"):
            return store_tags.all_tag_names(self.conn)

    def last_id(self) -> int:
        """Last identifier issued by the IDs sequence (0 before the first persist)."""
        self.require_schema()
        with db.translate_errors("last_id"):
            return schema.current_sequence_value(self.conn, schema.ID_SEQUENCE)

    def stats(self) -> dict[str, Any]:
        self.require_schema()
        with db.translate_errors("stats"):
            conn = self.conn
            return {
                "database": str(self.db_path),
                "messages": store_messages.count_messages(conn, where="", params=[]),
                "tags": len(store_tags.all_tag_names(conn)),
                "sessions": store_sessions.count_sessions(conn),
                "channels": len(store_sessions.channel_names(conn)),
                "last_id": schema.current_sequence_value(conn, schema.ID_SEQUENCE),
            }
