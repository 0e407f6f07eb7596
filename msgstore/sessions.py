from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from . import db
from .errors import InvalidArgument, SessionClosed, StorageUnavailable
from .schema import SESSION_ID_KEY
from .store import SESSION_OPEN, Message, MessageStore, Session
from .store import messages as store_messages
from .store import sessions as store_sessions

logger = logging.getLogger(__name__)

TimerFactory = Callable[..., Any]


class _SessionLock:
    """A session's append lock plus the number of threads holding or awaiting it."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


def _session_id(session: Session | str) -> str:
    if isinstance(session, Session):
        return session.session_id
    if isinstance(session, str) and session:
        return session
    raise InvalidArgument(f"not a session: {session!r}")


def validate_channel(channel_name: object) -> str:
    if not isinstance(channel_name, str) or not channel_name:
        raise InvalidArgument(f"channel name must be a non-empty string, got {channel_name!r}")
    return channel_name


def validate_period(max_buffer_period_s: object) -> int:
    if isinstance(max_buffer_period_s, bool) or not isinstance(max_buffer_period_s, int):
        raise InvalidArgument(
            f"max buffer period must be a positive integer, got {max_buffer_period_s!r}"
        )
    if max_buffer_period_s <= 0:
        raise InvalidArgument(
            f"max buffer period must be a positive integer, got {max_buffer_period_s!r}"
        )
    return max_buffer_period_s


class SessionManager:
    """Buffers a channel's messages into ordered sessions.

    A session is open until its buffer period elapses (timer or lazy check on
    append) or it is closed explicitly; opening a new session for a channel
    links it after the channel's latest session and closes that one.
    Position assignment is serialized per session by an in-process lock and by
    the database write lock.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        clock: Callable[[], float] | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or store.clock
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._session_locks: dict[str, _SessionLock] = {}
        self._channel_locks: dict[str, threading.Lock] = {}
        self._timers: dict[str, Any] = {}

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        # The entry lives while any thread holds or waits on it, so every
        # concurrent caller for a session serializes on the same lock.
        with self._lock:
            entry = self._session_locks.get(session_id)
            if entry is None:
                entry = _SessionLock()
                self._session_locks[session_id] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    self._session_locks.pop(session_id, None)

    def _channel_lock(self, channel_name: str) -> threading.Lock:
        with self._lock:
            lock = self._channel_locks.get(channel_name)
            if lock is None:
                lock = threading.Lock()
                self._channel_locks[channel_name] = lock
            return lock

    def open(self, channel_name: str, max_buffer_period_s: int) -> Session:
        channel_name = validate_channel(channel_name)
        max_buffer_period_s = validate_period(max_buffer_period_s)
        self.store.require_schema()
        session_id = uuid4().hex
        opened_at = self.clock()
        with db.translate_errors("open"):
            with db.transaction(self.store.conn) as conn:
                previous = store_sessions.latest_session_row(conn, channel_name)
                rid = store_sessions.insert_session(
                    conn,
                    session_id=session_id,
                    channel_name=channel_name,
                    max_buffer_period_s=max_buffer_period_s,
                    opened_at=opened_at,
                )
                if previous is not None:
                    store_sessions.link_sessions(conn, int(previous["rid"]), rid)
        session = Session(
            session_id=session_id,
            channel_name=channel_name,
            next_index=0,
            max_buffer_period_s=max_buffer_period_s,
            state=SESSION_OPEN,
            opened_at=opened_at,
        )
        logger.info(
            "opened session %s for channel %s (buffer %ss)",
            session_id,
            channel_name,
            max_buffer_period_s,
        )
        self._schedule_expiry(session)
        if previous is not None:
            self._close_predecessor(str(previous[SESSION_ID_KEY]), session)
        return session

    def _close_predecessor(self, previous_id: str, session: Session) -> None:
        # Separate transaction from the link. The new session is already
        # committed, so a failure here is logged and the predecessor is left to
        # its own timer or to lazy expiry.
        try:
            self.close(previous_id)
        except StorageUnavailable:
            logger.warning(
                "could not close session %s after opening successor %s",
                previous_id,
                session.session_id,
                exc_info=True,
            )

    def append(self, session: Session | str, message: Message) -> int:
        """Record ``message`` at the session's next position and return that position.

        Raises SessionClosed when the session is closed or its buffer period
        has elapsed; the caller continues in a successor session.
        """
        session_id = _session_id(session)
        if not isinstance(message, Message):
            raise InvalidArgument(f"not a message: {message!r}")
        self.store.require_schema()
        position: int | None = None
        with self._session_lock(session_id):
            with db.translate_errors("append"):
                with db.transaction(self.store.conn) as conn:
                    row = store_sessions.session_row(conn, session_id)
                    if row is None:
                        raise InvalidArgument(f"unknown session {session_id}")
                    current = store_sessions.row_to_session(row)
                    if not current.is_open:
                        raise SessionClosed(session_id)
                    if self.clock() >= current.expires_at:
                        store_sessions.close_session_row(conn, session_id)
                    else:
                        message_rid = store_messages.message_rid(conn, message.mid)
                        if message_rid is None:
                            raise InvalidArgument(f"message {message.mid} is not persisted")
                        position = current.next_index
                        store_sessions.collect_message(
                            conn,
                            session_rid=int(row["rid"]),
                            message_rid=message_rid,
                            position=position,
                        )
        if position is None:
            self._cancel_timer(session_id)
            logger.info("session %s closed: buffer period elapsed", session_id)
            raise SessionClosed(session_id)
        logger.debug("session %s: message %s at position %s", session_id, message.mid, position)
        return position

    def close(self, session: Session | str) -> bool:
        """Close the session. Returns False if it was already closed."""
        session_id = _session_id(session)
        self.store.require_schema()
        with self._session_lock(session_id):
            with db.translate_errors("close"):
                with db.transaction(self.store.conn) as conn:
                    if store_sessions.session_row(conn, session_id) is None:
                        raise InvalidArgument(f"unknown session {session_id}")
                    changed = store_sessions.close_session_row(conn, session_id)
        self._cancel_timer(session_id)
        if changed:
            logger.info("closed session %s", session_id)
        return changed

    def get(self, session_id: str) -> Session | None:
        self.store.require_schema()
        with db.translate_errors("get_session"):
            row = store_sessions.session_row(self.store.conn, _session_id(session_id))
        return store_sessions.row_to_session(row) if row is not None else None

    def latest(self, channel_name: str) -> Session | None:
        channel_name = validate_channel(channel_name)
        self.store.require_schema()
        with db.translate_errors("latest_session"):
            row = store_sessions.latest_session_row(self.store.conn, channel_name)
        return store_sessions.row_to_session(row) if row is not None else None

    def active(self, channel_name: str) -> Session | None:
        """The channel's latest session if it still accepts appends."""
        session = self.latest(channel_name)
        if session is None or not session.is_open:
            return None
        if self.clock() >= session.expires_at:
            return None
        return session

    def active_or_open(self, channel_name: str, max_buffer_period_s: int) -> Session:
        with self._channel_lock(validate_channel(channel_name)):
            session = self.active(channel_name)
            if session is not None:
                return session
            return self.open(channel_name, max_buffer_period_s)

    def successor(self, session: Session | str) -> Session | None:
        return self._neighbour(session, store_sessions.successor_row)

    def predecessor(self, session: Session | str) -> Session | None:
        return self._neighbour(session, store_sessions.predecessor_row)

    def _neighbour(self, session: Session | str, lookup: Callable[..., Any]) -> Session | None:
        session_id = _session_id(session)
        self.store.require_schema()
        with db.translate_errors("session_links"):
            conn = self.store.conn
            row = store_sessions.session_row(conn, session_id)
            if row is None:
                raise InvalidArgument(f"unknown session {session_id}")
            neighbour = lookup(conn, int(row["rid"]))
        return store_sessions.row_to_session(neighbour) if neighbour is not None else None

    def history(self, channel_name: str) -> list[Session]:
        """All sessions of a channel, oldest first, following the link chain."""
        channel_name = validate_channel(channel_name)
        self.store.require_schema()
        with db.translate_errors("history"):
            rows = store_sessions.channel_history_rows(self.store.conn, channel_name)
        return [store_sessions.row_to_session(row) for row in rows]

    def messages(self, session: Session | str) -> list[tuple[int, Message]]:
        session_id = _session_id(session)
        self.store.require_schema()
        with db.translate_errors("session_messages"):
            conn = self.store.conn
            row = store_sessions.session_row(conn, session_id)
            if row is None:
                raise InvalidArgument(f"unknown session {session_id}")
            return store_sessions.session_messages(conn, int(row["rid"]))

    def channels(self) -> list[str]:
        self.store.require_schema()
        with db.translate_errors("channels"):
            return store_sessions.channel_names(self.store.conn)

    def shutdown(self) -> None:
        """Cancel every pending expiry timer. Sessions stay open in the store."""
        with self._lock:
            timers, self._timers = list(self._timers.values()), {}
        for timer in timers:
            timer.cancel()

    def _schedule_expiry(self, session: Session) -> None:
        delay = max(0.0, session.expires_at - self.clock())
        timer = self._timer_factory(delay, self._expire, args=(session.session_id,))
        timer.daemon = True
        with self._lock:
            existing = self._timers.pop(session.session_id, None)
            self._timers[session.session_id] = timer
        if existing is not None:
            existing.cancel()
        timer.start()

    def _expire(self, session_id: str) -> None:
        try:
            if self.close(session_id):
                logger.info("session %s flushed after its buffer period", session_id)
        except Exception as exc:
            logger.exception(
                "session expiry failed",
                extra={"session_id": session_id},
                exc_info=exc,
            )
        finally:
            self.store.release_thread_conn()

    def _cancel_timer(self, session_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
