from __future__ import annotations

import logging
from collections.abc import Iterable

from .errors import SessionClosed
from .sessions import SessionManager, validate_channel, validate_period
from .store import Message, MessageStore, Session

logger = logging.getLogger(__name__)


def ingest(
    store: MessageStore,
    manager: SessionManager,
    channel_name: str,
    content: bytes,
    tags: Iterable[str] | None = (),
    *,
    max_buffer_period_s: int | None = None,
    timestamp: float | None = None,
) -> tuple[Message, Session, int]:
    """Persist a message and buffer it in the channel's active session.

    When the active session closes between lookup and append, the message goes
    to a freshly opened successor instead. That hand-off is done once; a second
    SessionClosed propagates to the caller.
    """
    channel_name = validate_channel(channel_name)
    if max_buffer_period_s is None:
        max_buffer_period_s = store.config.default_max_buffer_period_s
    period = validate_period(max_buffer_period_s)
    message = store.persist(content, timestamp, tags)
    session = manager.active_or_open(channel_name, period)
    try:
        position = manager.append(session, message)
    except SessionClosed:
        logger.info(
            "session %s closed during ingest on %s, moving to successor",
            session.session_id,
            channel_name,
        )
        session = manager.active_or_open(channel_name, period)
        position = manager.append(session, message)
    return message, session, position
