from __future__ import annotations

from ._store import MessageStore
from .types import SESSION_CLOSED, SESSION_OPEN, Message, Session

__all__ = [
    "SESSION_CLOSED",
    "SESSION_OPEN",
    "Message",
    "MessageStore",
    "Session",
]
