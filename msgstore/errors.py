"""Error taxonomy shared by the schema registrar, message store and session manager.

InvalidArgument is raised before any backend access. StorageUnavailable and
SchemaNotInitialized are produced at the db boundary from sqlite3 errors.
SessionClosed is the only expected, recoverable error: the caller opens (or
follows) the linked successor session and retries there.
"""

from __future__ import annotations


class MsgstoreError(Exception):
    """Base class for every error raised by msgstore."""


class InvalidArgument(MsgstoreError, ValueError):
    pass


class SchemaNotInitialized(MsgstoreError):
    pass


class StorageUnavailable(MsgstoreError):
    pass


class SessionClosed(MsgstoreError):
    def __init__(self, session_id: str, message: str | None = None) -> None:
        super().__init__(message or f"session {session_id} is closed")
        self.session_id = session_id
