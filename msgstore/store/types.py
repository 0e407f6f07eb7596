from __future__ import annotations

from dataclasses import dataclass

SESSION_OPEN = "open"
SESSION_CLOSED = "closed"


@dataclass(frozen=True)
class Message:
    mid: int
    ts: float
    content: bytes
    tags: tuple[str, ...]


@dataclass(frozen=True)
class Session:
    """Snapshot of a session vertex at the time it was read."""

    session_id: str
    channel_name: str
    next_index: int
    max_buffer_period_s: int
    state: str
    opened_at: float

    @property
    def is_open(self) -> bool:
        return self.state == SESSION_OPEN

    @property
    def expires_at(self) -> float:
        return self.opened_at + self.max_buffer_period_s
