from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from itertools import islice

import typer
from rich import print
from rich.markup import escape

from . import __version__
from .errors import MsgstoreError
from .ingest import ingest
from .query import After, AllOf, Before, Identifier, TaggedWith
from .sessions import SessionManager
from .store import Message, MessageStore, Session

app = typer.Typer(help="msgstore: durable tag-indexed message store")
sessions_app = typer.Typer(help="Inspect and manage channel sessions")
app.add_typer(sessions_app, name="sessions")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _store(db_path: str | None) -> MessageStore:
    return MessageStore(db_path)


@contextmanager
def _opened(db_path: str | None, *, setup: bool = True) -> Iterator[MessageStore]:
    try:
        store = _store(db_path)
        try:
            if setup:
                store.ensure_schema()
            yield store
        finally:
            store.close()
    except MsgstoreError as exc:
        print(f"[red]{type(exc).__name__}: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


def _content_text(message: Message) -> str:
    return message.content.decode("utf-8", errors="replace")


def _message_dict(message: Message) -> dict[str, object]:
    return {
        "mid": message.mid,
        "ts": message.ts,
        "tags": list(message.tags),
        "content": _content_text(message),
    }


def _print_message(message: Message, *, position: int | None = None) -> None:
    prefix = f"{position:>4} " if position is not None else ""
    tags = escape(f"[{','.join(message.tags)}]")
    print(f"{prefix}#{message.mid} ts={message.ts:.3f} {tags} {escape(_content_text(message))}")


def _print_session(session: Session) -> None:
    state = "[green]open[/green]" if session.is_open else "closed"
    print(
        f"- {session.session_id} {state} next_index={session.next_index} "
        f"buffer={session.max_buffer_period_s}s opened_at={session.opened_at:.3f}"
    )


@app.command("init-db")
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the schema (idempotent)."""

    with _opened(db_path, setup=False) as store:
        created = store.ensure_schema()
        if created:
            print(f"[green]Created:[/green] {', '.join(created)}")
        else:
            print("Schema already up to date")
        print(f"Database ready: {store.db_path}")


@app.command()
def persist(
    content: str = typer.Argument(..., help="Message content (stored as UTF-8 bytes)"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Tag name (repeatable)"),
    timestamp: float = typer.Option(None, help="Epoch seconds; defaults to now"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Persist one message without buffering it in a session."""

    with _opened(db_path) as store:
        message = store.persist(content.encode("utf-8"), timestamp, tag)
        print(f"Persisted message {message.mid}")


@app.command()
def publish(
    channel: str = typer.Argument(..., help="Channel name"),
    content: str = typer.Argument(..., help="Message content (stored as UTF-8 bytes)"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Tag name (repeatable)"),
    buffer: int = typer.Option(None, help="Max buffer period for a new session, in seconds"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Persist a message and buffer it in the channel's active session."""

    with _opened(db_path) as store:
        manager = SessionManager(store)
        try:
            message, session, position = ingest(
                store, manager, channel, content.encode("utf-8"), tag, max_buffer_period_s=buffer
            )
        finally:
            manager.shutdown()
        print(f"Message {message.mid} -> session {session.session_id} position {position}")


@app.command()
def query(
    before: int = typer.Option(None, help="Messages at least N seconds old"),
    after: int = typer.Option(None, help="Messages from the last N seconds"),
    tag: str = typer.Option(None, help="Messages carrying this tag"),
    limit: int = typer.Option(50, help="Maximum number of messages to show"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Query messages in timestamp order."""

    with _opened(db_path) as store:
        predicates: list[Identifier] = []
        if before is not None:
            predicates.append(Before(before))
        if after is not None:
            predicates.append(After(after))
        if tag:
            predicates.append(TaggedWith(tag))
        if not predicates:
            predicate: Identifier = Before(0)
        elif len(predicates) == 1:
            predicate = predicates[0]
        else:
            predicate = AllOf(tuple(predicates))
        messages = list(islice(store.query(predicate), max(0, limit)))
        if as_json:
            typer.echo(json.dumps([_message_dict(m) for m in messages], ensure_ascii=False))
            return
        if not messages:
            print("No messages")
            return
        for message in messages:
            _print_message(message)


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show store counters."""

    with _opened(db_path) as store:
        for key, value in store.stats().items():
            print(f"{key}: {value}")


@app.command()
def version() -> None:
    """Print msgstore version."""

    print(__version__)


@sessions_app.command("history")
def sessions_history(
    channel: str = typer.Argument(..., help="Channel name"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List a channel's sessions, oldest first."""

    with _opened(db_path) as store:
        history = SessionManager(store).history(channel)
        if not history:
            print(f"No sessions for {channel}")
            return
        for session in history:
            _print_session(session)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Session id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show a session and its messages by position."""

    with _opened(db_path) as store:
        manager = SessionManager(store)
        session = manager.get(session_id)
        if session is None:
            print(f"[red]Unknown session {session_id}[/red]")
            raise typer.Exit(code=1)
        print(f"channel: {session.channel_name}")
        _print_session(session)
        for position, message in manager.messages(session):
            _print_message(message, position=position)


@sessions_app.command("close")
def sessions_close(
    session_id: str = typer.Argument(..., help="Session id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Close a session (no-op when already closed)."""

    with _opened(db_path) as store:
        if SessionManager(store).close(session_id):
            print(f"Closed session {session_id}")
        else:
            print(f"Session {session_id} already closed")
