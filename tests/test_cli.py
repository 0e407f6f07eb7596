import json
from pathlib import Path

from typer.testing import CliRunner

from msgstore.cli import app

runner = CliRunner()


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def test_init_db_is_idempotent(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")

    first = _invoke("init-db", "--db-path", db_path)
    second = _invoke("init-db", "--db-path", db_path)

    assert first.exit_code == 0
    assert "Created:" in first.stdout
    assert second.exit_code == 0
    assert "Schema already up to date" in second.stdout


def test_persist_and_query_json(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")
    _invoke("persist", "hello", "--tag", "alerts", "--timestamp", "100", "--db-path", db_path)
    _invoke("persist", "world", "--timestamp", "200", "--db-path", db_path)

    result = _invoke("query", "--json", "--db-path", db_path)
    tagged = _invoke("query", "--tag", "alerts", "--json", "--db-path", db_path)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [item["content"] for item in payload] == ["hello", "world"]
    assert payload[0]["tags"] == ["alerts"]
    assert [item["mid"] for item in json.loads(tagged.stdout)] == [1]


def test_query_limit_and_empty_output(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")
    empty = _invoke("query", "--db-path", db_path)
    assert empty.exit_code == 0
    assert "No messages" in empty.stdout

    for i in range(3):
        _invoke("persist", f"m{i}", "--timestamp", str(10 + i), "--db-path", db_path)
    limited = _invoke("query", "--limit", "2", "--json", "--db-path", db_path)
    assert len(json.loads(limited.stdout)) == 2


def test_publish_and_session_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")

    first = _invoke("publish", "chan1", "one", "--db-path", db_path)
    second = _invoke("publish", "chan1", "two", "--tag", "x", "--db-path", db_path)

    assert first.exit_code == 0
    assert "position 0" in first.stdout
    assert "position 1" in second.stdout
    session_id = first.stdout.split("session ")[1].split()[0]

    history = _invoke("sessions", "history", "chan1", "--db-path", db_path)
    assert history.exit_code == 0
    assert session_id in history.stdout

    show = _invoke("sessions", "show", session_id, "--db-path", db_path)
    assert show.exit_code == 0
    assert "channel: chan1" in show.stdout
    assert "one" in show.stdout
    assert "two" in show.stdout

    closed = _invoke("sessions", "close", session_id, "--db-path", db_path)
    again = _invoke("sessions", "close", session_id, "--db-path", db_path)
    assert "Closed session" in closed.stdout
    assert "already closed" in again.stdout

    third = _invoke("publish", "chan1", "three", "--db-path", db_path)
    assert "position 0" in third.stdout
    assert session_id not in third.stdout


def test_sessions_show_unknown(tmp_path: Path) -> None:
    result = _invoke("sessions", "show", "missing", "--db-path", str(tmp_path / "store.sqlite"))
    assert result.exit_code == 1
    assert "Unknown session" in result.stdout


def test_stats_command(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")
    _invoke("persist", "hello", "--tag", "a", "--db-path", db_path)

    result = _invoke("stats", "--db-path", db_path)

    assert result.exit_code == 0
    assert "messages: 1" in result.stdout
    assert "last_id: 1" in result.stdout


def test_invalid_arguments_exit_nonzero(tmp_path: Path) -> None:
    db_path = str(tmp_path / "store.sqlite")
    result = _invoke("persist", "x", "--tag", "", "--db-path", db_path)
    assert result.exit_code == 1
    assert "InvalidArgument" in result.stdout


def test_unreachable_backend_exits_nonzero(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("")
    result = _invoke("stats", "--db-path", str(blocker / "store.sqlite"))
    assert result.exit_code == 1
    assert "StorageUnavailable" in result.stdout


def test_db_path_from_env(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "env.sqlite"
    monkeypatch.setenv("MSGSTORE_DB", str(db_path))
    result = _invoke("init-db")
    assert result.exit_code == 0
    assert db_path.exists()


def test_version_command() -> None:
    result = _invoke("version")
    assert result.exit_code == 0
    assert result.stdout.strip()
