from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from msgstore.config import CONFIG_ENV_OVERRIDES
from msgstore.schema import SCHEMA_STATE


@pytest.fixture(autouse=True)
def _isolate_config_and_schema_state(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Iterator[None]:
    monkeypatch.setenv("MSGSTORE_CONFIG", str(tmp_path / "config.json"))
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    SCHEMA_STATE.reset()
    yield
    SCHEMA_STATE.reset()


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTimer:
    def __init__(self, interval: float, function, args=()) -> None:
        self.interval = interval
        self.function = function
        self.args = tuple(args)
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, interval: float, function, args=()) -> FakeTimer:
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_000.0)


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()
