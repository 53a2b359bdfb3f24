from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from chart_feed.core.enums import ReadyState
from chart_feed.feed.transport import SocketEvents


class FakeTimer:
    def __init__(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records delayed callbacks; tests fire them explicitly."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay_seconds, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> list[float]:
        return [timer.delay_seconds for timer in self.timers]

    @property
    def pending(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def fire_next(self) -> bool:
        pending = self.pending
        if not pending:
            return False
        timer = pending[0]
        callback = timer.callback
        timer.cancelled = True
        callback()
        return True


class FakeConnection:
    def __init__(self, url: str, events: SocketEvents) -> None:
        self.url = url
        self.events = events
        self.ready_state = ReadyState.CONNECTING
        self.sent_raw: list[str] = []
        self.close_calls = 0

    @property
    def sent(self) -> list[Any]:
        return [json.loads(frame) for frame in self.sent_raw]

    def send(self, data: str) -> None:
        self.sent_raw.append(data)

    def close(self) -> None:
        self.close_calls += 1
        self.ready_state = ReadyState.CLOSED
        self.events.on_close(True, 1000, "")

    def simulate_open(self) -> None:
        self.ready_state = ReadyState.OPEN
        self.events.on_open()

    def simulate_message(self, payload: Any) -> None:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        self.events.on_message(data)

    def simulate_error(self, error: BaseException | None = None) -> None:
        self.events.on_error(error or ConnectionError("boom"))

    def simulate_close(self, *, clean: bool = False, code: int | None = 1006, reason: str = "") -> None:
        self.ready_state = ReadyState.CLOSED
        self.events.on_close(clean, code, reason)


class FakeTransport:
    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.fail_next = False

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]

    def open(self, url: str, events: SocketEvents) -> FakeConnection:
        if self.fail_next:
            self.fail_next = False
            raise ValueError(f"invalid socket url: {url}")
        connection = FakeConnection(url, events)
        self.connections.append(connection)
        return connection


class StepClock:
    """Returns ``now`` and then advances it by ``step`` on every call."""

    def __init__(self, now: float, step: float = 0.0) -> None:
        self.now = now
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
