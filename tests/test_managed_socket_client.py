from __future__ import annotations

from typing import Any

from conftest import FakeScheduler, FakeTransport

from chart_feed.core.enums import ConnectionState, ReadyState
from chart_feed.feed.scheduling import ReconnectPolicy
from chart_feed.feed.socket import ManagedSocketClient
from chart_feed.feed.status import ConnectionStatusBroadcaster


def _client(
    transport: FakeTransport,
    scheduler: FakeScheduler,
    **kwargs: Any,
) -> ManagedSocketClient:
    return ManagedSocketClient("ws://feed.test", transport=transport, scheduler=scheduler, **kwargs)


def test_reconnect_policy_backoff_is_capped() -> None:
    assert ReconnectPolicy().delays() == (1.0, 2.0, 4.0, 8.0, 10.0)
    assert ReconnectPolicy(max_attempts=2, base_delay_seconds=0.5).delays() == (0.5, 1.0)


def test_abnormal_closes_retry_with_backoff_then_give_up(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    status = ConnectionStatusBroadcaster()
    seen: list[ConnectionState] = []
    status.subscribe(seen.append)
    give_ups: list[bool] = []
    client = _client(transport, scheduler, status=status, on_give_up=lambda: give_ups.append(True))

    client.connect()
    transport.last.simulate_close(clean=False)
    for _ in range(5):
        assert scheduler.fire_next()
        transport.last.simulate_close(clean=False)

    assert scheduler.delays == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert len(transport.connections) == 6
    assert scheduler.fire_next() is False
    assert give_ups == [True]
    assert client.state is ConnectionState.DISCONNECTED
    assert seen == [
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.RECONNECTING,
        ConnectionState.DISCONNECTED,
    ]


def test_successful_open_resets_retry_budget(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler)

    client.connect()
    transport.last.simulate_close(clean=False)
    scheduler.fire_next()
    transport.last.simulate_close(clean=False)
    assert client.reconnect_attempts == 2

    scheduler.fire_next()
    transport.last.simulate_open()
    assert client.reconnect_attempts == 0
    assert client.state is ConnectionState.CONNECTED

    transport.last.simulate_close(clean=False)
    assert scheduler.delays == [1.0, 2.0, 1.0]


def test_manual_close_cancels_pending_retry(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler)

    client.connect()
    transport.last.simulate_close(clean=False)
    assert client.retry_pending

    client.close()

    assert client.manual_close
    assert not client.retry_pending
    assert scheduler.fire_next() is False
    assert len(transport.connections) == 1
    assert client.state is ConnectionState.DISCONNECTED


def test_manual_close_of_open_socket_does_not_reconnect(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    closes: list[bool] = []
    client = _client(transport, scheduler, on_close=closes.append)

    client.connect()
    transport.last.simulate_open()
    client.close()

    assert transport.last.close_calls == 1
    transport.last.simulate_close(clean=False)

    assert closes == [True, False]
    assert scheduler.timers == []
    assert client.state is ConnectionState.DISCONNECTED


def test_clean_close_does_not_retry(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler)

    client.connect()
    transport.last.simulate_open()
    transport.last.simulate_close(clean=True, code=1000)

    assert scheduler.timers == []
    assert client.state is ConnectionState.DISCONNECTED


def test_construction_error_is_not_retried(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler)
    transport.fail_next = True

    client.connect()

    assert transport.connections == []
    assert scheduler.timers == []
    assert client.state is ConnectionState.DISCONNECTED
    assert client.ready_state is ReadyState.CLOSED


def test_events_from_superseded_connection_are_ignored(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    messages: list[str] = []
    client = _client(transport, scheduler, on_message=messages.append)

    client.connect()
    first = transport.last
    first.simulate_close(clean=False)
    scheduler.fire_next()
    second = transport.last
    second.simulate_open()

    first.simulate_message("stale")
    first.simulate_close(clean=False)
    second.simulate_message("fresh")

    assert messages == ["fresh"]
    assert scheduler.delays == [1.0]
    assert client.state is ConnectionState.CONNECTED


def test_connect_is_noop_while_connecting_or_open(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler)

    client.connect()
    client.connect()
    transport.last.simulate_open()
    client.reconnect()

    assert len(transport.connections) == 1


def test_reconnect_after_give_up_starts_fresh_budget(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    client = _client(transport, scheduler, policy=ReconnectPolicy(max_attempts=1))

    client.connect()
    transport.last.simulate_close(clean=False)
    scheduler.fire_next()
    transport.last.simulate_close(clean=False)
    assert client.state is ConnectionState.DISCONNECTED

    client.reconnect()
    assert client.state is ConnectionState.CONNECTING
    assert client.reconnect_attempts == 0
    assert len(transport.connections) == 3


def test_send_requires_open_socket_and_serializes_compactly(
    transport: FakeTransport,
    scheduler: FakeScheduler,
) -> None:
    client = _client(transport, scheduler)
    assert client.send({"type": "pong"}) is False

    client.connect()
    assert client.send({"type": "pong"}) is False

    transport.last.simulate_open()
    assert client.send({"type": "pong", "n": 1}) is True
    assert client.send("raw") is True
    assert transport.last.sent_raw == ['{"type":"pong","n":1}', "raw"]


def test_url_provider_is_evaluated_per_connection(transport: FakeTransport, scheduler: FakeScheduler) -> None:
    urls = iter(["ws://one.test", "ws://two.test"])
    client = ManagedSocketClient(lambda: next(urls), transport=transport, scheduler=scheduler)

    client.connect()
    transport.last.simulate_close(clean=False)
    scheduler.fire_next()

    assert [connection.url for connection in transport.connections] == ["ws://one.test", "ws://two.test"]
