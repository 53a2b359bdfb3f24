from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from chart_feed.core.enums import ConnectionState, ReadyState
from chart_feed.feed.scheduling import ReconnectPolicy, Scheduler, TimerHandle
from chart_feed.feed.status import ConnectionStatusBroadcaster
from chart_feed.feed.transport import SocketConnection, Transport

logger = logging.getLogger(__name__)

UrlSource = str | Callable[[], str]


class _ConnectionListener:
    """Routes transport events to the client, tagged with the connection they belong to."""

    def __init__(self, client: ManagedSocketClient, generation: int) -> None:
        self._client = client
        self._generation = generation

    def on_open(self) -> None:
        self._client._handle_open(self._generation)

    def on_message(self, data: str) -> None:
        self._client._handle_message(self._generation, data)

    def on_error(self, error: BaseException) -> None:
        self._client._handle_error(self._generation, error)

    def on_close(self, clean: bool, code: int | None, reason: str) -> None:
        self._client._handle_close(self._generation, clean, code, reason)


class ManagedSocketClient:
    """Reconnecting socket primitive.

    Lifecycle is an explicit state machine over :class:`ConnectionState`:

    * ``connect()`` moves to CONNECTING and asks the transport for a connection.
    * An open event moves to CONNECTED and resets the retry budget.
    * An abnormal close with budget left moves to RECONNECTING and schedules a
      retry after ``policy.delay_for(attempts)``; with no budget left it moves to
      DISCONNECTED and fires ``on_give_up``.
    * A clean close, a construction error or ``close()`` moves to DISCONNECTED
      without retrying.

    ``close()`` raises the manual-close flag before touching the connection, so
    the close event it provokes never schedules a retry. Events from a
    connection that has been superseded are ignored.
    """

    def __init__(
        self,
        url: UrlSource,
        *,
        transport: Transport,
        scheduler: Scheduler,
        on_open: Callable[[], None] | None = None,
        on_message: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        on_close: Callable[[bool], None] | None = None,
        on_give_up: Callable[[], None] | None = None,
        status: ConnectionStatusBroadcaster | None = None,
        policy: ReconnectPolicy | None = None,
        name: str = "feed",
    ) -> None:
        self._url = url
        self._transport = transport
        self._scheduler = scheduler
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        self._on_give_up = on_give_up
        self._status = status
        self._policy = policy or ReconnectPolicy()
        self._name = name

        self._connection: SocketConnection | None = None
        self._generation = 0
        self._manual_close = False
        self._reconnect_attempts = 0
        self._retry_timer: TimerHandle | None = None
        self._state = ConnectionState.DISCONNECTED

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def ready_state(self) -> ReadyState:
        if self._connection is None:
            return ReadyState.CLOSED
        return self._connection.ready_state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def manual_close(self) -> bool:
        return self._manual_close

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    def connect(self) -> None:
        """Start a new session, resetting the retry budget and the manual-close flag."""
        if self.ready_state in (ReadyState.CONNECTING, ReadyState.OPEN):
            return
        self._cancel_retry()
        self._manual_close = False
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        self._open()

    def reconnect(self) -> None:
        """Reconnect after the client gave up or was closed; no-op while connected."""
        self.connect()

    def close(self) -> None:
        self._manual_close = True
        self._cancel_retry()
        connection = self._connection
        if connection is not None and connection.ready_state in (ReadyState.CONNECTING, ReadyState.OPEN):
            connection.close()
        self._set_state(ConnectionState.DISCONNECTED)

    def send(self, payload: Mapping[str, Any] | str) -> bool:
        connection = self._connection
        if connection is None or connection.ready_state is not ReadyState.OPEN:
            logger.debug("Dropping send on a socket that is not open", extra={"socket": self._name})
            return False
        data = payload if isinstance(payload, str) else json.dumps(payload, separators=(",", ":"))
        connection.send(data)
        return True

    def _open(self) -> None:
        url = self._url() if callable(self._url) else self._url
        self._generation += 1
        listener = _ConnectionListener(self, self._generation)
        try:
            self._connection = self._transport.open(url, listener)
        except Exception:
            logger.exception("Failed to create socket connection", extra={"socket": self._name, "url": url})
            self._connection = None
            self._set_state(ConnectionState.DISCONNECTED)

    def _retry(self) -> None:
        self._retry_timer = None
        if self._manual_close:
            return
        self._open()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._status is not None:
            self._status.set_status(state)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _handle_open(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._reconnect_attempts = 0
        logger.info("Socket connected", extra={"socket": self._name})
        self._set_state(ConnectionState.CONNECTED)
        if self._on_open is not None:
            self._on_open()

    def _handle_message(self, generation: int, data: str) -> None:
        if not self._is_current(generation):
            return
        if self._on_message is not None:
            self._on_message(data)

    def _handle_error(self, generation: int, error: BaseException) -> None:
        if not self._is_current(generation):
            return
        logger.warning("Socket error", extra={"socket": self._name, "reason": error.__class__.__name__})
        if self._on_error is not None:
            self._on_error(error)

    def _handle_close(self, generation: int, clean: bool, code: int | None, reason: str) -> None:
        if not self._is_current(generation):
            return
        if self._on_close is not None:
            self._on_close(clean)

        if self._manual_close:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if clean:
            logger.info("Socket closed cleanly", extra={"socket": self._name, "code": code, "reason": reason})
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if self._reconnect_attempts < self._policy.max_attempts:
            delay = self._policy.delay_for(self._reconnect_attempts)
            self._reconnect_attempts += 1
            logger.warning(
                "Socket closed abnormally; scheduling reconnect",
                extra={
                    "socket": self._name,
                    "code": code,
                    "attempt": self._reconnect_attempts,
                    "max_attempts": self._policy.max_attempts,
                    "sleep_seconds": delay,
                },
            )
            self._set_state(ConnectionState.RECONNECTING)
            self._retry_timer = self._scheduler.call_later(delay, self._retry)
            return

        logger.error(
            "Socket reconnect attempts exhausted; feed unavailable",
            extra={"socket": self._name, "max_attempts": self._policy.max_attempts},
        )
        self._set_state(ConnectionState.DISCONNECTED)
        if self._on_give_up is not None:
            self._on_give_up()
