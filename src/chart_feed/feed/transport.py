from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidHandshake
from websockets.uri import parse_uri

from chart_feed.core.enums import ReadyState
from chart_feed.core.errors import ChartFeedError

logger = logging.getLogger(__name__)


class SocketEvents(Protocol):
    """Receives the lifecycle of one physical connection, in order, on the event loop."""

    def on_open(self) -> None: ...

    def on_message(self, data: str) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_close(self, clean: bool, code: int | None, reason: str) -> None: ...


class SocketConnection(Protocol):
    @property
    def ready_state(self) -> ReadyState: ...

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...


class Transport(Protocol):
    def open(self, url: str, events: SocketEvents) -> SocketConnection:
        """Start connecting without blocking; raise if the connection cannot even be constructed."""
        ...


class WebsocketsTransport:
    def __init__(
        self,
        *,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        close_timeout: float = 5.0,
        max_size: int = 2**22,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._close_timeout = close_timeout
        self._max_size = max_size
        self._loop = loop

    def open(self, url: str, events: SocketEvents) -> WebsocketsConnection:
        parse_uri(url)
        loop = self._loop or asyncio.get_running_loop()
        connection = WebsocketsConnection(url=url, events=events, transport=self)
        connection.start(loop)
        return connection

    async def _connect(self, url: str) -> ClientConnection:
        return await connect(
            url,
            ping_interval=self._ping_interval,
            ping_timeout=self._ping_timeout,
            close_timeout=self._close_timeout,
            max_size=self._max_size,
        )


class WebsocketsConnection:
    def __init__(self, *, url: str, events: SocketEvents, transport: WebsocketsTransport) -> None:
        self._url = url
        self._events = events
        self._transport = transport
        self._ready_state = ReadyState.CONNECTING
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._websocket: ClientConnection | None = None

    @property
    def ready_state(self) -> ReadyState:
        return self._ready_state

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._task = loop.create_task(self._run(), name=f"ws-connection-{self._url}")

    def send(self, data: str) -> None:
        if self._ready_state is not ReadyState.OPEN:
            raise ChartFeedError(f"Cannot send on a socket in state {self._ready_state.name}")
        self._outbox.put_nowait(data)

    def close(self) -> None:
        if self._ready_state in (ReadyState.CLOSING, ReadyState.CLOSED):
            return
        was_connecting = self._ready_state is ReadyState.CONNECTING
        self._ready_state = ReadyState.CLOSING
        if was_connecting and self._task is not None:
            self._task.cancel()
            return
        self._outbox.put_nowait(None)

    async def _run(self) -> None:
        clean = False
        code: int | None = None
        reason = ""
        try:
            websocket = await self._transport._connect(self._url)
            self._websocket = websocket
            try:
                self._ready_state = ReadyState.OPEN
                self._events.on_open()
                writer = asyncio.create_task(self._write_loop(websocket))
                try:
                    async for message in websocket:
                        text = message.decode("utf-8") if isinstance(message, bytes) else message
                        self._events.on_message(text)
                finally:
                    writer.cancel()
            finally:
                await websocket.close()
            clean = True
            code = websocket.close_code
            reason = websocket.close_reason or ""
        except asyncio.CancelledError:
            # cancelled by close() while still connecting
            clean = True
            raise
        except ConnectionClosedError as exc:
            code = exc.rcvd.code if exc.rcvd is not None else None
            reason = exc.rcvd.reason if exc.rcvd is not None else ""
            self._events.on_error(exc)
        except (OSError, TimeoutError, InvalidHandshake) as exc:
            logger.warning(
                "WebSocket connection failed",
                extra={"url": self._url, "reason": exc.__class__.__name__},
            )
            self._events.on_error(exc)
        except Exception as exc:
            logger.exception("WebSocket session failed", extra={"url": self._url})
            self._events.on_error(exc)
        finally:
            self._ready_state = ReadyState.CLOSED
            self._websocket = None
            self._events.on_close(clean, code, reason)

    async def _write_loop(self, websocket: ClientConnection) -> None:
        while True:
            data = await self._outbox.get()
            if data is None:
                await websocket.close()
                return
            try:
                await websocket.send(data)
            except ConnectionClosed:
                return
