from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from chart_feed.core.enums import ConnectionState

logger = logging.getLogger(__name__)

StatusCallback = Callable[[ConnectionState], None]

_STATUS_LABELS = {
    ConnectionState.CONNECTED: "Live",
    ConnectionState.CONNECTING: "Connecting",
    ConnectionState.RECONNECTING: "Reconnecting",
    ConnectionState.DISCONNECTED: "Offline",
}


def describe_status(status: ConnectionState) -> str:
    return _STATUS_LABELS[status]


class ConnectionStatusBroadcaster:
    """Observable connection health shared between the feed and its readers.

    Writers call :meth:`set_status` from the feed's event loop; readers may
    subscribe or poll from any thread. Notifications are delivered in the
    order changes happen and only when the value actually changes.
    """

    def __init__(self, initial: ConnectionState = ConnectionState.DISCONNECTED) -> None:
        self._status = initial
        self._subscribers: list[StatusCallback] = []
        self._lock = threading.RLock()

    @property
    def status(self) -> ConnectionState:
        with self._lock:
            return self._status

    def set_status(self, status: ConnectionState) -> None:
        with self._lock:
            if status == self._status:
                return
            self._status = status
            subscribers = list(self._subscribers)
            for callback in subscribers:
                self._deliver(callback, status)

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
            self._deliver(callback, self._status)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @staticmethod
    def _deliver(callback: StatusCallback, status: ConnectionState) -> None:
        try:
            callback(status)
        except Exception:
            logger.exception("Connection status subscriber failed", extra={"status": status.value})
