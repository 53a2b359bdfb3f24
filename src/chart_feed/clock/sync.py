from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from typing import Any

import httpx

from chart_feed.core.config import Settings
from chart_feed.core.time_utils import now_seconds

logger = logging.getLogger(__name__)

_AUTHORITY_HEADERS = {
    "accept": "application/json, text/javascript, */*; q=0.01",
    "x-requested-with": "XMLHttpRequest",
}


class ClockSyncService:
    """Keeps a correction offset between the local clock and a network time authority.

    ``corrected = local + offset_seconds``. Each sync measures the round trip,
    credits half of it to the authority's transmit time and compares the
    result with the local receive time. Failed syncs keep the last good offset
    and never raise. At most one request is in flight; concurrent callers of
    :meth:`sync_now` share its result.
    """

    def __init__(
        self,
        url: str,
        *,
        transmit_field: str = "nstt",
        interval_seconds: float = 60.0,
        zone_offset_seconds: int = 0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = now_seconds,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._transmit_field = transmit_field
        self._interval_seconds = interval_seconds
        self._zone_offset_seconds = zone_offset_seconds
        self._clock = clock
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            headers=_AUTHORITY_HEADERS,
            transport=transport,
        )

        self._offset_seconds = 0.0
        self._last_sync_at: float | None = None
        self._synced = False
        self._inflight: asyncio.Task[bool] | None = None
        self._scheduler_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> ClockSyncService:
        return cls(
            settings.time_authority_url,
            transmit_field=settings.time_transmit_field,
            interval_seconds=settings.clock_sync_interval_seconds,
            zone_offset_seconds=settings.display_offset_seconds,
            **kwargs,
        )

    @property
    def offset_seconds(self) -> float:
        return self._offset_seconds

    @property
    def last_sync_at(self) -> float | None:
        return self._last_sync_at

    @property
    def is_synced(self) -> bool:
        return self._synced

    @property
    def running(self) -> bool:
        return self._scheduler_task is not None

    def get_accurate_utc_timestamp(self) -> float:
        return self._clock() + self._offset_seconds

    def get_accurate_zoned_timestamp(self) -> float:
        return self.get_accurate_utc_timestamp() + self._zone_offset_seconds

    def should_resync(self) -> bool:
        if self._last_sync_at is None:
            return True
        return self._clock() - self._last_sync_at >= self._interval_seconds

    async def sync_now(self) -> bool:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._sync_once())
        return await asyncio.shield(self._inflight)

    async def start(self) -> None:
        if self._scheduler_task is not None:
            return
        self._scheduler_task = asyncio.create_task(self._run_periodic(), name="clock-sync")
        await self.sync_now()
        logger.info(
            "Clock sync started",
            extra={"synced": self._synced, "offset_seconds": round(self._offset_seconds, 3)},
        )

    async def stop(self) -> None:
        """Cancel the resync timer and any request still in flight; safe to call twice."""
        tasks = [task for task in (self._scheduler_task, self._inflight) if task is not None and not task.done()]
        self._scheduler_task = None
        self._inflight = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def aclose(self) -> None:
        await self.stop()
        await self._client.aclose()

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            await self.sync_now()

    def _request_url(self, client_timestamp: float) -> str:
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{client_timestamp:.3f}"

    async def _sync_once(self) -> bool:
        started_at = self._clock()
        try:
            response = await self._client.get(self._request_url(started_at))
            received_at = self._clock()
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Clock sync failed; keeping previous offset",
                extra={"url": self._url, "reason": exc.__class__.__name__},
            )
            return False

        transmit_time = payload.get(self._transmit_field) if isinstance(payload, dict) else None
        if (
            isinstance(transmit_time, bool)
            or not isinstance(transmit_time, (int, float))
            or not math.isfinite(transmit_time)
            or transmit_time <= 0
        ):
            logger.warning(
                "Clock sync response missing transmit time; keeping previous offset",
                extra={"url": self._url, "field": self._transmit_field},
            )
            return False

        latency = (received_at - started_at) / 2
        self._offset_seconds = (transmit_time + latency) - received_at
        self._last_sync_at = received_at
        self._synced = True
        logger.debug(
            "Clock synced",
            extra={
                "offset_seconds": round(self._offset_seconds, 3),
                "latency_ms": round(latency * 1000),
            },
        )
        return True
