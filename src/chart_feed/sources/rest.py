from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import UTC, date, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from chart_feed.core.config import Settings
from chart_feed.core.time_utils import history_window, now_seconds, parse_timestamp_seconds, utc_now
from chart_feed.feed.messages import coerce_float, coerce_int
from chart_feed.feed.models import Candle, MarketUpdate, PreviousCloseCache, price_change

logger = logging.getLogger(__name__)

_INTERVAL_CODES = {
    "1d": "D",
    "1w": "W",
    "1M": "M",
    "D": "D",
    "W": "W",
    "M": "M",
}


def convert_interval(interval: str) -> str:
    return _INTERVAL_CODES.get(interval, interval)


def parse_history_rows(rows: Any, *, time_offset_seconds: int = 0) -> list[Candle]:
    if not isinstance(rows, list):
        return []

    candles: list[Candle] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        raw_timestamp = row.get("timestamp")
        seconds: float | None
        if isinstance(raw_timestamp, (int, float)) and not isinstance(raw_timestamp, bool):
            seconds = float(raw_timestamp)
        else:
            raw_date = row.get("date") or row.get("datetime")
            seconds = parse_timestamp_seconds(raw_date) if isinstance(raw_date, str) else None
        if seconds is None or seconds <= 0:
            continue

        open_price = coerce_float(row.get("open"))
        high = coerce_float(row.get("high"))
        low = coerce_float(row.get("low"))
        close = coerce_float(row.get("close"))
        if open_price is None or high is None or low is None or close is None:
            continue

        candles.append(
            Candle(
                time=int(seconds) + time_offset_seconds,
                open=open_price,
                high=high,
                low=low,
                close=close,
                volume=coerce_float(row.get("volume")),
            )
        )
    return candles


class _AsyncRESTClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 20,
        retries: int = 3,
        *,
        on_unauthorized: Callable[[], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )
        self._retries = max(1, retries)
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 30.0
        self._on_unauthorized = on_unauthorized

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        last_transport_error: httpx.TransportError | None = None

        for attempt in range(1, self._retries + 1):
            try:
                response = await self._client.request(method, path, params=params, json=json_body)
            except httpx.TransportError as exc:
                last_transport_error = exc
                if attempt >= self._retries:
                    raise
                await self._sleep_before_retry(attempt=attempt, path=path, status_code=None, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                return response.json()

            if self._is_retryable_status(response.status_code) and attempt < self._retries:
                await self._sleep_before_retry(
                    attempt=attempt,
                    path=path,
                    status_code=response.status_code,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=self._parse_retry_after_seconds(response=response),
                )
                continue

            response.raise_for_status()

        if last_transport_error is not None:
            raise last_transport_error
        raise RuntimeError("REST call exhausted retries without a concrete error")

    async def _guarded(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any | None:
        """Run one request, turning every failure into ``None``.

        A 401 fires ``on_unauthorized`` once; setting ``cancel_event`` aborts the
        request and is not treated as an error.
        """
        request = asyncio.ensure_future(self._request(method, path, params=params, json_body=json_body))
        if cancel_event is not None:
            waiter = asyncio.ensure_future(cancel_event.wait())
            done, _ = await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            if request not in done:
                request.cancel()
                try:
                    await request
                except asyncio.CancelledError:
                    pass
                logger.debug("Request cancelled by caller", extra={"path": path})
                return None

        try:
            return await request
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 401:
                logger.warning("Backend rejected the API key; re-authentication required", extra={"path": path})
                if self._on_unauthorized is not None:
                    self._on_unauthorized()
                return None
            logger.error(
                "REST request failed",
                extra={"path": path, "status_code": exc.response.status_code},
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("REST request failed", extra={"path": path, "reason": exc.__class__.__name__})
            return None

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    @staticmethod
    def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
        raw_value = response.headers.get("Retry-After")
        if raw_value is None:
            return None

        raw_value = raw_value.strip()
        try:
            return max(0.0, float(raw_value))
        except ValueError:
            pass

        try:
            parsed = parsedate_to_datetime(raw_value)
        except (TypeError, ValueError):
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        delay_seconds = float((parsed.astimezone(UTC) - datetime.now(tz=UTC)).total_seconds())
        return max(0.0, delay_seconds)

    async def _sleep_before_retry(
        self,
        *,
        attempt: int,
        path: str,
        status_code: int | None,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        if retry_after_seconds is not None:
            delay = retry_after_seconds
        else:
            delay = min(
                self._max_backoff_seconds,
                self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
            )
        delay += random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying REST request",
            extra={
                "path": path,
                "attempt": attempt,
                "max_attempts": self._retries,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        await asyncio.sleep(delay)


class HistoricalFetcher(_AsyncRESTClient):
    """Authenticated backend REST client: history, quotes, symbol search and intervals.

    Every call returns an empty result on failure. A 401 is reported through
    ``on_unauthorized`` so the caller can send the user back to the login flow.
    """

    def __init__(
        self,
        base_url: str,
        api_key_provider: Callable[[], str | None],
        timeout_seconds: int = 20,
        retries: int = 3,
        *,
        default_exchange: str = "NSE",
        previous_close: PreviousCloseCache | None = None,
        clock: Callable[[], float] = now_seconds,
        on_unauthorized: Callable[[], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout_seconds=timeout_seconds,
            retries=retries,
            on_unauthorized=on_unauthorized,
            transport=transport,
        )
        self._api_key_provider = api_key_provider
        self._default_exchange = default_exchange
        self._previous_close = previous_close or PreviousCloseCache()
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, api_key_provider: Callable[[], str | None], **kwargs: Any) -> HistoricalFetcher:
        return cls(
            settings.api_base_url,
            api_key_provider,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            default_exchange=settings.default_exchange,
            **kwargs,
        )

    @property
    def previous_close(self) -> PreviousCloseCache:
        return self._previous_close

    def _api_key(self) -> str:
        return self._api_key_provider() or ""

    async def fetch_klines(
        self,
        symbol: str,
        exchange: str | None = None,
        interval: str = "1d",
        *,
        start_date: date | None = None,
        end_date: date | None = None,
        time_offset_seconds: int = 0,
        cancel_event: asyncio.Event | None = None,
    ) -> list[Candle]:
        default_start, default_end = history_window(interval, utc_now().date())
        window_start = start_date or default_start
        window_end = end_date or default_end
        exchange_value = exchange or self._default_exchange

        logger.info(
            "Fetching history",
            extra={
                "symbol": symbol,
                "exchange": exchange_value,
                "interval": convert_interval(interval),
                "start_date": window_start.isoformat(),
                "end_date": window_end.isoformat(),
            },
        )
        payload = await self._guarded(
            "POST",
            "/history",
            json_body={
                "apikey": self._api_key(),
                "symbol": symbol,
                "exchange": exchange_value,
                "interval": convert_interval(interval),
                "start_date": window_start.isoformat(),
                "end_date": window_end.isoformat(),
            },
            cancel_event=cancel_event,
        )
        if not isinstance(payload, dict):
            return []
        return parse_history_rows(payload.get("data"), time_offset_seconds=time_offset_seconds)

    async def fetch_quote(
        self,
        symbol: str,
        exchange: str | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> MarketUpdate | None:
        exchange_value = exchange or self._default_exchange
        payload = await self._guarded(
            "POST",
            "/quotes",
            json_body={"apikey": self._api_key(), "symbol": symbol, "exchange": exchange_value},
            cancel_event=cancel_event,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            return None

        quote = payload["data"]
        last_price = coerce_float(quote.get("ltp")) or coerce_float(quote.get("last_price")) or 0.0
        if last_price <= 0:
            return None
        open_price = coerce_float(quote.get("open"))
        previous_close = (
            coerce_float(quote.get("prev_close"))
            or coerce_float(quote.get("previous_close"))
            or open_price
            or last_price
        )
        self._previous_close.remember(symbol, exchange_value, previous_close)
        change, change_percent = price_change(last_price, previous_close)
        return MarketUpdate(
            symbol=symbol,
            exchange=exchange_value,
            last_price=last_price,
            timestamp=int(self._clock()),
            open=open_price,
            high=coerce_float(quote.get("high")),
            low=coerce_float(quote.get("low")),
            previous_close=previous_close,
            change=change if change is not None else 0.0,
            change_percent=change_percent if change_percent is not None else 0.0,
        )

    async def search_symbols(
        self,
        query: str,
        exchange: str | None = None,
        instrument_type: str | None = None,
    ) -> list[dict[str, Any]]:
        body: dict[str, Any] = {"apikey": self._api_key(), "query": query}
        if exchange:
            body["exchange"] = exchange
        if instrument_type:
            body["instrumenttype"] = instrument_type

        payload = await self._guarded("POST", "/search", json_body=body)
        rows = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    async def fetch_intervals(self) -> dict[str, Any]:
        payload = await self._guarded("POST", "/intervals", json_body={"apikey": self._api_key()})
        if not isinstance(payload, dict):
            return {}
        data = payload.get("data", payload)
        return data if isinstance(data, dict) else {}


class PublicRESTClient(_AsyncRESTClient):
    """Unauthenticated exchange REST endpoints used by the public feed."""

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> PublicRESTClient:
        return cls(
            settings.public_rest_base_url,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            **kwargs,
        )

    async def fetch_klines(
        self,
        symbol: str,
        interval: str = "1d",
        limit: int = 1000,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[Candle]:
        payload = await self._guarded(
            "GET",
            "/api/v3/klines",
            params={"symbol": symbol.upper(), "interval": interval, "limit": limit},
            cancel_event=cancel_event,
        )
        if not isinstance(payload, list):
            return []

        candles: list[Candle] = []
        for item in payload:
            if not isinstance(item, list) or len(item) < 6:
                continue
            open_time = coerce_int(item[0])
            open_price, high, low, close = (coerce_float(value) for value in item[1:5])
            if open_time is None or open_price is None or high is None or low is None or close is None:
                continue
            candles.append(
                Candle(
                    time=open_time // 1000,
                    open=open_price,
                    high=high,
                    low=low,
                    close=close,
                    volume=coerce_float(item[5]),
                )
            )
        return candles

    async def fetch_ticker(
        self,
        symbol: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any] | None:
        payload = await self._guarded(
            "GET",
            "/api/v3/ticker/24hr",
            params={"symbol": symbol.upper()},
            cancel_event=cancel_event,
        )
        if not isinstance(payload, dict):
            return None
        return {
            "symbol": payload.get("symbol", symbol.upper()),
            "last_price": coerce_float(payload.get("lastPrice")),
            "price_change": coerce_float(payload.get("priceChange")),
            "price_change_percent": coerce_float(payload.get("priceChangePercent")),
            "open": coerce_float(payload.get("openPrice")),
            "high": coerce_float(payload.get("highPrice")),
            "low": coerce_float(payload.get("lowPrice")),
        }
