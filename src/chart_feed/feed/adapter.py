from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Generic, TypeVar

from chart_feed.core.config import Settings
from chart_feed.core.enums import SessionPhase, SubscriptionMode
from chart_feed.core.errors import MalformedMessageError
from chart_feed.core.time_utils import now_seconds
from chart_feed.feed.messages import (
    AuthFailure,
    AuthSuccess,
    Heartbeat,
    MarketData,
    ServerError,
    Unrecognized,
    coerce_float,
    coerce_int,
    decode_message,
    encode_auth,
    encode_pong,
    encode_subscribe,
)
from chart_feed.feed.models import Candle, MarketUpdate, PreviousCloseCache, Subscription, price_change
from chart_feed.feed.scheduling import ReconnectPolicy, Scheduler
from chart_feed.feed.socket import ManagedSocketClient, UrlSource
from chart_feed.feed.status import ConnectionStatusBroadcaster
from chart_feed.feed.transport import Transport

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT")

PUBLIC_VENUE = "BINANCE"


class FeedProtocolAdapter:
    """Protocol layer over a :class:`ManagedSocketClient` session."""

    def __init__(
        self,
        url: UrlSource,
        *,
        transport: Transport,
        scheduler: Scheduler,
        status: ConnectionStatusBroadcaster | None = None,
        policy: ReconnectPolicy | None = None,
        on_unavailable: Callable[[], None] | None = None,
        name: str = "feed",
    ) -> None:
        self._on_unavailable = on_unavailable
        self._client = ManagedSocketClient(
            url,
            transport=transport,
            scheduler=scheduler,
            on_open=self._handle_open,
            on_message=self._handle_message,
            on_close=self._handle_close,
            on_give_up=self._handle_give_up,
            status=status,
            policy=policy,
            name=name,
        )

    @property
    def client(self) -> ManagedSocketClient:
        return self._client

    def start(self) -> None:
        self._client.connect()

    def stop(self) -> None:
        self._client.close()

    def _handle_open(self) -> None:
        pass

    def _handle_message(self, raw: str) -> None:
        raise NotImplementedError

    def _handle_close(self, clean: bool) -> None:
        pass

    def _handle_give_up(self) -> None:
        if self._on_unavailable is not None:
            self._on_unavailable()


class PublicFeedAdapter(FeedProtocolAdapter, Generic[EventT]):
    """Unauthenticated stream: every frame is parsed directly into an event."""

    def __init__(
        self,
        url: UrlSource,
        *,
        parser: Callable[[dict[str, Any]], EventT | None],
        on_event: Callable[[EventT], None],
        transport: Transport,
        scheduler: Scheduler,
        status: ConnectionStatusBroadcaster | None = None,
        policy: ReconnectPolicy | None = None,
        on_unavailable: Callable[[], None] | None = None,
        name: str = "public-feed",
    ) -> None:
        super().__init__(
            url,
            transport=transport,
            scheduler=scheduler,
            status=status,
            policy=policy,
            on_unavailable=on_unavailable,
            name=name,
        )
        self._parser = parser
        self._on_event = on_event

    @classmethod
    def kline_stream(
        cls,
        base_url: str,
        symbol: str,
        interval: str,
        on_candle: Callable[[Candle], None],
        **kwargs: Any,
    ) -> PublicFeedAdapter[Candle]:
        stream = f"{symbol.lower()}@kline_{interval}"
        kwargs.setdefault("name", f"kline-{symbol.upper()}-{interval}")
        return cls(
            f"{base_url.rstrip('/')}/ws/{stream}",
            parser=parse_kline,
            on_event=on_candle,
            **kwargs,
        )

    @classmethod
    def mini_ticker_stream(
        cls,
        base_url: str,
        symbols: Sequence[str],
        on_update: Callable[[MarketUpdate], None],
        *,
        clock: Callable[[], float] = now_seconds,
        **kwargs: Any,
    ) -> PublicFeedAdapter[MarketUpdate]:
        if not symbols:
            raise ValueError("mini ticker stream needs at least one symbol")
        streams = "/".join(f"{symbol.lower()}@miniTicker" for symbol in symbols)
        kwargs.setdefault("name", "mini-ticker")
        return cls(
            f"{base_url.rstrip('/')}/stream?streams={streams}",
            parser=lambda payload: parse_mini_ticker(payload, clock=clock),
            on_event=on_update,
            **kwargs,
        )

    def _handle_message(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping non-JSON frame", extra={"socket": self._client.name})
            return
        if not isinstance(payload, dict):
            return
        event = self._parser(payload)
        if event is None:
            return
        self._on_event(event)


def parse_kline(payload: dict[str, Any]) -> Candle | None:
    kline = payload.get("k")
    if not isinstance(kline, dict):
        return None
    start_ms = coerce_int(kline.get("t"))
    open_price = coerce_float(kline.get("o"))
    high = coerce_float(kline.get("h"))
    low = coerce_float(kline.get("l"))
    close = coerce_float(kline.get("c"))
    if start_ms is None or open_price is None or high is None or low is None or close is None:
        return None
    if close <= 0:
        return None
    return Candle(
        time=start_ms // 1000,
        open=open_price,
        high=high,
        low=low,
        close=close,
        volume=coerce_float(kline.get("v")),
    )


def parse_mini_ticker(
    payload: dict[str, Any],
    *,
    clock: Callable[[], float] = now_seconds,
    venue: str = PUBLIC_VENUE,
) -> MarketUpdate | None:
    ticker = payload.get("data")
    if not isinstance(ticker, dict):
        return None
    symbol = ticker.get("s")
    last_price = coerce_float(ticker.get("c"))
    if not isinstance(symbol, str) or last_price is None or last_price <= 0:
        return None
    open_price = coerce_float(ticker.get("o"))
    change, change_percent = price_change(last_price, open_price)
    event_ms = coerce_int(ticker.get("E"))
    timestamp = event_ms // 1000 if event_ms is not None and event_ms > 0 else int(clock())
    return MarketUpdate(
        symbol=symbol,
        exchange=venue,
        last_price=last_price,
        timestamp=timestamp,
        open=open_price,
        high=coerce_float(ticker.get("h")),
        low=coerce_float(ticker.get("l")),
        server_timestamp_ms=event_ms,
        change=change,
        change_percent=change_percent,
    )


class AuthenticatedFeedAdapter(FeedProtocolAdapter):
    """Subscription-multiplexed feed guarded by an authenticate/acknowledge handshake.

    Session phases run ``OPENED -> AUTH_SENT -> AUTHENTICATED -> SUBSCRIBED``
    or end in ``AUTH_FAILED``. Every successful authentication, including the
    one after an automatic reconnect, replays all registered subscriptions in
    registration order before any market data is forwarded. An auth failure is
    surfaced once through ``on_auth_error`` and is not retried until the socket
    reconnects; the socket itself is left open.
    """

    def __init__(
        self,
        url: UrlSource,
        *,
        api_key_provider: Callable[[], str | None],
        on_update: Callable[[MarketUpdate], None],
        transport: Transport,
        scheduler: Scheduler,
        subscriptions: Iterable[Subscription] = (),
        on_auth_error: Callable[[AuthFailure], None] | None = None,
        on_unavailable: Callable[[], None] | None = None,
        status: ConnectionStatusBroadcaster | None = None,
        policy: ReconnectPolicy | None = None,
        clock: Callable[[], float] = now_seconds,
        previous_close: PreviousCloseCache | None = None,
        name: str = "authenticated-feed",
    ) -> None:
        super().__init__(
            url,
            transport=transport,
            scheduler=scheduler,
            status=status,
            policy=policy,
            on_unavailable=on_unavailable,
            name=name,
        )
        self._api_key_provider = api_key_provider
        self._on_update = on_update
        self._on_auth_error = on_auth_error
        self._clock = clock
        self._previous_close = previous_close or PreviousCloseCache()
        self._subscriptions: dict[tuple[str, str], Subscription] = {}
        self._phase = SessionPhase.IDLE
        for subscription in subscriptions:
            self._register(subscription)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        symbols: Iterable[str | tuple[str, str]],
        **kwargs: Any,
    ) -> AuthenticatedFeedAdapter:
        mode = SubscriptionMode(settings.subscription_mode)
        subscriptions = []
        for entry in symbols:
            symbol, exchange = (entry, settings.default_exchange) if isinstance(entry, str) else entry
            subscriptions.append(Subscription(symbol=symbol, exchange=exchange or settings.default_exchange, mode=mode))
        kwargs.setdefault("policy", ReconnectPolicy.from_settings(settings))
        return cls(settings.websocket_url, subscriptions=subscriptions, **kwargs)

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def authenticated(self) -> bool:
        return self._phase in (SessionPhase.AUTHENTICATED, SessionPhase.SUBSCRIBED)

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions.values())

    @property
    def previous_close(self) -> PreviousCloseCache:
        return self._previous_close

    def start(self) -> None:
        self._phase = SessionPhase.IDLE
        api_key = self._api_key_provider()
        if api_key is None or not api_key.strip():
            logger.warning("No API key stored; not connecting", extra={"socket": self._client.name})
            self._fail_auth(AuthFailure(message="No API key stored", code="missing_credential"))
            return
        super().start()

    def stop(self) -> None:
        super().stop()
        self._phase = SessionPhase.IDLE

    def add_subscription(self, subscription: Subscription) -> bool:
        if not self._register(subscription):
            return False
        if self._phase is SessionPhase.SUBSCRIBED:
            self._send_subscription(subscription)
        return True

    def _register(self, subscription: Subscription) -> bool:
        if subscription.key in self._subscriptions:
            return False
        self._subscriptions[subscription.key] = subscription
        return True

    def _send_subscription(self, subscription: Subscription) -> None:
        logger.info(
            "Subscribing",
            extra={"symbol": subscription.symbol, "exchange": subscription.exchange, "mode": int(subscription.mode)},
        )
        self._client.send(encode_subscribe(subscription))

    def _handle_open(self) -> None:
        self._phase = SessionPhase.OPENED
        api_key = self._api_key_provider() or ""
        logger.info("Connected; authenticating", extra={"socket": self._client.name})
        if self._client.send(encode_auth(api_key)):
            self._phase = SessionPhase.AUTH_SENT

    def _handle_close(self, clean: bool) -> None:
        self._phase = SessionPhase.IDLE

    def _handle_message(self, raw: str) -> None:
        try:
            message = decode_message(raw)
        except MalformedMessageError as exc:
            logger.warning("Dropping malformed frame", extra={"socket": self._client.name, "reason": str(exc)})
            return

        if isinstance(message, Heartbeat):
            self._client.send(encode_pong())
        elif isinstance(message, AuthSuccess):
            self._handle_auth_success(message)
        elif isinstance(message, AuthFailure):
            self._fail_auth(message)
        elif isinstance(message, ServerError):
            self._handle_server_error(message)
        elif isinstance(message, MarketData):
            self._handle_market_data(message)
        elif isinstance(message, Unrecognized):
            logger.debug("Ignoring unrecognized frame", extra={"socket": self._client.name})

    def _handle_auth_success(self, message: AuthSuccess) -> None:
        if self._phase not in (SessionPhase.OPENED, SessionPhase.AUTH_SENT):
            logger.debug("Ignoring duplicate auth acknowledgment", extra={"phase": self._phase.value})
            return
        self._phase = SessionPhase.AUTHENTICATED
        logger.info("Authenticated", extra={"broker": message.broker})
        for subscription in self._subscriptions.values():
            self._send_subscription(subscription)
        self._phase = SessionPhase.SUBSCRIBED

    def _handle_server_error(self, message: ServerError) -> None:
        # before the ack, an error frame is the server rejecting the handshake
        if self._phase in (SessionPhase.OPENED, SessionPhase.AUTH_SENT):
            self._fail_auth(AuthFailure(message=message.message, code=message.code))
            return
        logger.warning("Server reported an error", extra={"message_text": message.message, "code": message.code})

    def _fail_auth(self, failure: AuthFailure) -> None:
        if self._phase is SessionPhase.AUTH_FAILED:
            return
        self._phase = SessionPhase.AUTH_FAILED
        logger.error("Authentication failed", extra={"message_text": failure.message, "code": failure.code})
        if self._on_auth_error is not None:
            self._on_auth_error(failure)

    def _handle_market_data(self, message: MarketData) -> None:
        if self._phase is not SessionPhase.SUBSCRIBED:
            logger.debug("Dropping market data outside a subscribed session", extra={"phase": self._phase.value})
            return
        subscription = self._match(message.symbol, message.exchange)
        if subscription is None:
            return
        update = self._build_update(message, subscription)
        if update is None:
            return
        self._on_update(update)

    def _match(self, symbol: str, exchange: str | None) -> Subscription | None:
        if exchange is not None:
            return self._subscriptions.get((symbol, exchange))
        for subscription in self._subscriptions.values():
            if subscription.symbol == symbol:
                return subscription
        return None

    def _build_update(self, message: MarketData, subscription: Subscription) -> MarketUpdate | None:
        data = message.data
        last_price = coerce_float(data.get("ltp")) or coerce_float(data.get("last_price")) or 0.0
        if last_price <= 0:
            return None

        server_ms = coerce_int(data.get("timestamp"))
        if server_ms is not None and server_ms > 0:
            timestamp = server_ms // 1000
        else:
            server_ms = None
            timestamp = int(self._clock())

        symbol, exchange = subscription.symbol, subscription.exchange
        previous_close = coerce_float(data.get("prev_close")) or coerce_float(data.get("previous_close"))
        if previous_close is not None and previous_close > 0:
            self._previous_close.remember(symbol, exchange, previous_close)
        else:
            previous_close = self._previous_close.lookup(symbol, exchange)
        change, change_percent = price_change(last_price, previous_close)

        return MarketUpdate(
            symbol=symbol,
            exchange=exchange,
            last_price=last_price,
            timestamp=timestamp,
            open=coerce_float(data.get("open")),
            high=coerce_float(data.get("high")),
            low=coerce_float(data.get("low")),
            server_timestamp_ms=server_ms,
            previous_close=previous_close,
            change=change,
            change_percent=change_percent,
        )
