from __future__ import annotations

from dataclasses import dataclass

from chart_feed.core.enums import SubscriptionMode


@dataclass(frozen=True, slots=True)
class Subscription:
    symbol: str
    exchange: str = "NSE"
    mode: SubscriptionMode = SubscriptionMode.QUOTE

    @property
    def key(self) -> tuple[str, str]:
        return (self.symbol, self.exchange)


@dataclass(frozen=True, slots=True)
class MarketUpdate:
    symbol: str
    exchange: str
    last_price: float
    timestamp: int
    open: float | None = None
    high: float | None = None
    low: float | None = None
    server_timestamp_ms: int | None = None
    previous_close: float | None = None
    change: float | None = None
    change_percent: float | None = None


@dataclass(frozen=True, slots=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float | None = None


class PreviousCloseCache:
    """Best-effort previous-close lookup keyed by ``(symbol, exchange)``.

    Quote-mode frames do not carry a previous close, so change figures rely on
    whatever a quote fetch or an earlier frame left here. Values may be stale,
    and are absent right after (re)subscription until one arrives.
    """

    def __init__(self) -> None:
        self._values: dict[tuple[str, str], float] = {}

    def remember(self, symbol: str, exchange: str, value: float | None) -> None:
        if value is None or value <= 0:
            return
        self._values[(symbol, exchange)] = value

    def lookup(self, symbol: str, exchange: str) -> float | None:
        return self._values.get((symbol, exchange))

    def clear(self) -> None:
        self._values.clear()


def price_change(last_price: float, previous_close: float | None) -> tuple[float | None, float | None]:
    if previous_close is None or previous_close <= 0:
        return None, None
    change = last_price - previous_close
    return change, (change / previous_close) * 100
