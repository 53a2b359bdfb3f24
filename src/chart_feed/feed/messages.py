from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

from chart_feed.core.errors import MalformedMessageError
from chart_feed.feed.models import Subscription

AUTH_SUCCESS_STATUS = "success"
AUTHENTICATED = "authenticated"


def coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized)
        except ValueError:
            try:
                return int(float(normalized))
            except (ValueError, OverflowError):
                return None
    return None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            parsed = float(normalized)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


@dataclass(frozen=True, slots=True)
class AuthSuccess:
    broker: str | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class AuthFailure:
    message: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class ServerError:
    message: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class Heartbeat:
    pass


@dataclass(frozen=True, slots=True)
class MarketData:
    symbol: str
    exchange: str | None
    data: dict[str, Any] = field(default_factory=dict)
    mode: int | None = None


@dataclass(frozen=True, slots=True)
class Unrecognized:
    payload: Any


FeedMessage = AuthSuccess | AuthFailure | ServerError | Heartbeat | MarketData | Unrecognized


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def decode_message(raw: str | bytes) -> FeedMessage:
    """Decode one frame of the authenticated feed into a tagged message."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessageError("Frame is not valid JSON") from exc

    if not isinstance(payload, dict):
        return Unrecognized(payload)

    kind = payload.get("type")
    status = payload.get("status")

    if kind == "ping":
        return Heartbeat()

    if (kind == "auth" and status == AUTH_SUCCESS_STATUS) or kind == AUTHENTICATED or status == AUTHENTICATED:
        return AuthSuccess(broker=_optional_str(payload.get("broker")), message=_optional_str(payload.get("message")))

    if kind == "auth":
        return AuthFailure(
            message=_optional_str(payload.get("message")) or "Authentication failed",
            code=_optional_str(payload.get("code")),
        )

    if kind == "error":
        return ServerError(
            message=_optional_str(payload.get("message")) or _optional_str(payload.get("code")) or "Server error",
            code=_optional_str(payload.get("code")),
        )

    if kind == "market_data":
        symbol = _optional_str(payload.get("symbol"))
        if symbol is None:
            raise MalformedMessageError("market_data frame without a symbol")
        data = payload.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise MalformedMessageError("market_data frame with a non-object data payload")
        return MarketData(
            symbol=symbol,
            exchange=_optional_str(payload.get("exchange")),
            data=data,
            mode=coerce_int(payload.get("mode")),
        )

    return Unrecognized(payload)


def encode_auth(api_key: str) -> dict[str, Any]:
    return {"action": "authenticate", "api_key": api_key}


def encode_subscribe(subscription: Subscription) -> dict[str, Any]:
    return {
        "action": "subscribe",
        "symbol": subscription.symbol,
        "exchange": subscription.exchange,
        "mode": int(subscription.mode),
    }


def encode_pong() -> dict[str, Any]:
    return {"type": "pong"}
