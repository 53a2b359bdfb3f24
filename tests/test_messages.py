import pytest

from chart_feed.core.enums import SubscriptionMode
from chart_feed.core.errors import MalformedMessageError
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
from chart_feed.feed.models import Subscription


def test_decode_auth_acknowledgments() -> None:
    assert decode_message('{"type":"auth","status":"success","broker":"zerodha"}') == AuthSuccess(broker="zerodha")
    assert isinstance(decode_message('{"type":"authenticated"}'), AuthSuccess)
    assert isinstance(decode_message('{"status":"authenticated"}'), AuthSuccess)


def test_decode_auth_rejection_defaults_message() -> None:
    assert decode_message('{"type":"auth","status":"error","message":"Invalid API key"}') == AuthFailure(
        message="Invalid API key"
    )
    assert decode_message('{"type":"auth","status":"error"}') == AuthFailure(message="Authentication failed")


def test_decode_error_ping_and_unknown_frames() -> None:
    assert decode_message('{"type":"error","code":"RATE_LIMIT"}') == ServerError(message="RATE_LIMIT", code="RATE_LIMIT")
    assert decode_message('{"type":"ping"}') == Heartbeat()
    assert decode_message('{"type":"depth_snapshot"}') == Unrecognized({"type": "depth_snapshot"})
    assert decode_message("[1, 2]") == Unrecognized([1, 2])


def test_decode_market_data() -> None:
    message = decode_message(
        '{"type":"market_data","symbol":"RELIANCE","exchange":"NSE","mode":"2","data":{"ltp":2500.5}}'
    )

    assert message == MarketData(symbol="RELIANCE", exchange="NSE", data={"ltp": 2500.5}, mode=2)


def test_decode_market_data_rejects_missing_symbol_and_bad_payload() -> None:
    with pytest.raises(MalformedMessageError):
        decode_message('{"type":"market_data","data":{"ltp":1}}')
    with pytest.raises(MalformedMessageError):
        decode_message('{"type":"market_data","symbol":"SBIN","data":"1"}')
    with pytest.raises(MalformedMessageError):
        decode_message("not-json")


def test_encoders_match_wire_format() -> None:
    assert encode_auth("k") == {"action": "authenticate", "api_key": "k"}
    assert encode_subscribe(Subscription("SBIN", "BSE", SubscriptionMode.DEPTH)) == {
        "action": "subscribe",
        "symbol": "SBIN",
        "exchange": "BSE",
        "mode": 3,
    }
    assert encode_pong() == {"type": "pong"}


def test_coercion_rejects_bools_and_non_finite_values() -> None:
    assert coerce_float("12.5") == 12.5
    assert coerce_float(True) is None
    assert coerce_float("nan") is None
    assert coerce_float(float("inf")) is None
    assert coerce_float("") is None
    assert coerce_int("1700000000123") == 1_700_000_000_123
    assert coerce_int("12.9") == 12
    assert coerce_int(False) is None
    assert coerce_int(float("nan")) is None
