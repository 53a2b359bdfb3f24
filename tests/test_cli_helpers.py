import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import httpx
import polars as pl
import pytest
import typer
from typer.testing import CliRunner

from chart_feed.cli import app as cli_app
from chart_feed.cli.app import _format_update, _parse_date, _parse_symbol, _seed_previous_close, app
from chart_feed.feed.models import MarketUpdate, PreviousCloseCache
from chart_feed.sources.rest import HistoricalFetcher, PublicRESTClient
from chart_feed.state.store import SQLiteCredentialStore


def test_parse_symbol_accepts_plain_and_exchange_prefixed() -> None:
    assert _parse_symbol("reliance", "NSE") == ("RELIANCE", "NSE")
    assert _parse_symbol("bse:sbin", "NSE") == ("SBIN", "BSE")


def test_parse_symbol_rejects_invalid_values() -> None:
    with pytest.raises(typer.BadParameter):
        _parse_symbol("  ", "NSE")
    with pytest.raises(typer.BadParameter):
        _parse_symbol("NSE:", "NSE")


def test_parse_date() -> None:
    assert _parse_date(None) is None
    assert str(_parse_date("2024-03-01")) == "2024-03-01"
    with pytest.raises(typer.BadParameter):
        _parse_date("01/03/2024")


def test_format_update_includes_change_when_known() -> None:
    update = MarketUpdate(
        symbol="SBIN",
        exchange="NSE",
        last_price=105.0,
        timestamp=0,
        change=5.0,
        change_percent=5.0,
    )

    assert _format_update(update) == "1970-01-01 00:00:00 NSE:SBIN ltp=105.00 chg=+5.00 (+5.00%)"


def test_login_and_logout_manage_stored_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    db_path = tmp_path / "credentials.sqlite"
    monkeypatch.setenv("CHART_FEED_CREDENTIAL_DB", str(db_path))
    runner = CliRunner()

    login = runner.invoke(app, ["login", "--api-key", "abc123"])
    assert login.exit_code == 0
    assert SQLiteCredentialStore(db_path).get_api_key() == "abc123"

    logout = runner.invoke(app, ["logout"])
    assert logout.exit_code == 0
    assert SQLiteCredentialStore(db_path).get_api_key() is None


def test_public_history_exports_csv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["interval"] == "1h"
        return httpx.Response(
            200,
            request=request,
            json=[
                [1_700_003_600_000, "105", "112", "101", "110", "3"],
                [1_700_000_000_000, "100", "110", "90", "105", "12.5"],
            ],
        )

    stub = SimpleNamespace(
        from_settings=lambda settings: PublicRESTClient("https://exchange.test", transport=httpx.MockTransport(handler))
    )
    monkeypatch.setattr(cli_app, "PublicRESTClient", stub)
    output = tmp_path / "btc.csv"

    result = CliRunner().invoke(app, ["history", "btcusdt", "--public", "--interval", "1h", "--output", str(output)])

    assert result.exit_code == 0
    assert pl.read_csv(output)["time"].to_list() == [1_700_000_000, 1_700_003_600]


def test_seed_previous_close_fetches_one_quote_per_symbol() -> None:
    requested: list[tuple[str, str]] = []
    closes = {"SBIN": 800.0, "RELIANCE": 2_900.0}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requested.append((body["symbol"], body["exchange"]))
        quote = {"ltp": closes[body["symbol"]] + 5.0, "prev_close": closes[body["symbol"]]}
        return httpx.Response(200, request=request, json={"status": "success", "data": quote})

    cache = PreviousCloseCache()

    async def run() -> None:
        fetcher = HistoricalFetcher(
            "http://backend.test/api/v1",
            lambda: "secret",
            previous_close=cache,
            transport=httpx.MockTransport(handler),
        )
        try:
            await _seed_previous_close(fetcher, [("SBIN", "NSE"), ("RELIANCE", "BSE")])
        finally:
            await fetcher.aclose()

    asyncio.run(run())

    assert requested == [("SBIN", "NSE"), ("RELIANCE", "BSE")]
    assert cache.lookup("SBIN", "NSE") == 800.0
    assert cache.lookup("RELIANCE", "BSE") == 2_900.0
    assert cache.lookup("SBIN", "BSE") is None
