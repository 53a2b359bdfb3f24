from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from pathlib import Path

import typer
from rich.console import Console

from chart_feed.clock.sync import ClockSyncService
from chart_feed.core.config import Settings
from chart_feed.core.enums import ConnectionState
from chart_feed.core.logging import configure_logging
from chart_feed.feed.adapter import AuthenticatedFeedAdapter, PublicFeedAdapter
from chart_feed.feed.messages import AuthFailure
from chart_feed.feed.models import Candle, MarketUpdate, PreviousCloseCache
from chart_feed.feed.scheduling import AsyncioScheduler, ReconnectPolicy
from chart_feed.feed.status import ConnectionStatusBroadcaster, describe_status
from chart_feed.feed.transport import WebsocketsTransport
from chart_feed.sources.frames import write_candles
from chart_feed.sources.rest import HistoricalFetcher, PublicRESTClient
from chart_feed.state.store import SQLiteCredentialStore

app = typer.Typer(help="Real-time market data feed and clock sync CLI")
console = Console()


def _parse_symbol(value: str, default_exchange: str) -> tuple[str, str]:
    """Accept ``SYMBOL`` or ``EXCHANGE:SYMBOL``."""
    normalized = value.strip()
    if normalized == "":
        raise typer.BadParameter("symbol must not be empty")
    if ":" in normalized:
        exchange, symbol = normalized.split(":", maxsplit=1)
        if not exchange or not symbol:
            raise typer.BadParameter(f"expected EXCHANGE:SYMBOL, got {value!r}")
        return symbol.upper(), exchange.upper()
    return normalized.upper(), default_exchange


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"expected YYYY-MM-DD, got {value!r}") from exc


def _format_timestamp(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


def _format_update(update: MarketUpdate) -> str:
    line = f"{_format_timestamp(update.timestamp)} {update.exchange}:{update.symbol} ltp={update.last_price:.2f}"
    if update.change is not None and update.change_percent is not None:
        line += f" chg={update.change:+.2f} ({update.change_percent:+.2f}%)"
    return line


def _format_candle(candle: Candle) -> str:
    return (
        f"{_format_timestamp(candle.time)} "
        f"o={candle.open:.2f} h={candle.high:.2f} l={candle.low:.2f} c={candle.close:.2f}"
    )


def _print_status(status: ConnectionState) -> None:
    style = "green" if status is ConnectionState.CONNECTED else "yellow"
    console.print(f"[{style}]{describe_status(status)}[/{style}]")


def _print_candles(label: str, candles: list[Candle], limit: int, output: Path | None) -> None:
    console.print(f"{label}: {len(candles)} candles")
    for candle in candles[-limit:]:
        console.print(_format_candle(candle))
    if output is not None:
        written = write_candles(candles, output)
        console.print(f"[green]Candles written to {written}[/green]")


async def _fetch_public_klines(settings: Settings, symbol: str, interval: str, limit: int) -> list[Candle]:
    client = PublicRESTClient.from_settings(settings)
    try:
        return await client.fetch_klines(symbol, interval, limit=min(limit, 1000))
    finally:
        await client.aclose()


async def _wait(done: asyncio.Event, duration: float | None) -> None:
    if duration is None:
        await done.wait()
        return
    try:
        await asyncio.wait_for(done.wait(), timeout=duration)
    except TimeoutError:
        pass


async def _seed_previous_close(fetcher: HistoricalFetcher, symbols: list[tuple[str, str]]) -> None:
    # quote-mode frames carry no previous close; one quote per symbol fills the shared cache
    for symbol, exchange in symbols:
        await fetcher.fetch_quote(symbol, exchange)


async def _stream_authenticated(settings: Settings, symbols: list[tuple[str, str]], duration: float | None) -> int:
    credentials = SQLiteCredentialStore(settings.credential_db)
    previous_close = PreviousCloseCache()
    if credentials.is_authenticated():
        fetcher = HistoricalFetcher.from_settings(settings, credentials.get_api_key, previous_close=previous_close)
        try:
            await _seed_previous_close(fetcher, symbols)
        finally:
            await fetcher.aclose()

    status = ConnectionStatusBroadcaster()
    unsubscribe = status.subscribe(_print_status)
    clock = ClockSyncService.from_settings(settings)
    await clock.start()

    done = asyncio.Event()
    exit_code = 0

    def on_update(update: MarketUpdate) -> None:
        console.print(_format_update(update))

    def on_auth_error(failure: AuthFailure) -> None:
        nonlocal exit_code
        console.print(f"[red]Authentication failed:[/red] {failure.message}")
        console.print(f"Log in again at {settings.login_url} and run `chart-feed login`.")
        exit_code = 2
        done.set()

    def on_unavailable() -> None:
        nonlocal exit_code
        console.print("[red]Feed unavailable: reconnect attempts exhausted[/red]")
        exit_code = 1
        done.set()

    adapter = AuthenticatedFeedAdapter.from_settings(
        settings,
        symbols=symbols,
        api_key_provider=credentials.get_api_key,
        on_update=on_update,
        on_auth_error=on_auth_error,
        on_unavailable=on_unavailable,
        transport=WebsocketsTransport(),
        scheduler=AsyncioScheduler(),
        status=status,
        clock=clock.get_accurate_utc_timestamp,
        previous_close=previous_close,
    )
    adapter.start()
    try:
        await _wait(done, duration)
    finally:
        adapter.stop()
        unsubscribe()
        await clock.aclose()
    return exit_code


async def _stream_public(
    settings: Settings,
    adapter_factory: str,
    symbols: list[str],
    interval: str,
    duration: float | None,
) -> int:
    status = ConnectionStatusBroadcaster()
    unsubscribe = status.subscribe(_print_status)
    done = asyncio.Event()
    common = {
        "transport": WebsocketsTransport(),
        "scheduler": AsyncioScheduler(),
        "status": status,
        "policy": ReconnectPolicy.from_settings(settings),
        "on_unavailable": done.set,
    }
    adapter: PublicFeedAdapter[Candle] | PublicFeedAdapter[MarketUpdate]
    if adapter_factory == "kline":
        adapter = PublicFeedAdapter.kline_stream(
            settings.public_websocket_base_url,
            symbols[0],
            interval,
            lambda candle: console.print(_format_candle(candle)),
            **common,
        )
    else:
        adapter = PublicFeedAdapter.mini_ticker_stream(
            settings.public_websocket_base_url,
            symbols,
            lambda update: console.print(_format_update(update)),
            **common,
        )
    adapter.start()
    try:
        await _wait(done, duration)
    finally:
        adapter.stop()
        unsubscribe()
    return 1 if done.is_set() else 0


@app.command("login")
def login(
    api_key: str = typer.Option(..., prompt=True, hide_input=True, help="Backend API key"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    if api_key.strip() == "":
        raise typer.BadParameter("API key must not be empty")
    store = SQLiteCredentialStore(settings.credential_db)
    store.set_api_key(api_key)
    console.print(f"API key stored in [bold]{settings.credential_db}[/bold]")


@app.command("logout")
def logout() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    SQLiteCredentialStore(settings.credential_db).clear()
    console.print("API key removed")


@app.command("stream")
def stream(
    symbols: list[str] = typer.Argument(..., help="Symbols as SYMBOL or EXCHANGE:SYMBOL"),
    duration: float | None = typer.Option(default=None, min=1.0, help="Stop after this many seconds"),
) -> None:
    """
    Stream authenticated quotes for one or more symbols until interrupted.
    """
    settings = Settings()
    configure_logging(settings.log_level)
    parsed = [_parse_symbol(value, settings.default_exchange) for value in symbols]

    exit_code = asyncio.run(_stream_authenticated(settings, parsed, duration))
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command("stream-public")
def stream_public(
    symbol: str = typer.Argument(..., help="Exchange symbol, e.g. BTCUSDT"),
    interval: str = typer.Option("1m", help="Kline interval"),
    duration: float | None = typer.Option(default=None, min=1.0),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    exit_code = asyncio.run(_stream_public(settings, "kline", [symbol], interval, duration))
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command("watch")
def watch(
    symbols: list[str] = typer.Argument(..., help="Exchange symbols for the public mini ticker"),
    duration: float | None = typer.Option(default=None, min=1.0),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    exit_code = asyncio.run(_stream_public(settings, "mini_ticker", symbols, "", duration))
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command("history")
def history(
    symbol: str = typer.Argument(..., help="SYMBOL or EXCHANGE:SYMBOL"),
    interval: str = typer.Option("1d", help="1d, 1w, 1M or an intraday code such as 5m"),
    start: str | None = typer.Option(default=None, help="Start date YYYY-MM-DD"),
    end: str | None = typer.Option(default=None, help="End date YYYY-MM-DD"),
    output: Path | None = typer.Option(default=None, help="Write candles to .parquet or .csv"),
    limit: int = typer.Option(default=20, min=1, help="Rows to print"),
    public: bool = typer.Option(False, "--public", help="Read klines from the public exchange REST API"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    if public:
        candles = asyncio.run(_fetch_public_klines(settings, symbol, interval, limit))
        _print_candles(f"{symbol.upper()} {interval}", candles, limit, output)
        return

    symbol_value, exchange = _parse_symbol(symbol, settings.default_exchange)
    start_date = _parse_date(start)
    end_date = _parse_date(end)
    if start_date is not None and end_date is not None and end_date < start_date:
        raise typer.BadParameter("end must be >= start")

    credentials = SQLiteCredentialStore(settings.credential_db)
    unauthorized = False

    def on_unauthorized() -> None:
        nonlocal unauthorized
        unauthorized = True

    async def _fetch() -> list[Candle]:
        fetcher = HistoricalFetcher.from_settings(
            settings,
            credentials.get_api_key,
            on_unauthorized=on_unauthorized,
        )
        try:
            return await fetcher.fetch_klines(
                symbol_value,
                exchange,
                interval,
                start_date=start_date,
                end_date=end_date,
            )
        finally:
            await fetcher.aclose()

    candles = asyncio.run(_fetch())
    if unauthorized:
        console.print(f"[red]Session expired.[/red] Log in again at {settings.login_url}")
        raise typer.Exit(code=2)

    _print_candles(f"{exchange}:{symbol_value} {interval}", candles, limit, output)


@app.command("clock")
def clock(
    samples: int = typer.Option(default=1, min=1, max=10, help="Number of sync rounds"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    async def _sync() -> ClockSyncService:
        service = ClockSyncService.from_settings(settings)
        try:
            for _ in range(samples):
                await service.sync_now()
        finally:
            await service.aclose()
        return service

    service = asyncio.run(_sync())
    if not service.is_synced:
        console.print("[yellow]Time authority unreachable; using the local clock[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"Offset: [bold]{service.offset_seconds:+.3f}s[/bold]")
    console.print(f"Corrected UTC: {_format_timestamp(service.get_accurate_utc_timestamp())}")
    console.print(f"Display time:  {_format_timestamp(service.get_accurate_zoned_timestamp())}")


if __name__ == "__main__":
    app()
