from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path

import polars as pl

from chart_feed.feed.models import Candle

CANDLE_SCHEMA = {
    "time": pl.Int64,
    "open": pl.Float64,
    "high": pl.Float64,
    "low": pl.Float64,
    "close": pl.Float64,
    "volume": pl.Float64,
}


def candles_to_frame(candles: Sequence[Candle]) -> pl.DataFrame:
    frame = pl.DataFrame([asdict(candle) for candle in candles], schema=CANDLE_SCHEMA)
    return frame.unique(subset=["time"], keep="last").sort("time")


def write_candles(candles: Sequence[Candle], destination: Path) -> Path:
    frame = candles_to_frame(candles)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.suffix == ".csv":
        frame.write_csv(destination)
    else:
        frame.write_parquet(destination, compression="zstd", statistics=True)
    return destination
