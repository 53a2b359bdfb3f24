from pathlib import Path

import polars as pl

from chart_feed.feed.models import Candle
from chart_feed.sources.frames import CANDLE_SCHEMA, candles_to_frame, write_candles


def _candles() -> list[Candle]:
    return [
        Candle(time=120, open=2.0, high=3.0, low=1.5, close=2.5, volume=10.0),
        Candle(time=60, open=1.0, high=2.0, low=0.5, close=1.5),
        Candle(time=120, open=2.0, high=3.5, low=1.5, close=3.0, volume=11.0),
    ]


def test_candles_to_frame_sorts_and_keeps_last_duplicate() -> None:
    frame = candles_to_frame(_candles())

    assert dict(frame.schema) == CANDLE_SCHEMA
    assert frame["time"].to_list() == [60, 120]
    assert frame["close"].to_list() == [1.5, 3.0]
    assert frame["volume"].to_list() == [None, 11.0]


def test_candles_to_frame_handles_empty_input() -> None:
    frame = candles_to_frame([])

    assert frame.height == 0
    assert frame.columns == list(CANDLE_SCHEMA)


def test_write_candles_parquet_and_csv(tmp_path: Path) -> None:
    parquet_path = write_candles(_candles(), tmp_path / "out" / "candles.parquet")
    csv_path = write_candles(_candles(), tmp_path / "candles.csv")

    assert pl.read_parquet(parquet_path)["time"].to_list() == [60, 120]
    assert pl.read_csv(csv_path)["close"].to_list() == [1.5, 3.0]
