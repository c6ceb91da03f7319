from datetime import datetime, timezone

import pytest

from core.types import DataType, YearMonth
from main import build_parser, build_request, parse_time


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def test_parse_month_bounds() -> None:
    assert parse_time("2024-02") == YearMonth(2024, 2).start_ms
    assert parse_time("2024-02", end=True) == YearMonth(2024, 2).end_ms


def test_parse_day_bounds() -> None:
    assert parse_time("2024-02-10") == _ms(2024, 2, 10)
    assert parse_time("2024-02-10", end=True) == _ms(2024, 2, 11) - 1


def test_parse_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_time("yesterday")


def test_build_request_defaults_timeframe_for_candles() -> None:
    args = build_parser().parse_args(["--estimate", "--symbol", "btcusdt", "--start", "2024-01", "--end", "2024-03"])

    request = build_request(args)

    assert request.symbol == "BTCUSDT"
    assert request.data_type is DataType.CANDLES
    assert request.timeframe == "1h"
    assert request.range_start == YearMonth(2024, 1).start_ms
    assert request.range_end == YearMonth(2024, 3).end_ms


def test_build_request_for_trades_has_no_timeframe() -> None:
    args = build_parser().parse_args(
        ["--fetch", "--symbol", "BTCUSDT", "--type", "agg_trades", "--start", "2024-01-01", "--end", "2024-01-03"]
    )

    request = build_request(args)
    request.validate()

    assert request.timeframe is None
    assert args.fetch is True


def test_modes_are_mutually_exclusive() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--estimate", "--fetch", "--symbol", "X", "--start", "2024-01"])
