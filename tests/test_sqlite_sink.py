import threading

import pandas as pd
import pytest

from core.constants import MS_PER_HOUR
from core.types import DataType, RecordBatch, YearMonth
from data.database import SqliteDataSink
from data.records import frame_from_agg_trades, frame_from_klines, make_batch


@pytest.fixture
def db(tmp_path):
    store = SqliteDataSink(tmp_path / "history.db")
    yield store
    store.close_all()


def _kline(open_time, close="1.5"):
    return [open_time, "1.0", "2.0", "0.5", close, "10", open_time + MS_PER_HOUR - 1, "15", 5, "4", "6", "0"]


def _candles(symbol, hours, close="1.5", timeframe="1h"):
    rows = [_kline(h * MS_PER_HOUR, close) for h in hours]
    return make_batch(symbol, DataType.CANDLES, timeframe, frame_from_klines(rows, DataType.CANDLES))


def test_upsert_is_idempotent(db) -> None:
    batch = _candles("BTCUSDT", range(5))

    db.upsert(batch)
    db.upsert(batch)

    assert db.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 5
    assert db.latest_timestamp("BTCUSDT", DataType.CANDLES, "1h") == 4 * MS_PER_HOUR


def test_upsert_overwrites_existing_rows(db) -> None:
    db.upsert(_candles("BTCUSDT", range(3), close="1.5"))
    db.upsert(_candles("BTCUSDT", range(2, 4), close="9.0"))

    frame = db.get_candles("BTCUSDT", "1h")
    assert frame["timestamp"].tolist() == [0, MS_PER_HOUR, 2 * MS_PER_HOUR, 3 * MS_PER_HOUR]
    assert frame["close"].tolist() == [1.5, 1.5, 9.0, 9.0]
    assert frame["trades"].tolist() == [5, 5, 5, 5]


def test_series_are_kept_apart(db) -> None:
    db.upsert(_candles("BTCUSDT", range(3)))
    db.upsert(_candles("BTCUSDT", range(2), timeframe="4h"))
    db.upsert(_candles("ETHUSDT", range(1)))
    premium = make_batch(
        "BTCUSDT", DataType.PREMIUM_INDEX, "1h",
        frame_from_klines([_kline(0)], DataType.PREMIUM_INDEX),
    )
    db.upsert(premium)

    assert db.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 3
    assert db.count_rows("BTCUSDT", DataType.CANDLES, "4h") == 2
    assert db.count_rows("ETHUSDT", DataType.CANDLES, "1h") == 1
    assert db.count_rows("BTCUSDT", DataType.PREMIUM_INDEX, "1h") == 1
    assert db.get_stats()["candles"] == 6


def test_agg_trades_keyed_by_id(db) -> None:
    trades = [
        {"a": 2, "p": "101", "q": "1", "f": 20, "l": 21, "T": 2000, "m": False},
        {"a": 1, "p": "100", "q": "2", "f": 10, "l": 11, "T": 1000, "m": True},
    ]
    batch = make_batch("BTCUSDT", DataType.AGG_TRADES, None, frame_from_agg_trades(trades))

    db.upsert(batch)
    db.upsert(batch)

    frame = db.get_records("BTCUSDT", DataType.AGG_TRADES)
    assert frame["agg_id"].tolist() == [1, 2]
    assert frame["is_buyer_maker"].tolist() == [True, False]
    assert db.latest_timestamp("BTCUSDT", DataType.AGG_TRADES) == 2000


def test_get_records_filters_by_time(db) -> None:
    db.upsert(_candles("BTCUSDT", range(10)))

    frame = db.get_candles("BTCUSDT", "1h", start_ms=2 * MS_PER_HOUR, end_ms=4 * MS_PER_HOUR)

    assert frame["timestamp"].tolist() == [2 * MS_PER_HOUR, 3 * MS_PER_HOUR, 4 * MS_PER_HOUR]
    assert db.get_candles("XRPUSDT", "1h").empty


def test_empty_batch_is_a_no_op(db) -> None:
    db.upsert(make_batch("BTCUSDT", DataType.CANDLES, "1h", frame_from_klines([], DataType.CANDLES)))
    assert db.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 0


def test_missing_columns_are_rejected(db) -> None:
    batch = RecordBatch("BTCUSDT", DataType.CANDLES, "1h", pd.DataFrame({"timestamp": [0], "close": [1.0]}))
    with pytest.raises(ValueError, match="missing columns"):
        db.upsert(batch)


def test_coverage_tracking(db) -> None:
    jan = YearMonth(2024, 1)

    assert not db.is_covered("BTCUSDT", DataType.CANDLES, "1h", jan.start_ms, jan.end_ms)

    db.mark_covered("btcusdt", DataType.CANDLES, "1h", jan.start_ms, jan.end_ms)

    assert db.is_covered("BTCUSDT", DataType.CANDLES, "1h", jan.start_ms, jan.end_ms)
    assert not db.is_covered("BTCUSDT", DataType.CANDLES, "4h", jan.start_ms, jan.end_ms)
    assert not db.is_covered("BTCUSDT", DataType.PREMIUM_INDEX, "1h", jan.start_ms, jan.end_ms)
    # A partially covered span does not count.
    assert not db.is_covered("BTCUSDT", DataType.CANDLES, "1h", jan.start_ms, jan.end_ms + 1)


def test_schema_survives_reopen(tmp_path) -> None:
    path = tmp_path / "history.db"
    first = SqliteDataSink(path)
    first.upsert(_candles("BTCUSDT", range(3)))
    first.close_all()

    second = SqliteDataSink(path)
    try:
        assert second.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 3
    finally:
        second.close_all()


def test_writes_from_worker_threads(db) -> None:
    errors = []

    def writer(offset):
        try:
            db.upsert(_candles("BTCUSDT", range(offset, offset + 20)))
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=writer, args=(i * 10,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert db.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 50
