# data/records.py
"""DataFrame normalisation shared by the REST and archive clients.

Every frame leaving this module has an int64 epoch-ms ``timestamp`` column,
numeric value columns, no duplicate keys, and is sorted by its key.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from core.types import DataType, RecordBatch

# Raw kline layout, identical for REST and archive CSV.
KLINE_RAW_COLUMNS = [
    "open_time", "open", "high", "low", "close", "volume",
    "close_time", "quote_volume", "count",
    "taker_buy_volume", "taker_buy_quote_volume", "ignore",
]

AGG_TRADE_RAW_COLUMNS = [
    "agg_trade_id", "price", "quantity",
    "first_trade_id", "last_trade_id", "transact_time", "is_buyer_maker",
]

CANDLE_COLUMNS = [
    "timestamp", "open", "high", "low", "close", "volume",
    "quote_volume", "trades", "taker_buy_base", "taker_buy_quote",
]
PREMIUM_INDEX_COLUMNS = ["timestamp", "open", "high", "low", "close"]
AGG_TRADE_COLUMNS = [
    "agg_id", "timestamp", "price", "quantity",
    "first_trade_id", "last_trade_id", "is_buyer_maker",
]

_KLINE_RENAME = {
    "open_time": "timestamp",
    "count": "trades",
    "taker_buy_volume": "taker_buy_base",
    "taker_buy_quote_volume": "taker_buy_quote",
}
_AGG_RENAME = {"agg_trade_id": "agg_id", "transact_time": "timestamp"}

# REST aggTrades payload keys.
_AGG_JSON_KEYS = {
    "a": "agg_id",
    "p": "price",
    "q": "quantity",
    "f": "first_trade_id",
    "l": "last_trade_id",
    "T": "timestamp",
    "m": "is_buyer_maker",
}

_INT_COLUMNS = {"timestamp", "agg_id", "first_trade_id", "last_trade_id", "trades"}


def columns_for(data_type: DataType) -> list[str]:
    if data_type is DataType.AGG_TRADES:
        return list(AGG_TRADE_COLUMNS)
    if data_type is DataType.PREMIUM_INDEX:
        return list(PREMIUM_INDEX_COLUMNS)
    return list(CANDLE_COLUMNS)


def raw_columns_for(data_type: DataType) -> list[str]:
    if data_type is DataType.AGG_TRADES:
        return list(AGG_TRADE_RAW_COLUMNS)
    return list(KLINE_RAW_COLUMNS)


def key_columns(data_type: DataType) -> list[str]:
    return ["agg_id"] if data_type is DataType.AGG_TRADES else ["timestamp"]


def empty_frame(data_type: DataType) -> pd.DataFrame:
    return pd.DataFrame(columns=columns_for(data_type))


def looks_like_header(first_line: str) -> bool:
    """Archive CSVs gained a header row in 2022; older files have none."""
    first_field = str(first_line or "").split(",", 1)[0].strip().strip('"')
    if not first_field:
        return False
    try:
        float(first_field)
    except ValueError:
        return True
    return False


def _to_bool(series: pd.Series) -> pd.Series:
    if series.dtype == bool:
        return series
    text = series.astype(str).str.strip().str.lower()
    return text.isin(("true", "1", "t", "yes"))


def normalize_frame(raw: pd.DataFrame, data_type: DataType) -> pd.DataFrame:
    """Map a raw kline/aggTrade frame onto the canonical columns."""
    if raw is None or raw.empty:
        return empty_frame(data_type)

    rename = _AGG_RENAME if data_type is DataType.AGG_TRADES else _KLINE_RENAME
    df = raw.rename(columns=rename)
    wanted = columns_for(data_type)
    missing = [c for c in wanted if c not in df.columns]
    if missing:
        raise ValueError(f"Missing columns for {data_type.value}: {missing}")
    df = df.loc[:, wanted].copy()

    for col in wanted:
        if col == "is_buyer_maker":
            df[col] = _to_bool(df[col])
        else:
            df[col] = pd.to_numeric(df[col], errors="coerce")

    df = df.replace([np.inf, -np.inf], np.nan)
    df = df.dropna(subset=sorted(set(key_columns(data_type)) | {"timestamp"}))
    if df.empty:
        return empty_frame(data_type)

    for col in wanted:
        if col in _INT_COLUMNS:
            df[col] = df[col].fillna(0).astype(np.int64)

    keys = key_columns(data_type)
    df = df.drop_duplicates(subset=keys, keep="last")
    df = df.sort_values(keys, kind="mergesort").reset_index(drop=True)
    return df


def frame_from_klines(rows: Iterable[Iterable[Any]], data_type: DataType) -> pd.DataFrame:
    """Build a frame from REST kline arrays."""
    rows = [list(r)[: len(KLINE_RAW_COLUMNS)] for r in rows or []]
    if not rows:
        return empty_frame(data_type)
    width = len(rows[0])
    raw = pd.DataFrame(rows, columns=KLINE_RAW_COLUMNS[:width])
    return normalize_frame(raw, data_type)


def frame_from_agg_trades(rows: Iterable[dict]) -> pd.DataFrame:
    """Build a frame from REST aggTrade objects."""
    rows = list(rows or [])
    if not rows:
        return empty_frame(DataType.AGG_TRADES)
    raw = pd.DataFrame.from_records(rows).rename(columns=_AGG_JSON_KEYS)
    return normalize_frame(raw, DataType.AGG_TRADES)


def make_batch(
    symbol: str,
    data_type: DataType,
    timeframe: Optional[str],
    frame: pd.DataFrame,
) -> RecordBatch:
    return RecordBatch(
        symbol=str(symbol).upper(),
        data_type=data_type,
        timeframe=None if data_type is DataType.AGG_TRADES else timeframe,
        frame=frame,
    )
