# core/constants.py
from fractions import Fraction

from core.types import DataType

# Upstream page cap for incremental calls.
API_PAGE_SIZE = 1000

# Strategy thresholds.
INCREMENTAL_CALL_THRESHOLD = 10
BULK_MIN_COVERED_DAYS = 28
AGG_TRADES_BULK_MIN_DAYS = 3

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

# Bars per hour for each supported timeframe. Kept as fractions so that
# slow timeframes (1d = 1/24 per hour) floor exactly.
UNITS_PER_HOUR = {
    "1m": Fraction(60),
    "3m": Fraction(20),
    "5m": Fraction(12),
    "15m": Fraction(4),
    "30m": Fraction(2),
    "1h": Fraction(1),
    "2h": Fraction(1, 2),
    "4h": Fraction(1, 4),
    "6h": Fraction(1, 6),
    "8h": Fraction(1, 8),
    "12h": Fraction(1, 12),
    "1d": Fraction(1, 24),
    "3d": Fraction(1, 72),
    "1w": Fraction(1, 168),
}
DEFAULT_TIMEFRAME = "1h"

TIMEFRAME_MS = {
    "1m": MS_PER_MINUTE,
    "3m": 3 * MS_PER_MINUTE,
    "5m": 5 * MS_PER_MINUTE,
    "15m": 15 * MS_PER_MINUTE,
    "30m": 30 * MS_PER_MINUTE,
    "1h": MS_PER_HOUR,
    "2h": 2 * MS_PER_HOUR,
    "4h": 4 * MS_PER_HOUR,
    "6h": 6 * MS_PER_HOUR,
    "8h": 8 * MS_PER_HOUR,
    "12h": 12 * MS_PER_HOUR,
    "1d": MS_PER_DAY,
    "3d": 3 * MS_PER_DAY,
    "1w": 7 * MS_PER_DAY,
}

# aggTrades queries bounded by both startTime and endTime must span
# less than one hour.
AGG_TRADES_WINDOW_MS = MS_PER_HOUR - 1

# USD-M futures archives start here.
EARLIEST_ARCHIVE_MONTH = (2019, 9)

DATA_TYPE_LABELS = {
    DataType.CANDLES: "candles",
    DataType.AGG_TRADES: "aggTrades",
    DataType.PREMIUM_INDEX: "premium index",
}


def timeframe_ms(timeframe: str | None) -> int:
    """Bar length in ms; unknown timeframes count as 1h."""
    return TIMEFRAME_MS.get(str(timeframe or ""), MS_PER_HOUR)
