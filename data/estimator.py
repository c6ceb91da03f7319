# data/estimator.py
"""Volume estimation and retrieval strategy selection.

Both are pure functions of their inputs: no I/O, no clock, no config reads
at call time. They decide between paging the REST API and downloading
monthly archives.

Candles and premium index klines are estimated from a per-timeframe bar
rate. AggTrades volume depends on market activity and cannot be paged
reliably in advance (BTCUSDT alone prints tens of thousands of trades an
hour), so they are classified by covered days only.
"""
from __future__ import annotations

from typing import Optional

from core.constants import (
    AGG_TRADES_BULK_MIN_DAYS,
    API_PAGE_SIZE,
    BULK_MIN_COVERED_DAYS,
    DEFAULT_TIMEFRAME,
    INCREMENTAL_CALL_THRESHOLD,
    MS_PER_HOUR,
    UNITS_PER_HOUR,
)
from core.types import DataType, FetchRequest, FetchStrategy, VolumeEstimate


def estimate(
    data_type: DataType,
    timeframe: Optional[str],
    range_start: int,
    range_end: int,
    page_size: int = API_PAGE_SIZE,
) -> VolumeEstimate:
    """Estimate how much data a range holds and how many API pages it needs."""
    hours = max(0, int(range_end) - int(range_start)) // MS_PER_HOUR
    covered_days = hours // 24

    if data_type is DataType.AGG_TRADES:
        return VolumeEstimate(
            units_per_hour=None,
            estimated_units=None,
            estimated_incremental_calls=None,
            covered_days=covered_days,
        )

    rate = UNITS_PER_HOUR.get(str(timeframe or ""), UNITS_PER_HOUR[DEFAULT_TIMEFRAME])
    units = hours * rate.numerator // rate.denominator
    page = max(1, int(page_size))
    calls = -(-units // page)

    return VolumeEstimate(
        units_per_hour=float(rate),
        estimated_units=units,
        estimated_incremental_calls=calls,
        covered_days=covered_days,
    )


class StrategySelector:
    """Chooses INCREMENTAL or BULK retrieval. Total: never raises."""

    def __init__(
        self,
        call_threshold: int = INCREMENTAL_CALL_THRESHOLD,
        bulk_min_covered_days: int = BULK_MIN_COVERED_DAYS,
        agg_trades_bulk_min_days: int = AGG_TRADES_BULK_MIN_DAYS,
        page_size: int = API_PAGE_SIZE,
    ):
        self.call_threshold = int(call_threshold)
        self.bulk_min_covered_days = int(bulk_min_covered_days)
        self.agg_trades_bulk_min_days = int(agg_trades_bulk_min_days)
        self.page_size = int(page_size)

    @classmethod
    def from_config(cls, fetch_config) -> "StrategySelector":
        return cls(
            call_threshold=fetch_config.incremental_call_threshold,
            bulk_min_covered_days=fetch_config.bulk_min_covered_days,
            agg_trades_bulk_min_days=fetch_config.agg_trades_bulk_min_days,
            page_size=fetch_config.api_page_size,
        )

    def select(self, data_type: DataType, volume: VolumeEstimate) -> FetchStrategy:
        if data_type is DataType.AGG_TRADES:
            if volume.covered_days >= self.agg_trades_bulk_min_days:
                return FetchStrategy.BULK
            return FetchStrategy.INCREMENTAL

        # Archives only exist in whole months, so a dense but short range
        # stays incremental even when the call count is high.
        calls = volume.estimated_incremental_calls or 0
        if calls > self.call_threshold and volume.covered_days >= self.bulk_min_covered_days:
            return FetchStrategy.BULK
        return FetchStrategy.INCREMENTAL

    def estimate(self, request: FetchRequest) -> VolumeEstimate:
        return estimate(
            request.data_type,
            request.timeframe,
            request.range_start,
            request.range_end,
            page_size=self.page_size,
        )

    def choose_strategy(self, request: FetchRequest) -> FetchStrategy:
        return self.select(request.data_type, self.estimate(request))


_default_selector = StrategySelector()


def select(data_type: DataType, volume: VolumeEstimate) -> FetchStrategy:
    """Select with the default thresholds."""
    return _default_selector.select(data_type, volume)
