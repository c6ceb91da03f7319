"""
Canonical fetch types. Other modules import these from here.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

import pandas as pd

from core.exceptions import InvalidRangeError, InvalidRequestError

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# ============================================================
# Enums
# ============================================================

class DataType(Enum):
    CANDLES = "candles"
    AGG_TRADES = "agg_trades"
    PREMIUM_INDEX = "premium_index"

    @property
    def needs_timeframe(self) -> bool:
        return self is not DataType.AGG_TRADES


class FetchStrategy(Enum):
    INCREMENTAL = "incremental"
    BULK = "bulk"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.RUNNING, JobStatus.CANCELLING)


# ============================================================
# Calendar months
# ============================================================

@dataclass(frozen=True, order=True)
class YearMonth:
    """A calendar month in UTC, the unit of archive downloads."""
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"month must be 1..12, got {self.month}")

    @classmethod
    def from_ms(cls, ms: int) -> "YearMonth":
        dt = _EPOCH + timedelta(milliseconds=int(ms))
        return cls(dt.year, dt.month)

    @classmethod
    def now(cls) -> "YearMonth":
        dt = datetime.now(timezone.utc)
        return cls(dt.year, dt.month)

    @classmethod
    def parse(cls, text: str) -> "YearMonth":
        """Parse 'YYYY-MM'."""
        year, _, month = str(text).strip().partition("-")
        return cls(int(year), int(month))

    def plus_months(self, n: int) -> "YearMonth":
        index = self.year * 12 + (self.month - 1) + int(n)
        return YearMonth(index // 12, index % 12 + 1)

    @property
    def start_ms(self) -> int:
        """First millisecond of the month."""
        dt = datetime(self.year, self.month, 1, tzinfo=timezone.utc)
        return (dt - _EPOCH) // timedelta(milliseconds=1)

    @property
    def end_ms(self) -> int:
        """Last millisecond of the month."""
        return self.plus_months(1).start_ms - 1

    def range_to(self, end: "YearMonth") -> List["YearMonth"]:
        """Months from self to end, inclusive. Empty if end < self."""
        months = []
        current = self
        while current <= end:
            months.append(current)
            current = current.plus_months(1)
        return months

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


# ============================================================
# Requests and estimates
# ============================================================

@dataclass(frozen=True)
class FetchRequest:
    """What to fetch. Timestamps are inclusive UTC epoch milliseconds."""
    symbol: str
    data_type: DataType
    range_start: int
    range_end: int
    timeframe: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "symbol", str(self.symbol or "").strip().upper())
        if not isinstance(self.data_type, DataType):
            object.__setattr__(self, "data_type", DataType(self.data_type))
        if self.timeframe is not None:
            object.__setattr__(self, "timeframe", str(self.timeframe).strip() or None)

    @classmethod
    def for_months(
        cls,
        symbol: str,
        data_type: DataType,
        start: YearMonth,
        end: YearMonth,
        timeframe: Optional[str] = None,
    ) -> "FetchRequest":
        """Whole-month request: first ms of ``start`` to last ms of ``end``."""
        return cls(
            symbol=symbol,
            data_type=data_type,
            range_start=start.start_ms,
            range_end=end.end_ms,
            timeframe=timeframe,
        )

    def validate(self) -> None:
        if not self.symbol:
            raise InvalidRequestError("Symbol is required")
        if self.range_start > self.range_end:
            raise InvalidRangeError(
                "Start must not be after end",
                details={"range_start": self.range_start, "range_end": self.range_end},
            )
        if self.data_type.needs_timeframe and not self.timeframe:
            raise InvalidRequestError(
                f"Timeframe is required for {self.data_type.value}"
            )
        if not self.data_type.needs_timeframe and self.timeframe:
            raise InvalidRequestError(
                f"Timeframe is not applicable to {self.data_type.value}",
                details={"timeframe": self.timeframe},
            )

    def describe(self) -> str:
        label = self.data_type.value
        if self.timeframe:
            label = f"{label} {self.timeframe}"
        return f"{self.symbol} {label}"


@dataclass(frozen=True)
class VolumeEstimate:
    """Unit and call fields are None for aggTrades, which are classified by days only."""
    units_per_hour: Optional[float]
    estimated_units: Optional[int]
    estimated_incremental_calls: Optional[int]
    covered_days: int


# ============================================================
# Records
# ============================================================

@dataclass
class RecordBatch:
    """Records for one series. ``frame`` has an epoch-ms ``timestamp`` column."""
    symbol: str
    data_type: DataType
    timeframe: Optional[str]
    frame: pd.DataFrame

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def empty(self) -> bool:
        return self.frame.empty


@dataclass
class Page:
    """One incremental page; ``next_cursor`` is None when paging is done."""
    records: RecordBatch
    next_cursor: Optional[int] = None


# ============================================================
# Progress and job views
# ============================================================

@dataclass(frozen=True)
class ProgressUpdate:
    """Progress snapshot. ``percent_complete`` is None while indeterminate."""
    job_id: str
    percent_complete: Optional[float] = None
    message: str = ""
    units_processed: int = 0

    @property
    def is_indeterminate(self) -> bool:
        return self.percent_complete is None


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    request: FetchRequest
    strategy: FetchStrategy


@dataclass(frozen=True)
class FetchOutcome:
    """Read-only summary of a job, safe to hand to any thread."""
    job_id: str
    status: JobStatus
    strategy: FetchStrategy
    units_processed: int = 0
    error: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)
