# data/interfaces.py
"""
Capability interfaces consumed by the fetch core.

The orchestrator and jobs only ever talk to these; concrete network clients
and storage engines are injected at construction time.
"""
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Optional

from core.types import DataType, Page, RecordBatch, YearMonth
from utils.cancellation import CancellationToken

# (records_inserted_so_far_in_period, message)
BulkProgressCallback = Callable[[int, str], None]


class IncrementalClient(ABC):
    """Paged access to a live API. One call returns at most one page."""

    @abstractmethod
    def fetch_page(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start: int,
        end: int,
    ) -> Page:
        """Fetch one page of records in [start, end] (epoch ms, inclusive)."""


class BulkClient(ABC):
    """Whole-month archive downloads. Implementations write to their own sink."""

    @abstractmethod
    def download_period(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        month: YearMonth,
        token: CancellationToken,
        progress_callback: Optional[BulkProgressCallback] = None,
    ) -> int:
        """Download and store one month. Returns the number of records inserted.

        Must poll ``token`` between units of work and return early when it is
        set, leaving already-written records in place.
        """

    @abstractmethod
    def last_complete_month(self) -> YearMonth:
        """Newest month guaranteed to be available in the archive."""


class DataSink(ABC):
    """Record storage with idempotent upserts."""

    @abstractmethod
    def upsert(self, batch: RecordBatch) -> None:
        """Insert or overwrite records; re-writing a record is a logical no-op."""


class CoverageStore(ABC):
    """Tracks which archive periods were fully imported."""

    @abstractmethod
    def is_covered(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start_ms: int,
        end_ms: int,
    ) -> bool:
        pass

    @abstractmethod
    def mark_covered(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start_ms: int,
        end_ms: int,
    ) -> None:
        pass
