# data/fetch_job.py
"""One retrieval attempt, as a small state machine.

    PENDING --start--> RUNNING --done--> COMPLETED
    PENDING --cancel--> CANCELLED
    RUNNING --cancel--> CANCELLING --observed--> CANCELLED
    RUNNING --error--> FAILED

A job runs exactly one strategy. BULK jobs download whole archive months
up to the newest complete one, then backfill the trailing gap through the
incremental client. Work happens on a dedicated worker thread; the token is
polled between pages and between months, and whatever was written before a
cancel or a failure stays in the sink.
"""
from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from typing import Optional

from core.constants import DATA_TYPE_LABELS
from core.exceptions import (
    BackfillFailedError,
    CancelledError,
    FetchSystemError,
    JobStateError,
    RetrievalFailedError,
)
from core.types import (
    FetchOutcome,
    FetchRequest,
    FetchStrategy,
    JobHandle,
    JobStatus,
    ProgressUpdate,
    YearMonth,
)
from data.interfaces import BulkClient, DataSink, IncrementalClient
from data.progress import ProgressChannel
from utils.cancellation import CancellationToken
from utils.logger import get_logger

log = get_logger(__name__)

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {
        JobStatus.CANCELLING,
        JobStatus.CANCELLED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    },
    JobStatus.CANCELLING: {JobStatus.CANCELLED},
}


class FetchJob:
    """A cancellable background fetch for one request."""

    def __init__(
        self,
        request: FetchRequest,
        strategy: FetchStrategy,
        incremental_client: IncrementalClient,
        bulk_client: BulkClient,
        sink: DataSink,
        page_delay_s: float = 0.0,
        job_id: Optional[str] = None,
    ):
        self.id = job_id or uuid.uuid4().hex
        self.request = request
        self.strategy = strategy
        self.token = CancellationToken()

        self._incremental = incremental_client
        self._bulk = bulk_client
        self._sink = sink
        self._page_delay_s = max(0.0, float(page_delay_s))

        self._lock = threading.RLock()
        self._status = JobStatus.PENDING
        self._error: Optional[FetchSystemError] = None
        self._warnings: list[FetchSystemError] = []
        self._units = 0
        self._done = threading.Event()
        self._done_callbacks: list[Callable[["FetchJob"], None]] = []
        self._thread: Optional[threading.Thread] = None

        self.channel = ProgressChannel(
            self.id, monotonic_percent=strategy is FetchStrategy.BULK
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def status(self) -> JobStatus:
        with self._lock:
            return self._status

    @property
    def progress(self) -> ProgressUpdate:
        return self.channel.latest()

    @property
    def error(self) -> Optional[FetchSystemError]:
        with self._lock:
            return self._error

    @property
    def warnings(self) -> list[FetchSystemError]:
        with self._lock:
            return list(self._warnings)

    @property
    def handle(self) -> JobHandle:
        return JobHandle(job_id=self.id, request=self.request, strategy=self.strategy)

    def outcome(self) -> FetchOutcome:
        with self._lock:
            return FetchOutcome(
                job_id=self.id,
                status=self._status,
                strategy=self.strategy,
                units_processed=self._units,
                error=self._error.message if self._error else None,
                warnings=tuple(w.message for w in self._warnings),
            )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Dispatch the retrieval on a worker thread."""
        self._begin()
        thread = threading.Thread(
            target=self._execute,
            name=f"fetch-job-{self.id[:8]}",
            daemon=False,
        )
        with self._lock:
            self._thread = thread
        thread.start()

    def run(self) -> FetchOutcome:
        """Run the retrieval on the calling thread and return its outcome."""
        self._begin()
        self._execute()
        return self.outcome()

    def request_cancel(self) -> bool:
        """
        Ask the job to stop. Returns False if it had already finished.

        A job that never started is cancelled on the spot; a running one
        moves to CANCELLING until the worker notices.
        """
        self.token.request()
        with self._lock:
            status = self._status
            if status is JobStatus.RUNNING:
                self._transition_locked(JobStatus.CANCELLING)
            elif status is not JobStatus.PENDING:
                return status is JobStatus.CANCELLING
        if status is JobStatus.RUNNING:
            log.info("Job %s cancelling", self.id[:8])
            self.channel.publish(message="Cancelling...")
            return True
        self._finish(JobStatus.CANCELLED)
        return True

    def fail_before_start(self, error: FetchSystemError) -> None:
        """Abandon a job that was never dispatched."""
        self._finish(JobStatus.FAILED, error)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        """Join the worker thread, if one was started."""
        with self._lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def add_done_callback(self, callback: Callable[["FetchJob"], None]) -> None:
        """Call ``callback(job)`` once the job is terminal (now, if it already is)."""
        with self._lock:
            if not self._status.is_terminal:
                self._done_callbacks.append(callback)
                return
        self._run_done_callback(callback)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        # request_cancel sets the token before it takes the lock, so a job
        # whose cancel is still being finished never starts.
        with self._lock:
            if self.token.is_requested():
                raise JobStateError(
                    "Job was cancelled before it started",
                    details={"job_id": self.id, "status": self._status.value},
                )
            self._transition_locked(JobStatus.RUNNING)

    def _transition_locked(self, new_status: JobStatus) -> None:
        allowed = _TRANSITIONS.get(self._status, set())
        if new_status not in allowed:
            raise JobStateError(
                f"Illegal transition {self._status.value} -> {new_status.value}",
                details={"job_id": self.id},
            )
        self._status = new_status

    def _finish(
        self,
        status: JobStatus,
        error: Optional[FetchSystemError] = None,
    ) -> None:
        with self._lock:
            if self._status.is_terminal:
                return
            # A cancel that arrived at any point wins over success or failure.
            if self.token.is_requested() and status is not JobStatus.CANCELLED:
                status = JobStatus.CANCELLED
                error = None
            self._transition_locked(status)
            self._error = error
            callbacks = list(self._done_callbacks)
            self._done_callbacks.clear()
            units = self._units

        if status is JobStatus.COMPLETED:
            message = f"Complete ({units} records)"
            if self._warnings:
                message += " with warnings"
            self.channel.publish(message=message, percent_complete=100.0, units_processed=units)
            log.info("Job %s completed: %s, %d records", self.id[:8], self.request.describe(), units)
        elif status is JobStatus.CANCELLED:
            self.channel.publish(message=f"Cancelled ({units} records kept)", units_processed=units)
            log.info("Job %s cancelled after %d records", self.id[:8], units)
        else:
            self.channel.publish(
                message=f"Failed: {error.message if error else 'unknown error'}",
                units_processed=units,
            )

        self._done.set()
        for callback in callbacks:
            self._run_done_callback(callback)

    def _run_done_callback(self, callback: Callable[["FetchJob"], None]) -> None:
        try:
            callback(self)
        except Exception:
            log.exception("Done callback failed for job %s", self.id[:8])

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _execute(self) -> None:
        req = self.request
        method = " (bulk archive download)" if self.strategy is FetchStrategy.BULK else ""
        self._publish(f"Fetching {req.describe()}{method}...", None)
        log.info(
            "Job %s started: %s [%d, %d] via %s",
            self.id[:8], req.describe(), req.range_start, req.range_end,
            self.strategy.value,
        )

        try:
            if self.strategy is FetchStrategy.BULK:
                self._run_bulk()
            else:
                self._run_incremental(req.range_start, req.range_end, 0.0, 100.0, "Fetched")
        except CancelledError:
            self._finish(JobStatus.CANCELLED)
            return
        except Exception as exc:
            if self.token.is_requested():
                # Clients often fail noisily while being torn down; the
                # user asked for this, so it is a cancel, not a failure.
                log.debug("Job %s error after cancel: %s", self.id[:8], exc)
                self._finish(JobStatus.CANCELLED)
                return
            message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            log.error("Job %s failed: %s", self.id[:8], message)
            self._finish(
                JobStatus.FAILED,
                RetrievalFailedError(
                    message,
                    details={"job_id": self.id, "exception": type(exc).__name__},
                ),
            )
            return

        self._finish(JobStatus.COMPLETED)

    def _publish(self, message: str, percent: Optional[float]) -> None:
        self.channel.publish(
            message=message,
            percent_complete=percent,
            units_processed=self._units,
        )

    def _run_incremental(
        self,
        start: int,
        end: int,
        pct_from: float,
        pct_to: float,
        label: str,
    ) -> int:
        """Page through [start, end]. Returns the number of pages fetched."""
        req = self.request
        span = max(1, end - start + 1)
        cursor = start
        pages = 0

        while True:
            self.token.raise_if_requested()
            page = self._incremental.fetch_page(
                req.symbol, req.data_type, req.timeframe, cursor, end
            )
            pages += 1

            if not page.records.empty:
                self._sink.upsert(page.records)
                self._units += len(page.records)

            next_cursor = page.next_cursor
            done = next_cursor is None or next_cursor > end
            if not done and next_cursor <= cursor:
                log.warning(
                    "Job %s: cursor did not advance (%d -> %d), stopping",
                    self.id[:8], cursor, next_cursor,
                )
                done = True

            covered = (end + 1 if done else next_cursor) - start
            percent = pct_from + (pct_to - pct_from) * min(1.0, covered / span)
            self._publish(f"{label} {self._units} {DATA_TYPE_LABELS[req.data_type]} records", percent)
            log.debug("Job %s page %d: cursor=%d units=%d", self.id[:8], pages, cursor, self._units)

            if done:
                return pages
            cursor = next_cursor

            if self._page_delay_s and self.token.wait(self._page_delay_s):
                self.token.raise_if_requested()

    def _run_bulk(self) -> None:
        req = self.request
        last_complete = self._bulk.last_complete_month()
        archive_boundary = last_complete.plus_months(1).start_ms

        first_month = YearMonth.from_ms(req.range_start)
        last_month = min(YearMonth.from_ms(req.range_end), last_complete)
        months = first_month.range_to(last_month)

        has_gap = req.range_end >= archive_boundary
        gap_start = max(archive_boundary, req.range_start)

        # Share of the bar taken by archive months, proportional to time,
        # so moving on to the backfill never makes the percentage drop.
        total_span = req.range_end - req.range_start + 1
        bulk_share = (gap_start - req.range_start) / total_span if has_gap else 1.0
        bulk_to = 100.0 * bulk_share

        if months:
            log.info(
                "Job %s: downloading %d archive months %s..%s",
                self.id[:8], len(months), months[0], months[-1],
            )
        for index, month in enumerate(months):
            self.token.raise_if_requested()
            base_units = self._units
            month_from = bulk_to * index / len(months)

            def on_progress(records: int, message: str, _month=month, _base=base_units, _pct=month_from) -> None:
                self.channel.publish(
                    message=f"{_month}: {message}",
                    percent_complete=_pct,
                    units_processed=_base + max(0, int(records)),
                )

            inserted = self._bulk.download_period(
                req.symbol, req.data_type, req.timeframe, month, self.token, on_progress
            )
            self._units = base_units + max(0, int(inserted or 0))
            self.token.raise_if_requested()
            self._publish(
                f"Downloaded {month} ({index + 1}/{len(months)}, {self._units} records)",
                bulk_to * (index + 1) / len(months),
            )

        if not has_gap:
            return
        self.token.raise_if_requested()
        if not months:
            # Nothing archived yet: the API fetch is the primary retrieval,
            # so its failure fails the job.
            log.info("Job %s: no archive months in range, fetching via incremental API", self.id[:8])
            self._run_incremental(gap_start, req.range_end, 0.0, 100.0, "Fetched")
            return
        self._backfill(gap_start, req.range_end, bulk_to)

    def _backfill(self, start: int, end: int, pct_from: float) -> None:
        """Fill [start, end] incrementally. Failure is a warning, not a job failure."""
        log.info("Job %s: backfilling [%d, %d] via incremental API", self.id[:8], start, end)
        self._publish("Backfilling recent data via API...", pct_from)
        try:
            self._run_incremental(start, end, pct_from, 100.0, "Backfilled, total")
        except CancelledError:
            raise
        except Exception as exc:
            if self.token.is_requested():
                raise CancelledError() from exc
            warning = BackfillFailedError(
                f"Backfill failed: {getattr(exc, 'message', None) or exc}",
                details={"job_id": self.id, "start": start, "end": end},
            )
            with self._lock:
                self._warnings.append(warning)
            log.warning("Job %s: %s (bulk data kept)", self.id[:8], warning.message)

    def __repr__(self) -> str:
        return (
            f"FetchJob(id={self.id[:8]}, {self.request.describe()}, "
            f"strategy={self.strategy.value}, status={self.status.value})"
        )
