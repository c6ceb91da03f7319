# data/orchestrator.py
"""
Single-slot fetch orchestrator.

Owns at most one active job. A request that arrives while a job is running
cancels it, waits (bounded, polling) for it to actually stop, and only then
starts the replacement. Requests arriving during that wait replace each
other: the latest one wins.

All public methods return without waiting on network I/O.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from config.settings import FetchConfig
from core.exceptions import (
    IncrementalUnsupportedError,
    JobStateError,
    RestartTimeoutError,
)
from core.types import (
    FetchOutcome,
    FetchRequest,
    FetchStrategy,
    JobHandle,
    JobStatus,
    ProgressUpdate,
    VolumeEstimate,
)
from data.estimator import StrategySelector
from data.fetch_job import FetchJob
from data.interfaces import BulkClient, DataSink, IncrementalClient
from utils.logger import get_logger

log = get_logger(__name__)

ProgressListener = Callable[[ProgressUpdate], None]


class FetchOrchestrator:
    """Public surface of the fetch core."""

    def __init__(
        self,
        incremental_client: IncrementalClient,
        bulk_client: BulkClient,
        sink: DataSink,
        selector: Optional[StrategySelector] = None,
        config: Optional[FetchConfig] = None,
    ):
        self._config = config or FetchConfig()
        self._incremental = incremental_client
        self._bulk = bulk_client
        self._sink = sink
        self._selector = selector or StrategySelector.from_config(self._config)

        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._active: Optional[FetchJob] = None
        self._pending: Optional[FetchJob] = None
        self._arbiter: Optional[threading.Thread] = None
        self._jobs: "OrderedDict[str, FetchJob]" = OrderedDict()
        self._listeners: list[ProgressListener] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def estimate(self, request: FetchRequest) -> tuple[VolumeEstimate, FetchStrategy]:
        """Volume estimate and the strategy a submit would use."""
        request.validate()
        volume = self._selector.estimate(request)
        return volume, self._selector.select(request.data_type, volume)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def submit(self, request: FetchRequest) -> JobHandle:
        """
        Queue ``request`` and return at once.

        Raises InvalidRequestError (or a subclass) before any job exists
        if the request cannot be served.
        """
        request.validate()
        strategy = self._selector.choose_strategy(request)
        if (
            not self._config.allow_small_candle_fetch
            and strategy is FetchStrategy.INCREMENTAL
            and request.data_type.needs_timeframe
        ):
            raise IncrementalUnsupportedError(
                "Date range too small for bulk download. Use a larger range.",
                details={"request": request.describe()},
            )

        job = FetchJob(
            request,
            strategy,
            self._incremental,
            self._bulk,
            self._sink,
            page_delay_s=self._config.page_delay_s,
        )
        job.channel.subscribe(self._forward_progress)
        job.add_done_callback(self._on_job_done)

        start_now = False
        spawn_arbiter = False
        with self._lock:
            if self._closed:
                raise JobStateError("Orchestrator is shut down")
            self._remember(job)
            replaced = self._pending
            self._pending = None
            active = self._active
            if active is None:
                self._active = job
                start_now = True
            else:
                self._pending = job
                if self._arbiter is None:
                    self._arbiter = threading.Thread(
                        target=self._arbitrate,
                        name=f"fetch-restart-{job.id[:8]}",
                        daemon=False,
                    )
                    spawn_arbiter = True
                arbiter = self._arbiter

        log.info(
            "Submitted job %s: %s via %s",
            job.id[:8], request.describe(), strategy.value,
        )
        if replaced is not None:
            log.info("Job %s superseded before start", replaced.id[:8])
            replaced.request_cancel()

        if start_now:
            self._start_job(job)
        else:
            log.info("Restarting: cancelling job %s", active.id[:8])
            active.request_cancel()
            if spawn_arbiter:
                arbiter.start()

        return job.handle

    def cancel(self, handle: Optional[JobHandle] = None) -> bool:
        """
        Cancel ``handle`` (default: the active job).

        Cancelling the active or pending job also drops the pending restart;
        a handle to any other job leaves the slot alone.
        """
        with self._lock:
            if handle is None:
                target = self._active
            else:
                target = self._jobs.get(handle.job_id)
            pending = None
            if handle is None or (
                target is not None and (target is self._active or target is self._pending)
            ):
                pending = self._pending
                self._pending = None
            self._cond.notify_all()

        cancelled = False
        if pending is not None:
            cancelled = pending.request_cancel()
        if target is not None and target is not pending:
            cancelled = target.request_cancel() or cancelled
        return cancelled

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel everything and join worker threads."""
        with self._lock:
            self._closed = True
            jobs = list(self._jobs.values())
            arbiter = self._arbiter
        self.cancel()
        for job in jobs:
            if not job.status.is_terminal:
                job.request_cancel()
        if arbiter is not None and arbiter is not threading.current_thread():
            arbiter.join(timeout)
        for job in jobs:
            job.join(timeout)
        log.info("Orchestrator shut down")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is active or pending. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._active is None and self._pending is None and self._arbiter is None,
                timeout,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_progress(self, handle: JobHandle) -> ProgressUpdate:
        return self._job(handle).progress

    def status(self, handle: JobHandle) -> JobStatus:
        return self._job(handle).status

    def outcome(self, handle: JobHandle) -> FetchOutcome:
        return self._job(handle).outcome()

    def active_handle(self) -> Optional[JobHandle]:
        with self._lock:
            return self._active.handle if self._active is not None else None

    def active_progress(self) -> Optional[ProgressUpdate]:
        with self._lock:
            active = self._active
        return active.progress if active is not None else None

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Push progress of the active job to ``listener``. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _job(self, handle: JobHandle) -> FetchJob:
        with self._lock:
            job = self._jobs.get(handle.job_id)
        if job is None:
            raise KeyError(f"Unknown or expired job: {handle.job_id}")
        return job

    def _remember(self, job: FetchJob) -> None:
        self._jobs[job.id] = job
        limit = max(1, int(self._config.job_history_size))
        while len(self._jobs) > limit:
            oldest = next(iter(self._jobs.values()))
            if oldest is self._active or oldest is self._pending:
                break
            self._jobs.popitem(last=False)

    def _start_job(self, job: FetchJob) -> None:
        try:
            job.start()
        except JobStateError:
            # Superseded between hand-off and start.
            log.debug("Job %s not started: %s", job.id[:8], job.status.value)
            with self._lock:
                if self._active is job and job.status.is_terminal:
                    self._active = None
                    self._cond.notify_all()

    def _on_job_done(self, job: FetchJob) -> None:
        with self._lock:
            if self._active is job:
                self._active = None
            self._cond.notify_all()
        log.debug("Job %s finished: %s", job.id[:8], job.status.value)

    def _forward_progress(self, update: ProgressUpdate) -> None:
        with self._lock:
            active = self._active
            listeners = list(self._listeners)
        if active is None or update.job_id != active.id:
            return
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                log.exception("Progress listener failed")

    def _arbitrate(self) -> None:
        """
        Start the pending job once the active one is terminal.

        Polls every ``restart_poll_s``. If the active job is still alive
        after ``restart_timeout_s`` the pending job fails instead of running
        next to it. The clock restarts whenever a different job becomes
        the one being waited on.
        """
        poll_s = max(0.001, float(self._config.restart_poll_s))
        timeout_s = max(0.0, float(self._config.restart_timeout_s))
        watched: Optional[FetchJob] = None
        deadline = 0.0
        timed_out = False

        while True:
            with self._lock:
                active = self._active
                job = self._pending
                if job is None:
                    self._arbiter = None
                    self._cond.notify_all()
                    return
                if active is None or active.status.is_terminal:
                    self._pending = None
                    self._arbiter = None
                    self._active = job
                    self._cond.notify_all()
                    break
                if active is not watched:
                    watched = active
                    deadline = time.monotonic() + timeout_s
                elif time.monotonic() >= deadline:
                    self._pending = None
                    self._arbiter = None
                    self._cond.notify_all()
                    timed_out = True
                    break
            active.wait(poll_s)

        if timed_out:
            self._fail_restart(job, watched)
            return
        if watched is not None:
            log.info("Job %s stopped; starting job %s", watched.id[:8], job.id[:8])
        self._start_job(job)

    def _fail_restart(self, job: FetchJob, blocking: FetchJob) -> None:
        log.error(
            "Job %s did not stop within %.1fs; dropping restart %s",
            blocking.id[:8], self._config.restart_timeout_s, job.id[:8],
        )
        job.fail_before_start(
            RestartTimeoutError(
                f"Previous fetch did not stop within {self._config.restart_timeout_s:g}s",
                details={"previous_job": blocking.id, "job_id": job.id},
            )
        )
