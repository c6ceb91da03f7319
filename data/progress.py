# data/progress.py
"""Latest-value-wins progress state for one fetch job.

The worker publishes, any number of readers poll ``latest()`` or receive
pushes through ``subscribe()``. Nothing is queued: a reader that falls
behind simply sees the newest snapshot.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional

from core.types import ProgressUpdate
from utils.logger import get_logger

log = get_logger(__name__)

ProgressListener = Callable[[ProgressUpdate], None]


class ProgressChannel:
    """
    Single-writer progress holder.

    ``units_processed`` never goes down. With ``monotonic_percent`` the
    percentage never goes down either, and an indeterminate update keeps the
    last known percentage instead of blanking it.
    """

    def __init__(self, job_id: str, monotonic_percent: bool = False):
        self.job_id = job_id
        self.monotonic_percent = bool(monotonic_percent)
        self._lock = threading.Lock()
        self._latest = ProgressUpdate(job_id=job_id, message="Pending")
        self._listeners: list[ProgressListener] = []

    def latest(self) -> ProgressUpdate:
        with self._lock:
            return self._latest

    def publish(
        self,
        message: Optional[str] = None,
        percent_complete: Optional[float] = None,
        units_processed: Optional[int] = None,
    ) -> ProgressUpdate:
        """Replace the snapshot. Omitted fields keep their previous values,
        except ``percent_complete`` which None marks as indeterminate."""
        with self._lock:
            prev = self._latest

            units = prev.units_processed
            if units_processed is not None:
                units = max(units, int(units_processed))

            percent = None
            if percent_complete is not None:
                percent = min(100.0, max(0.0, float(percent_complete)))

            if self.monotonic_percent and prev.percent_complete is not None:
                percent = prev.percent_complete if percent is None else max(percent, prev.percent_complete)

            update = ProgressUpdate(
                job_id=self.job_id,
                percent_complete=percent,
                message=prev.message if message is None else str(message),
                units_processed=units,
            )
            self._latest = update
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(update)
            except Exception:
                # An observer must never take down the worker.
                log.exception("Progress listener failed for job %s", self.job_id)
        return update

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a push listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe
