# utils/cancellation.py
"""
Cooperative cancellation.

A ``CancellationToken`` is a one-way flag shared between the code that asks
for cancellation and the worker that honours it. Workers poll it at safe
checkpoints and exit on their own; nothing is interrupted forcibly.

Tokens are monotonic: once requested they stay requested. A new unit of
work gets a new token.

Usage:
    token = CancellationToken()

    # worker thread
    for page in pages:
        if token.is_requested():
            break
        write(page)

    # controlling thread
    token.request()
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from core.exceptions import CancelledError
from utils.logger import get_logger

log = get_logger(__name__)


class CancellationToken:
    """Thread-safe, set-once cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def request(self) -> bool:
        """
        Request cancellation. Idempotent.

        Returns True only for the call that actually set the flag; callbacks
        run exactly once, on that call.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def is_requested(self) -> bool:
        return self._event.is_set()

    def raise_if_requested(self) -> None:
        """Checkpoint: raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise CancelledError()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Sleep up to ``timeout`` seconds, waking early on cancellation.

        Returns True if cancellation was requested.
        """
        return self._event.wait(timeout)

    def on_request(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a zero-argument callback fired when cancellation is requested.

        Fires immediately if the token is already set. Usable as a decorator.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return callback

        self._run_callback(callback)
        return callback

    def remove_callback(self, callback: Callable[[], None]) -> bool:
        with self._lock:
            try:
                self._callbacks.remove(callback)
                return True
            except ValueError:
                return False

    def __call__(self) -> bool:
        """Stop-flag form: ``while not token(): ...``."""
        return self._event.is_set()

    def __bool__(self) -> bool:
        # Always truthy so `if token:` means "a token was given",
        # never "cancellation was requested".
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(requested={self._event.is_set()})"

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            # Cancellation itself must always succeed.
            log.exception("Cancellation callback %r failed", callback)


@contextmanager
def cancellable(token: Optional[CancellationToken] = None) -> Iterator[Callable[[], None]]:
    """
    Yield a checkpoint function bound to ``token``.

        with cancellable(token) as checkpoint:
            for batch in batches:
                checkpoint()
                upsert(batch)

    With no token the checkpoint is a no-op.
    """
    if token is None:
        yield lambda: None
    else:
        token.raise_if_requested()
        yield token.raise_if_requested
