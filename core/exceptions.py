# core/exceptions.py
"""
Fetch error taxonomy.

Every error carries a machine-readable ``code`` and a ``details`` dict so
it can be logged or handed to a presentation layer via ``to_dict()``.
Cancellation is not an error: ``CancelledError`` exists only so that
retrieval code can unwind quickly, and jobs report it as ``CANCELLED``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class FetchSystemError(Exception):
    """Base exception for the fetch system."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        # Copied so later caller mutations don't leak in.
        self.details: Dict[str, Any] = dict(details) if details else {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.code and self.code != self.__class__.__name__:
            parts.insert(0, f"[{self.code}]")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r})"
        )


# ── Request errors (raised before a job exists) ─────────────


class InvalidRequestError(FetchSystemError):
    """The request is malformed."""


class InvalidRangeError(InvalidRequestError):
    """range_start is after range_end."""


class IncrementalUnsupportedError(InvalidRequestError):
    """Incremental candle fetches are disabled by configuration."""


# ── Retrieval errors ────────────────────────────────────────


class RetrievalFailedError(FetchSystemError):
    """Primary retrieval failed; the job is FAILED."""


class BackfillFailedError(FetchSystemError):
    """Trailing gap backfill failed after a successful bulk phase."""


class RestartTimeoutError(FetchSystemError):
    """A superseded job did not stop within the restart timeout."""


class DataFetchError(FetchSystemError):
    """Upstream data source returned an error."""


# ── Job control ─────────────────────────────────────────────


class JobStateError(FetchSystemError):
    """Illegal job state transition."""


class CancelledError(FetchSystemError):
    """Raised at a cancellation checkpoint."""

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)
