from __future__ import annotations

import os
from typing import Final

_TRUTHY_ENV: Final[frozenset[str]] = frozenset(
    {"1", "true", "yes", "on"}
)


def env_flag(name: str, default: str = "0") -> bool:
    """Read a boolean-like env flag (1/true/yes/on, case-insensitive)."""
    return str(os.environ.get(name, default)).strip().lower() in _TRUTHY_ENV


def env_text(name: str, default: str | None = "") -> str:
    """Read a text env value; unset or None collapses to ''."""
    return str(os.environ.get(name, default) or "")


def env_int(name: str, default: int = 0) -> int:
    """Read an integer env value, falling back on blank or invalid input."""
    raw = os.environ.get(name)
    if raw is None:
        return int(default)

    text = str(raw).strip()
    if not text:
        return int(default)

    try:
        return int(text)
    except (TypeError, ValueError):
        return int(default)


def env_float(name: str, default: float = 0.0) -> float:
    """Read a float env value, falling back on blank or invalid input."""
    raw = os.environ.get(name)
    if raw is None:
        return float(default)

    text = str(raw).strip()
    if not text:
        return float(default)

    try:
        return float(text)
    except (TypeError, ValueError):
        return float(default)
