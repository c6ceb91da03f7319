# utils/logger.py
"""
Logging setup: coloured console output plus optional rotating file log.

Every module does ``log = get_logger(__name__)`` at import time. Loggers
created before ``setup_logging()`` runs are reconfigured in place when it
is called, so import order does not matter.
"""
from __future__ import annotations

import copy
import logging
import logging.handlers
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

_CONSOLE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_FILE_FORMAT = "%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s"

_colorama_lock = threading.Lock()
_colorama_ready: Optional[bool] = None


def _ensure_colorama() -> bool:
    """Initialise colorama once (needed for ANSI colour on Windows consoles)."""
    global _colorama_ready

    if _colorama_ready is not None:
        return _colorama_ready

    with _colorama_lock:
        if _colorama_ready is None:
            try:
                import colorama

                colorama.just_fix_windows_console()
                _colorama_ready = True
            except (ImportError, AttributeError):
                _colorama_ready = False
        return _colorama_ready


class ColorFormatter(logging.Formatter):
    """Formatter that colours the level name.

    Works on a copy of the record: the same record is shared with the file
    handler, which must not receive escape codes.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        record_copy = copy.copy(record)
        color = self.COLORS.get(record_copy.levelname)
        if color:
            record_copy.levelname = f"{color}{record_copy.levelname}{self.RESET}"
        return super().format(record_copy)


class LoggerManager:
    """Thread-safe singleton that creates and caches named loggers."""

    _instance: Optional[LoggerManager] = None
    _instance_lock = threading.Lock()

    def __new__(cls) -> LoggerManager:
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    inst = super().__new__(cls)
                    inst._initialized = False
                    cls._instance = inst
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return

        self._initialized = True
        self._loggers: Dict[str, logging.Logger] = {}
        self._lock = threading.Lock()
        self._file_handler: Optional[logging.Handler] = None
        self._level: int = logging.INFO

    def setup(
        self,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ) -> None:
        """(Re)configure level and file logging. Safe to call repeatedly."""
        with self._lock:
            self._level = level
            self._close_file_handler()

            if log_dir is not None:
                log_path = Path(log_dir)
                log_path.mkdir(parents=True, exist_ok=True)
                log_file = log_path / f"history_fetch_{datetime.now():%Y%m%d}.log"

                handler = logging.handlers.RotatingFileHandler(
                    log_file,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                handler.setLevel(level)
                handler.setFormatter(logging.Formatter(_FILE_FORMAT))
                self._file_handler = handler

            for logger in self._loggers.values():
                logger.setLevel(level)
                for h in logger.handlers:
                    h.setLevel(level)
                if self._file_handler is not None and self._file_handler not in logger.handlers:
                    logger.addHandler(self._file_handler)

    def get_logger(self, name: str) -> logging.Logger:
        with self._lock:
            logger = self._loggers.get(name)
            if logger is not None:
                return logger

            logger = logging.getLogger(name)
            logger.setLevel(self._level)
            logger.propagate = False

            # A logger fetched earlier via logging.getLogger may already
            # carry handlers; start clean to avoid duplicate lines.
            for h in logger.handlers[:]:
                logger.removeHandler(h)

            logger.addHandler(self._console_handler())
            if self._file_handler is not None:
                logger.addHandler(self._file_handler)

            self._loggers[name] = logger
            return logger

    def teardown(self) -> None:
        """Detach and close every handler; cached loggers are forgotten."""
        with self._lock:
            file_handler = self._file_handler
            for logger in self._loggers.values():
                for handler in logger.handlers[:]:
                    logger.removeHandler(handler)
                    if handler is not file_handler:
                        handler.close()
            self._loggers.clear()
            self._close_file_handler()

    def _console_handler(self) -> logging.StreamHandler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self._level)

        use_color = False
        isatty = getattr(sys.stdout, "isatty", None)
        if callable(isatty) and isatty():
            use_color = _ensure_colorama() if sys.platform == "win32" else True

        formatter_cls = ColorFormatter if use_color else logging.Formatter
        handler.setFormatter(formatter_cls(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
        return handler

    def _close_file_handler(self) -> None:
        handler = self._file_handler
        if handler is not None:
            self._file_handler = None
            handler.close()


_manager = LoggerManager()


def get_logger(name: str = "history_fetch") -> logging.Logger:
    """Get a configured logger."""
    return _manager.get_logger(name)


def setup_logging(
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
) -> None:
    """Configure the global level and optional file logging."""
    _manager.setup(log_dir, level)


def teardown_logging() -> None:
    """Close handlers and clear cached loggers."""
    _manager.teardown()
