# config/settings.py
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config.runtime_env import env_text
from config.settings_utils import (
    _coerce_bool,
    _safe_dataclass_from_dict,
)

_SENTINEL = object()

# Plain stdlib logger: utils.logger imports nothing from config, but keeping
# settings free of project imports avoids load-order surprises.
_log = logging.getLogger("config.settings")


@dataclass
class FetchConfig:
    """Fetch orchestration knobs."""
    api_page_size: int = 1000
    incremental_call_threshold: int = 10
    bulk_min_covered_days: int = 28
    agg_trades_bulk_min_days: int = 3

    # Restart arbitration: poll the superseded job at this interval and
    # give up after restart_timeout_s.
    restart_poll_s: float = 0.1
    restart_timeout_s: float = 30.0

    # Pause between incremental pages (upstream rate limiting).
    page_delay_s: float = 0.1

    job_history_size: int = 32
    allow_small_candle_fetch: bool = True


@dataclass
class HttpConfig:
    """HTTP client configuration for REST and archive downloads."""
    rest_base_url: str = "https://fapi.binance.com"
    vision_base_url: str = "https://data.binance.vision/data/futures/um/monthly"
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    # Archive files can be hundreds of MB.
    bulk_read_timeout: float = 600.0
    max_retries: int = 3
    backoff_factor: float = 0.5
    pool_size: int = 10
    user_agent: str = "history-fetch/1.0"
    download_chunk_bytes: int = 1024 * 1024
    csv_batch_rows: int = 10_000


@dataclass
class StorageConfig:
    """Local storage configuration."""
    db_filename: str = "market_history.db"


class Config:
    """
    Process-wide configuration manager.

    Usage:
        from config.settings import CONFIG
        print(CONFIG.fetch.restart_poll_s)

    Values come from defaults, then ``config.json`` in the project root,
    then ``HISTFETCH_*`` environment variables. Bad values are reported in
    ``validation_warnings`` and never raise.
    """

    _instance: Optional[Config] = None
    _instance_lock = threading.RLock()

    def __new__(cls) -> Config:
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
        self._lock = threading.RLock()
        self._base_dir = Path(__file__).parent.parent
        self._config_file = self._base_dir / "config.json"
        self._env_prefix = "HISTFETCH_"
        self._validation_warnings: List[str] = []

        self.fetch = FetchConfig()
        self.http = HttpConfig()
        self.storage = StorageConfig()

        self._data_dir_override: Optional[str] = None
        self._data_dir_cached: Any = _SENTINEL
        self._log_dir_cached: Any = _SENTINEL

        # __init__ is serialized by _instance_lock; _load must not take
        # self._lock here.
        self._load()
        self._validate()

    # ==================== PATHS ====================
    # Getters never create directories. Use ensure_dirs() explicitly.

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def data_dir(self) -> Path:
        if self._data_dir_cached is _SENTINEL:
            override = self._data_dir_override
            self._data_dir_cached = (
                Path(override) if override else self._base_dir / "data_storage"
            )
        return self._data_dir_cached

    @property
    def log_dir(self) -> Path:
        if self._log_dir_cached is _SENTINEL:
            self._log_dir_cached = self._base_dir / "logs"
        return self._log_dir_cached

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.storage.db_filename

    def ensure_dirs(self) -> None:
        for d in (self.data_dir, self.log_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ==================== LOADING ====================

    def _load(self) -> None:
        if self._config_file.exists():
            try:
                with open(self._config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._apply_dict(data)
            except (OSError, json.JSONDecodeError) as e:
                _log.warning("Failed to load config file: %s", e)

        self._load_from_env()

    def _load_from_env(self) -> None:
        """Apply HISTFETCH_* environment overrides."""
        env_mappings: Dict[str, tuple[str, Callable[[str], Any]]] = {
            "API_PAGE_SIZE": ("fetch.api_page_size", int),
            "CALL_THRESHOLD": ("fetch.incremental_call_threshold", int),
            "BULK_MIN_DAYS": ("fetch.bulk_min_covered_days", int),
            "AGG_TRADES_BULK_MIN_DAYS": ("fetch.agg_trades_bulk_min_days", int),
            "RESTART_POLL_S": ("fetch.restart_poll_s", float),
            "RESTART_TIMEOUT_S": ("fetch.restart_timeout_s", float),
            "PAGE_DELAY_S": ("fetch.page_delay_s", float),
            "ALLOW_SMALL_CANDLE_FETCH": (
                "fetch.allow_small_candle_fetch",
                _parse_bool,
            ),
            "REST_BASE_URL": ("http.rest_base_url", str),
            "VISION_BASE_URL": ("http.vision_base_url", str),
            "HTTP_MAX_RETRIES": ("http.max_retries", int),
            "HTTP_READ_TIMEOUT": ("http.read_timeout", float),
            "DB_FILENAME": ("storage.db_filename", str),
        }

        for env_key, (attr_path, converter) in env_mappings.items():
            full_key = f"{self._env_prefix}{env_key}"
            value = env_text(full_key, None).strip()
            if not value:
                continue
            try:
                self._set_nested(attr_path, converter(value))
            except (TypeError, ValueError) as e:
                _log.warning(
                    "Failed to apply env %s=%r: %s", full_key, value, e
                )

        data_dir = env_text(f"{self._env_prefix}DATA_DIR", None).strip()
        if data_dir:
            self._data_dir_override = data_dir
            self._data_dir_cached = _SENTINEL

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        sub_configs = {
            "fetch": self.fetch,
            "http": self.http,
            "storage": self.storage,
        }

        for key, value in data.items():
            target = sub_configs.get(key)
            if target is None:
                _log.debug("Unknown config key '%s' - ignored", key)
                continue
            if not isinstance(value, dict):
                _log.warning(
                    "Expected dict for '%s', got %s - ignored",
                    key,
                    type(value).__name__,
                )
                continue
            for w in _safe_dataclass_from_dict(target, value):
                _log.warning("Config %s: %s", key, w)

    def _set_nested(self, path: str, value: Any) -> None:
        """Set a dotted attribute like 'fetch.restart_poll_s'."""
        parts = path.split(".")
        obj = self
        for part in parts[:-1]:
            obj = getattr(obj, part)
        setattr(obj, parts[-1], value)

    # ==================== VALIDATION ====================

    def _validate(self) -> None:
        """Collect warnings and clamp values that would break fetching."""
        self._validation_warnings.clear()
        f = self.fetch

        if f.api_page_size <= 0:
            self._validation_warnings.append(
                f"api_page_size must be positive, got {f.api_page_size} - using 1000"
            )
            f.api_page_size = 1000

        if f.restart_poll_s <= 0:
            self._validation_warnings.append(
                f"restart_poll_s must be positive, got {f.restart_poll_s} - using 0.1"
            )
            f.restart_poll_s = 0.1

        if f.restart_timeout_s < f.restart_poll_s:
            self._validation_warnings.append(
                f"restart_timeout_s ({f.restart_timeout_s}) is shorter than "
                f"restart_poll_s ({f.restart_poll_s})"
            )

        if f.page_delay_s < 0:
            self._validation_warnings.append("page_delay_s cannot be negative")
            f.page_delay_s = 0.0

        if f.job_history_size < 1:
            self._validation_warnings.append("job_history_size must be >= 1")
            f.job_history_size = 1

        if self.http.csv_batch_rows <= 0:
            self._validation_warnings.append("csv_batch_rows must be positive")
            self.http.csv_batch_rows = 10_000

        for w in self._validation_warnings:
            _log.warning("Config validation: %s", w)

    @property
    def validation_warnings(self) -> List[str]:
        return list(self._validation_warnings)

    # ==================== RELOAD ====================

    def reload(self) -> None:
        """Reset sub-configs to defaults, then re-apply file and env."""
        with self._lock:
            self.fetch = FetchConfig()
            self.http = HttpConfig()
            self.storage = StorageConfig()
            self._data_dir_cached = _SENTINEL
            self._log_dir_cached = _SENTINEL
            self._load()
            self._validate()

    def __repr__(self) -> str:
        return (
            f"Config(data_dir={self.data_dir}, "
            f"call_threshold={self.fetch.incremental_call_threshold}, "
            f"restart_timeout_s={self.fetch.restart_timeout_s})"
        )


def _parse_bool(text: str) -> bool:
    ok, parsed = _coerce_bool(text)
    if not ok:
        raise ValueError(f"not a boolean: {text!r}")
    return parsed


CONFIG = Config()
