# data/http_session.py
"""Pooled ``requests`` sessions with urllib3 retry/backoff."""
from __future__ import annotations

from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import HttpConfig


def create_session(config: Optional[HttpConfig] = None) -> requests.Session:
    """Create a session that retries 429/5xx with exponential backoff."""
    cfg = config or HttpConfig()
    session = requests.Session()
    session.headers.update({
        "User-Agent": cfg.user_agent,
        "Accept": "application/json, application/zip, */*",
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    })

    retry_strategy = Retry(
        total=max(0, int(cfg.max_retries)),
        backoff_factor=max(0.0, float(cfg.backoff_factor)),
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False,
        respect_retry_after_header=True,
    )

    adapter = HTTPAdapter(
        pool_connections=max(1, int(cfg.pool_size)),
        pool_maxsize=max(1, int(cfg.pool_size)),
        max_retries=retry_strategy,
        pool_block=False,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
