"""Configuration Package."""
from .settings import (
    CONFIG,
    Config,
    FetchConfig,
    HttpConfig,
    StorageConfig,
)

__all__ = [
    'CONFIG',
    'Config',
    'FetchConfig',
    'HttpConfig',
    'StorageConfig',
]
