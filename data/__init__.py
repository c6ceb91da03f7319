# data/__init__.py

def __getattr__(name: str):
    """Lazy import dispatcher for the data package."""

    _ESTIMATOR = {'estimate', 'select', 'StrategySelector'}
    _PROGRESS = {'ProgressChannel'}
    _INTERFACES = {'IncrementalClient', 'BulkClient', 'DataSink', 'CoverageStore'}
    _JOB = {'FetchJob'}
    _ORCHESTRATOR = {'FetchOrchestrator'}
    _DATABASE = {'SqliteDataSink'}

    if name in _ESTIMATOR:
        from . import estimator as _estimator
        return getattr(_estimator, name)

    if name in _PROGRESS:
        from .progress import ProgressChannel
        return ProgressChannel

    if name in _INTERFACES:
        from . import interfaces as _interfaces
        return getattr(_interfaces, name)

    if name in _JOB:
        from .fetch_job import FetchJob
        return FetchJob

    if name in _ORCHESTRATOR:
        from .orchestrator import FetchOrchestrator
        return FetchOrchestrator

    if name in _DATABASE:
        from .database import SqliteDataSink
        return SqliteDataSink

    if name == 'BinanceRestClient':
        from .binance_rest import BinanceRestClient
        return BinanceRestClient

    if name == 'BinanceVisionClient':
        from .binance_vision import BinanceVisionClient
        return BinanceVisionClient

    raise AttributeError(f"module 'data' has no attribute {name!r}")
