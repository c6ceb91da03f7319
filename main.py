
import argparse
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_time(text: str, end: bool = False) -> int:
    """
    Parse 'YYYY-MM' or 'YYYY-MM-DD' (UTC) into epoch ms.

    With ``end=True`` the last millisecond of the month/day is returned,
    so ``--start 2024-01 --end 2024-03`` covers three whole months.
    """
    from core.types import YearMonth

    value = str(text).strip()
    if value.lower() == "now":
        return (datetime.now(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)
    if len(value) == 7:
        month = YearMonth.parse(value)
        return month.end_ms if end else month.start_ms

    day = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    if end:
        day += timedelta(days=1)
    ms = (day - _EPOCH) // timedelta(milliseconds=1)
    return ms - 1 if end else ms


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Historical market data fetcher')

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument('--estimate', action='store_true', help='Print volume estimate and strategy')
    mode.add_argument('--fetch', action='store_true', help='Fetch and store the range')

    parser.add_argument('--symbol', type=str, required=True, help='Symbol, e.g. BTCUSDT')
    parser.add_argument(
        '--type', dest='data_type', default='candles',
        choices=['candles', 'agg_trades', 'premium_index'], help='Data type',
    )
    parser.add_argument('--timeframe', type=str, default=None, help='Bar timeframe (candles/premium_index)')
    parser.add_argument('--start', type=str, required=True, help='YYYY-MM or YYYY-MM-DD (UTC)')
    parser.add_argument('--end', type=str, default='now', help='YYYY-MM, YYYY-MM-DD or "now"')
    parser.add_argument('--db', type=str, default=None, help='SQLite database path')
    parser.add_argument('--log-level', type=str, default='INFO', help='Logging level')
    return parser


def build_request(args):
    from core.types import DataType, FetchRequest

    data_type = DataType(args.data_type)
    timeframe = args.timeframe
    if data_type.needs_timeframe and not timeframe:
        timeframe = "1h"
    return FetchRequest(
        symbol=args.symbol,
        data_type=data_type,
        range_start=parse_time(args.start),
        range_end=parse_time(args.end, end=True),
        timeframe=timeframe,
    )


def run_estimate(orchestrator, request) -> int:
    volume, strategy = orchestrator.estimate(request)
    print(f"{request.describe()}: {volume.covered_days} days")
    if volume.estimated_units is not None:
        print(f"Estimated records: {volume.estimated_units:,}")
        print(f"Estimated API calls: {volume.estimated_incremental_calls:,}")
    print(f"Strategy: {strategy.value}")
    return 0


def run_fetch(orchestrator, request) -> int:
    from core.types import JobStatus

    handle = orchestrator.submit(request)
    print(f"[FETCH] {request.describe()} via {handle.strategy.value} (job {handle.job_id[:8]})")

    last_line = ""
    try:
        while not orchestrator.status(handle).is_terminal:
            line = _progress_line(orchestrator.current_progress(handle))
            if line != last_line:
                print(line)
                last_line = line
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("[FETCH] Cancelling...")
        orchestrator.cancel(handle)
        orchestrator.wait_idle()

    outcome = orchestrator.outcome(handle)
    print(_progress_line(orchestrator.current_progress(handle)))
    for warning in outcome.warnings:
        print(f"[WARN] {warning}")
    if outcome.status is JobStatus.FAILED:
        print(f"[FAILED] {outcome.error}")
        return 1
    print(f"[{outcome.status.value.upper()}] {outcome.units_processed} records")
    return 0


def _progress_line(update) -> str:
    if update.percent_complete is None:
        return f"[....] {update.message}"
    return f"[{update.percent_complete:3.0f}%] {update.message}"


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)

    from config.settings import CONFIG
    from utils.logger import get_logger, setup_logging

    level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    CONFIG.ensure_dirs()
    setup_logging(CONFIG.log_dir, level)
    log = get_logger()
    for warning in CONFIG.validation_warnings:
        log.warning("Config: %s", warning)

    from core.exceptions import InvalidRequestError
    from data.binance_rest import BinanceRestClient
    from data.binance_vision import BinanceVisionClient
    from data.database import SqliteDataSink
    from data.orchestrator import FetchOrchestrator

    try:
        request = build_request(args)
    except ValueError as e:
        print(f"Invalid arguments: {e}")
        sys.exit(2)

    db_path = Path(args.db) if args.db else CONFIG.db_path
    sink = SqliteDataSink(db_path)
    rest = BinanceRestClient(CONFIG.http, page_size=CONFIG.fetch.api_page_size)
    vision = BinanceVisionClient(sink, coverage=sink, http_config=CONFIG.http)
    orchestrator = FetchOrchestrator(rest, vision, sink, config=CONFIG.fetch)

    code = 0
    try:
        if args.estimate:
            code = run_estimate(orchestrator, request)
        else:
            code = run_fetch(orchestrator, request)
    except InvalidRequestError as e:
        print(f"Invalid request: {e.message}")
        code = 2
    except Exception as e:
        log.exception(f"Error: {e}")
        code = 1
    finally:
        orchestrator.shutdown(timeout=10.0)
        rest.close()
        vision.close()
        sink.close_all()

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
