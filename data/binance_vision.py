# data/binance_vision.py
"""
Binance Vision monthly archive client.

Archives live under ``data.binance.vision`` as one zip per symbol, series
and month, each holding a single CSV. A month is published a few days after
it ends, so only months up to last month are requested.
"""
from __future__ import annotations

import tempfile
import zipfile
from typing import IO, Iterator, Optional

import pandas as pd
import requests
from pandas.errors import EmptyDataError

from config.settings import HttpConfig
from core.constants import DATA_TYPE_LABELS, EARLIEST_ARCHIVE_MONTH
from core.exceptions import DataFetchError
from core.types import DataType, YearMonth
from data.http_session import create_session
from data.interfaces import BulkClient, BulkProgressCallback, CoverageStore, DataSink
from data.records import looks_like_header, make_batch, normalize_frame, raw_columns_for
from utils.cancellation import CancellationToken
from utils.logger import get_logger

log = get_logger(__name__)

# Keep small archives in memory, spill large ones to disk.
_SPOOL_MAX_BYTES = 64 * 1024 * 1024


class BinanceVisionClient(BulkClient):
    """Downloads monthly archives and writes them to ``sink``."""

    def __init__(
        self,
        sink: DataSink,
        coverage: Optional[CoverageStore] = None,
        session: Optional[requests.Session] = None,
        http_config: Optional[HttpConfig] = None,
    ):
        self._sink = sink
        self._coverage = coverage
        self._config = http_config or HttpConfig()
        self._session = session or create_session(self._config)
        self._base_url = self._config.vision_base_url.rstrip("/")
        self._timeout = (self._config.connect_timeout, self._config.bulk_read_timeout)
        self._chunk_bytes = max(1024, int(self._config.download_chunk_bytes))
        self._batch_rows = max(1, int(self._config.csv_batch_rows))

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # URLs and availability
    # ------------------------------------------------------------------

    def build_url(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        month: YearMonth,
    ) -> str:
        sym = str(symbol).upper()
        if data_type is DataType.AGG_TRADES:
            return f"{self._base_url}/aggTrades/{sym}/{sym}-aggTrades-{month}.zip"
        folder = "premiumIndexKlines" if data_type is DataType.PREMIUM_INDEX else "klines"
        return f"{self._base_url}/{folder}/{sym}/{timeframe}/{sym}-{timeframe}-{month}.zip"

    def last_complete_month(self) -> YearMonth:
        return YearMonth.now().plus_months(-1)

    def is_month_available(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        month: YearMonth,
    ) -> bool:
        """HEAD the archive. Network errors count as unavailable."""
        url = self.build_url(symbol, data_type, timeframe, month)
        try:
            response = self._session.head(url, timeout=self._timeout, allow_redirects=True)
        except requests.exceptions.RequestException as exc:
            log.debug("HEAD %s failed: %s", url, exc)
            return False
        return response.status_code == 200

    def find_earliest_month(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str] = None,
    ) -> Optional[YearMonth]:
        """First published month, scanning forward from the futures launch."""
        month = YearMonth(*EARLIEST_ARCHIVE_MONTH)
        last = self.last_complete_month()
        while month <= last:
            if self.is_month_available(symbol, data_type, timeframe, month):
                return month
            month = month.plus_months(1)
        return None

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download_period(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        month: YearMonth,
        token: CancellationToken,
        progress_callback: Optional[BulkProgressCallback] = None,
    ) -> int:
        sym = str(symbol).upper()
        tf = None if data_type is DataType.AGG_TRADES else timeframe
        label = DATA_TYPE_LABELS[data_type]

        def report(records: int, message: str) -> None:
            if progress_callback is not None:
                progress_callback(records, message)

        if self._coverage is not None and self._coverage.is_covered(
            sym, data_type, tf, month.start_ms, month.end_ms
        ):
            log.debug("%s %s %s already covered, skipping", sym, label, month)
            report(0, "already downloaded")
            return 0

        if token.is_requested():
            return 0

        url = self.build_url(sym, data_type, tf, month)
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as archive:
            report(0, "downloading...")
            if not self._download(url, archive, token):
                return 0
            if token.is_requested():
                return 0
            archive.seek(0)
            inserted, completed = self._import_archive(
                archive, sym, data_type, tf, token, report
            )

        if completed and self._coverage is not None:
            self._coverage.mark_covered(sym, data_type, tf, month.start_ms, month.end_ms)
        log.info("%s %s %s: %d records%s", sym, label, month, inserted, "" if completed else " (cancelled)")
        return inserted

    def _download(self, url: str, target: IO[bytes], token: CancellationToken) -> bool:
        """Stream ``url`` into ``target``. False if missing (404) or cancelled."""
        try:
            response = self._session.get(url, stream=True, timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            raise DataFetchError(f"Download failed: {exc}", details={"url": url}) from exc

        with response:
            if response.status_code == 404:
                log.debug("Archive not published: %s", url)
                return False
            if not response.ok:
                raise DataFetchError(
                    f"HTTP {response.status_code} downloading {url}",
                    details={"url": url, "status": response.status_code},
                )
            size = 0
            try:
                for chunk in response.iter_content(chunk_size=self._chunk_bytes):
                    if token.is_requested():
                        log.debug("Download cancelled after %d bytes: %s", size, url)
                        return False
                    if chunk:
                        target.write(chunk)
                        size += len(chunk)
            except requests.exceptions.RequestException as exc:
                raise DataFetchError(f"Download interrupted: {exc}", details={"url": url}) from exc
        log.debug("Downloaded %d bytes from %s", size, url)
        return True

    def _import_archive(
        self,
        archive: IO[bytes],
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        token: CancellationToken,
        report,
    ) -> tuple[int, bool]:
        """Parse and upsert the archive CSV. Returns (inserted, completed)."""
        inserted = 0
        try:
            with zipfile.ZipFile(archive) as zf:
                names = [n for n in zf.namelist() if n.lower().endswith(".csv")]
                if not names:
                    raise DataFetchError("Archive contains no CSV file", details={"entries": zf.namelist()})
                with zf.open(names[0]) as probe:
                    header = looks_like_header(probe.readline().decode("utf-8", "replace"))
                with zf.open(names[0]) as raw:
                    for frame in self.iter_csv_batches(raw, data_type, skip_header=header):
                        if token.is_requested():
                            return inserted, False
                        if frame.empty:
                            continue
                        self._sink.upsert(make_batch(symbol, data_type, timeframe, frame))
                        inserted += len(frame)
                        report(inserted, f"imported {inserted} records")
        except zipfile.BadZipFile as exc:
            raise DataFetchError(f"Corrupt archive: {exc}") from exc
        return inserted, not token.is_requested()

    def iter_csv_batches(
        self,
        source: IO,
        data_type: DataType,
        skip_header: bool = False,
    ) -> Iterator[pd.DataFrame]:
        """Yield normalised frames of at most ``csv_batch_rows`` rows."""
        columns = raw_columns_for(data_type)
        try:
            reader = pd.read_csv(
                source,
                header=None,
                names=columns,
                usecols=range(len(columns)),
                skiprows=1 if skip_header else 0,
                chunksize=self._batch_rows,
            )
        except EmptyDataError:
            return
        with reader:
            for chunk in reader:
                yield normalize_frame(chunk, data_type)
