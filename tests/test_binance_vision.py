import io
import zipfile

import pytest
import requests

from config.settings import HttpConfig
from core.exceptions import DataFetchError
from core.types import DataType, YearMonth
from data.binance_vision import BinanceVisionClient
from data.database import SqliteDataSink
from utils.cancellation import CancellationToken

JAN = YearMonth(2024, 1)
BASE = "https://vision.test/data/futures/um/monthly"

KLINE_HEADER = (
    "open_time,open,high,low,close,volume,close_time,quote_volume,"
    "count,taker_buy_volume,taker_buy_quote_volume,ignore\n"
)


def _kline_csv(count, header=False):
    start = JAN.start_ms
    lines = [
        f"{start + i * 3_600_000},1.0,2.0,0.5,1.5,10,{start + (i + 1) * 3_600_000 - 1},15,5,4,6,0"
        for i in range(count)
    ]
    return (KLINE_HEADER if header else "") + "\n".join(lines) + "\n"


def _zip(text, name="BTCUSDT-1h-2024-01.csv"):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(name, text)
    return buf.getvalue()


class FakeStreamResponse:
    def __init__(self, status=200, content=b""):
        self.status_code = status
        self._content = content

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=1024):
        for i in range(0, len(self._content), chunk_size):
            yield self._content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeVisionSession:
    def __init__(self, archives=None, published=()):
        self.archives = dict(archives or {})
        self.published = set(published)
        self.gets = []
        self.heads = []

    def get(self, url, stream=False, timeout=None, **kwargs):
        self.gets.append(url)
        content = self.archives.get(url)
        if isinstance(content, Exception):
            raise content
        if isinstance(content, int):
            return FakeStreamResponse(status=content)
        if content is None:
            return FakeStreamResponse(status=404)
        return FakeStreamResponse(content=content)

    def head(self, url, timeout=None, allow_redirects=False, **kwargs):
        self.heads.append(url)
        return FakeStreamResponse(status=200 if any(p in url for p in self.published) else 404)

    def close(self):
        pass


@pytest.fixture
def store(tmp_path):
    db = SqliteDataSink(tmp_path / "vision.db")
    yield db
    db.close_all()


def _client(store, session, batch_rows=2):
    config = HttpConfig(vision_base_url=BASE, csv_batch_rows=batch_rows, download_chunk_bytes=1024)
    return BinanceVisionClient(store, coverage=store, session=session, http_config=config)


def _url(client, month=JAN):
    return client.build_url("BTCUSDT", DataType.CANDLES, "1h", month)


def test_build_url_per_series() -> None:
    client = BinanceVisionClient(sink=None, session=FakeVisionSession(), http_config=HttpConfig(vision_base_url=BASE))

    assert client.build_url("btcusdt", DataType.CANDLES, "1m", JAN) == (
        f"{BASE}/klines/BTCUSDT/1m/BTCUSDT-1m-2024-01.zip"
    )
    assert client.build_url("BTCUSDT", DataType.PREMIUM_INDEX, "1h", JAN) == (
        f"{BASE}/premiumIndexKlines/BTCUSDT/1h/BTCUSDT-1h-2024-01.zip"
    )
    assert client.build_url("BTCUSDT", DataType.AGG_TRADES, None, JAN) == (
        f"{BASE}/aggTrades/BTCUSDT/BTCUSDT-aggTrades-2024-01.zip"
    )


def test_last_complete_month_is_previous_month() -> None:
    client = BinanceVisionClient(sink=None, session=FakeVisionSession())
    assert client.last_complete_month() == YearMonth.now().plus_months(-1)


@pytest.mark.parametrize("header", [False, True])
def test_download_imports_in_batches(store, header) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = _zip(_kline_csv(5, header=header))
    progress = []

    inserted = client.download_period(
        "BTCUSDT", DataType.CANDLES, "1h", JAN, CancellationToken(),
        progress_callback=lambda n, msg: progress.append(n),
    )

    assert inserted == 5
    assert store.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 5
    assert [n for n in progress if n] == [2, 4, 5]
    assert store.get_candles("BTCUSDT", "1h")["timestamp"].iloc[0] == JAN.start_ms
    assert store.is_covered("BTCUSDT", DataType.CANDLES, "1h", JAN.start_ms, JAN.end_ms)


def test_covered_month_is_skipped(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = _zip(_kline_csv(3))
    token = CancellationToken()

    assert client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, token) == 3
    assert client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, token) == 0
    assert len(session.gets) == 1


def test_missing_archive_counts_as_zero(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)

    assert client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, CancellationToken()) == 0
    assert not store.is_covered("BTCUSDT", DataType.CANDLES, "1h", JAN.start_ms, JAN.end_ms)


def test_server_error_raises(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = 503

    with pytest.raises(DataFetchError, match="HTTP 503"):
        client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, CancellationToken())


def test_transport_error_raises(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = requests.ConnectionError("reset by peer")

    with pytest.raises(DataFetchError, match="reset by peer"):
        client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, CancellationToken())


def test_corrupt_archive_raises(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = b"not a zip file"

    with pytest.raises(DataFetchError, match="Corrupt archive"):
        client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, CancellationToken())


def test_cancel_mid_import_keeps_written_batches(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    session.archives[_url(client)] = _zip(_kline_csv(6))
    token = CancellationToken()

    def on_progress(inserted, message):
        if inserted >= 2:
            token.request()

    inserted = client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, token, on_progress)

    assert inserted == 2
    assert store.count_rows("BTCUSDT", DataType.CANDLES, "1h") == 2
    assert not store.is_covered("BTCUSDT", DataType.CANDLES, "1h", JAN.start_ms, JAN.end_ms)


def test_cancelled_token_skips_download(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session)
    token = CancellationToken()
    token.request()

    assert client.download_period("BTCUSDT", DataType.CANDLES, "1h", JAN, token) == 0
    assert session.gets == []


def test_agg_trades_archive(store) -> None:
    session = FakeVisionSession()
    client = _client(store, session, batch_rows=100)
    url = client.build_url("BTCUSDT", DataType.AGG_TRADES, None, JAN)
    csv = (
        f"1,100.5,0.2,10,12,{JAN.start_ms},true\n"
        f"2,100.6,0.1,13,13,{JAN.start_ms + 5},false\n"
    )
    session.archives[url] = _zip(csv, name="BTCUSDT-aggTrades-2024-01.csv")

    assert client.download_period("BTCUSDT", DataType.AGG_TRADES, "1h", JAN, CancellationToken()) == 2

    frame = store.get_records("BTCUSDT", DataType.AGG_TRADES)
    assert frame["agg_id"].tolist() == [1, 2]
    assert frame["is_buyer_maker"].tolist() == [True, False]
    assert store.is_covered("BTCUSDT", DataType.AGG_TRADES, None, JAN.start_ms, JAN.end_ms)


def test_find_earliest_month_scans_forward() -> None:
    session = FakeVisionSession(published={"2019-11", "2019-12"})
    client = BinanceVisionClient(sink=None, session=session, http_config=HttpConfig(vision_base_url=BASE))

    assert client.find_earliest_month("BTCUSDT", DataType.CANDLES, "1h") == YearMonth(2019, 11)
    assert len(session.heads) == 3


def test_find_earliest_month_none_when_unpublished() -> None:
    client = BinanceVisionClient(sink=None, session=FakeVisionSession(), http_config=HttpConfig(vision_base_url=BASE))
    assert client.find_earliest_month("NEWUSDT", DataType.AGG_TRADES) is None
