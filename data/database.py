# data/database.py
import atexit
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from core.types import DataType, RecordBatch
from data.interfaces import CoverageStore, DataSink
from data.records import columns_for, empty_frame
from utils.logger import get_logger

log = get_logger(__name__)

# Current schema version; bump when adding or altering tables
_SCHEMA_VERSION = 1

_TABLES = {
    DataType.CANDLES: "candles",
    DataType.PREMIUM_INDEX: "premium_index",
    DataType.AGG_TRADES: "agg_trades",
}


class SqliteDataSink(DataSink, CoverageStore):
    """
    Local market history store.

    Tables:
    - _meta: Schema version tracking
    - candles: OHLCV klines keyed by (symbol, timeframe, timestamp)
    - premium_index: premium index klines, same key
    - agg_trades: aggregated trades keyed by (symbol, agg_id)
    - coverage: archive periods imported completely

    Writes are upserts, so replaying a page or a month is harmless.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: set = set()
        self._connections_lock = threading.Lock()
        self._schema_lock = threading.Lock()
        self._schema_ready = threading.Event()
        self._init_db()
        atexit.register(self.close_all)

    @property
    def path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @property
    def _conn(self) -> sqlite3.Connection:
        """Thread-local connection with automatic registration."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.add(conn)
        # Blocks only if another thread is still creating the schema.
        self._schema_ready.wait(timeout=30)
        return self._local.conn

    @contextmanager
    def _transaction(self):
        """Transaction context manager with proper rollback."""
        conn = self._conn
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_db(self):
        with self._schema_lock:
            try:
                self._create_or_migrate()
            finally:
                self._schema_ready.set()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        """Read current schema version (0 if fresh db)."""
        conn.execute(
            "CREATE TABLE IF NOT EXISTS _meta "
            "(key TEXT PRIMARY KEY, value TEXT)"
        )
        conn.commit()
        row = conn.execute(
            "SELECT value FROM _meta WHERE key = 'schema_version'"
        ).fetchone()
        try:
            return int(row[0]) if row else 0
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int):
        conn.execute(
            "INSERT INTO _meta (key, value) VALUES ('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (str(version),),
        )
        conn.commit()

    def _create_or_migrate(self):
        # Dedicated DDL connection so no thread-local connection is handed
        # out before the schema exists.
        conn = sqlite3.connect(str(self._db_path), timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            current = self._get_schema_version(conn)
            if current < 1:
                self._apply_v1(conn)
            self._set_schema_version(conn, _SCHEMA_VERSION)
        finally:
            conn.close()

    @staticmethod
    def _apply_v1(conn: sqlite3.Connection):
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS candles (
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                open REAL, high REAL, low REAL, close REAL,
                volume REAL, quote_volume REAL, trades INTEGER,
                taker_buy_base REAL, taker_buy_quote REAL,
                PRIMARY KEY (symbol, timeframe, timestamp)
            );

            CREATE TABLE IF NOT EXISTS premium_index (
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                open REAL, high REAL, low REAL, close REAL,
                PRIMARY KEY (symbol, timeframe, timestamp)
            );

            CREATE TABLE IF NOT EXISTS agg_trades (
                symbol TEXT NOT NULL,
                agg_id INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                price REAL, quantity REAL,
                first_trade_id INTEGER, last_trade_id INTEGER,
                is_buyer_maker INTEGER,
                PRIMARY KEY (symbol, agg_id)
            );

            CREATE INDEX IF NOT EXISTS idx_agg_trades_time
                ON agg_trades(symbol, timestamp);

            CREATE TABLE IF NOT EXISTS coverage (
                symbol TEXT NOT NULL,
                data_type TEXT NOT NULL,
                sub_key TEXT NOT NULL DEFAULT '',
                start_ms INTEGER NOT NULL,
                end_ms INTEGER NOT NULL,
                recorded_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (symbol, data_type, sub_key, start_ms)
            );
        """)
        conn.commit()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _rows(batch: RecordBatch, columns: List[str]) -> List[tuple]:
        frame = batch.frame.loc[:, columns]
        values = frame.astype(object).where(pd.notna(frame), None).to_numpy()
        prefix = (batch.symbol,) if batch.data_type is DataType.AGG_TRADES else (batch.symbol, batch.timeframe or "")
        rows = []
        for record in values:
            converted = []
            for value in record:
                if isinstance(value, (np.integer, np.bool_)):
                    value = int(value)
                elif isinstance(value, np.floating):
                    value = float(value)
                elif isinstance(value, bool):
                    value = int(value)
                converted.append(value)
            rows.append(prefix + tuple(converted))
        return rows

    def upsert(self, batch: RecordBatch) -> None:
        """Insert or overwrite ``batch`` in one transaction."""
        if batch is None or batch.empty:
            return

        table = _TABLES[batch.data_type]
        columns = columns_for(batch.data_type)
        missing = [c for c in columns if c not in batch.frame.columns]
        if missing:
            raise ValueError(f"{table}: missing columns {missing}")

        if batch.data_type is DataType.AGG_TRADES:
            key = ["symbol", "agg_id"]
            all_cols = ["symbol"] + columns
        else:
            key = ["symbol", "timeframe", "timestamp"]
            all_cols = ["symbol", "timeframe"] + columns

        updates = ", ".join(f"{c}=excluded.{c}" for c in all_cols if c not in key)
        sql = (
            f"INSERT INTO {table} ({', '.join(all_cols)}) "
            f"VALUES ({', '.join('?' for _ in all_cols)}) "
            f"ON CONFLICT({', '.join(key)}) DO UPDATE SET {updates}"
        )
        rows = self._rows(batch, columns)
        with self._transaction() as conn:
            conn.executemany(sql, rows)
        log.debug("Upserted %d rows into %s for %s", len(rows), table, batch.symbol)

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def is_covered(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start_ms: int,
        end_ms: int,
    ) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM coverage WHERE symbol = ? AND data_type = ? "
            "AND sub_key = ? AND start_ms <= ? AND end_ms >= ? LIMIT 1",
            (str(symbol).upper(), data_type.value, timeframe or "", int(start_ms), int(end_ms)),
        ).fetchone()
        return row is not None

    def mark_covered(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str],
        start_ms: int,
        end_ms: int,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO coverage (symbol, data_type, sub_key, start_ms, end_ms) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(symbol, data_type, sub_key, start_ms) DO UPDATE SET "
                "end_ms = MAX(end_ms, excluded.end_ms), recorded_at = CURRENT_TIMESTAMP",
                (str(symbol).upper(), data_type.value, timeframe or "", int(start_ms), int(end_ms)),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _where(self, symbol: str, data_type: DataType, timeframe: Optional[str]):
        if data_type is DataType.AGG_TRADES:
            return "symbol = ?", [str(symbol).upper()]
        return "symbol = ? AND timeframe = ?", [str(symbol).upper(), timeframe or ""]

    def count_rows(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str] = None,
    ) -> int:
        where, params = self._where(symbol, data_type, timeframe)
        row = self._conn.execute(
            f"SELECT COUNT(*) FROM {_TABLES[data_type]} WHERE {where}", params
        ).fetchone()
        return int(row[0]) if row else 0

    def latest_timestamp(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str] = None,
    ) -> Optional[int]:
        where, params = self._where(symbol, data_type, timeframe)
        row = self._conn.execute(
            f"SELECT MAX(timestamp) FROM {_TABLES[data_type]} WHERE {where}", params
        ).fetchone()
        return int(row[0]) if row and row[0] is not None else None

    def get_records(
        self,
        symbol: str,
        data_type: DataType,
        timeframe: Optional[str] = None,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> pd.DataFrame:
        """Stored records in [start_ms, end_ms], ordered by time."""
        where, params = self._where(symbol, data_type, timeframe)
        if start_ms is not None:
            where += " AND timestamp >= ?"
            params.append(int(start_ms))
        if end_ms is not None:
            where += " AND timestamp <= ?"
            params.append(int(end_ms))
        columns = columns_for(data_type)
        order = "agg_id" if data_type is DataType.AGG_TRADES else "timestamp"
        df = pd.read_sql_query(
            f"SELECT {', '.join(columns)} FROM {_TABLES[data_type]} "
            f"WHERE {where} ORDER BY {order}",
            self._conn,
            params=params,
        )
        if df.empty:
            return empty_frame(data_type)
        if "is_buyer_maker" in df.columns:
            df["is_buyer_maker"] = df["is_buyer_maker"].astype(bool)
        return df

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> pd.DataFrame:
        return self.get_records(symbol, DataType.CANDLES, timeframe, start_ms, end_ms)

    def get_stats(self) -> Dict[str, int]:
        """Row counts per table."""
        conn = self._conn
        return {
            table: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
            for table in list(_TABLES.values()) + ["coverage"]
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        """Close this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        try:
            conn.close()
        except sqlite3.Error as exc:
            log.debug("Closing connection failed: %s", exc)
        with self._connections_lock:
            self._connections.discard(conn)
        self._local.conn = None

    def close_all(self):
        """Close all tracked connections (call on shutdown)."""
        with self._connections_lock:
            for conn in list(self._connections):
                try:
                    conn.close()
                except sqlite3.Error as exc:
                    log.debug("Closing connection failed: %s", exc)
            self._connections.clear()
        self._local.conn = None
