"""
SQLite Storage Layer.
One kline table per asset. Prices stored as TEXT to preserve Decimal precision,
timestamps as fixed-width ISO-8601 UTC so they sort and compare as text.
"""

from __future__ import annotations
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Set
from exchange.errors import StorageError
from exchange.models import Kline
import logging

logger = logging.getLogger(__name__)

_COLUMNS = "timestamp, open, high, low, close, volume, pair"


def ts_key(ts: datetime) -> str:
    """Canonical stored form of a timestamp. Naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class KlineStore:
    """SQLite kline store with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._tables: Set[str] = set()

    def connect(self, tables: Iterable[str] = ()):
        """Open the connection and create per-asset tables."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        for table in tables:
            self.create_table(table)
        logger.info(f"[DB] Connected to {self.db_path} ({len(self._tables)} tables)")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Database not connected")
        return self._conn

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"[DB] {op} failed: {e}")
            raise StorageError(f"{op} failed: {e}") from e

    def _table(self, table: str) -> str:
        # Table names are interpolated into SQL, so only registered ones pass
        if table not in self._tables:
            raise StorageError(f"Unknown table: {table}")
        return table

    def create_table(self, table: str):
        with self._guard(f"create {table}"):
            self.conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    timestamp TEXT NOT NULL,
                    open TEXT NOT NULL,
                    high TEXT NOT NULL,
                    low TEXT NOT NULL,
                    close TEXT NOT NULL,
                    volume TEXT NOT NULL DEFAULT '0',
                    pair TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_{table}_pair_ts ON {table}(pair, timestamp);
                CREATE INDEX IF NOT EXISTS idx_{table}_ts ON {table}(timestamp);
            """)
            self.conn.commit()
        self._tables.add(table)

    # ==================== Ingestion ====================

    def exists(self, table: str, pair: str, ts: datetime) -> bool:
        with self._guard(f"exists {table}"):
            row = self.conn.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE pair = ? AND timestamp = ? LIMIT 1",
                (pair, ts_key(ts)),
            ).fetchone()
        return row is not None

    def insert(self, table: str, kline: Kline):
        with self._guard(f"insert {table}"):
            self.conn.execute(
                f"INSERT INTO {self._table(table)} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    ts_key(kline.timestamp),
                    str(kline.open), str(kline.high), str(kline.low), str(kline.close),
                    str(kline.volume), kline.pair,
                ),
            )
            self.conn.commit()

    # ==================== Queries ====================

    def latest(self, table: str, limit: int) -> List[Kline]:
        """Most recent rows across all pairs, newest first."""
        with self._guard(f"latest {table}"):
            rows = self.conn.execute(
                f"SELECT {_COLUMNS} FROM {self._table(table)} ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_kline(r) for r in rows]

    def recent(self, table: str, pair: str, limit: int) -> List[Kline]:
        """Most recent rows for one pair, newest first."""
        with self._guard(f"recent {table}"):
            rows = self.conn.execute(
                f"SELECT {_COLUMNS} FROM {self._table(table)} WHERE pair = ? "
                f"ORDER BY timestamp DESC LIMIT ?",
                (pair, limit),
            ).fetchall()
        return [self._row_to_kline(r) for r in rows]

    def range(self, table: str, pair: str, start: datetime, end: datetime) -> List[Kline]:
        """Rows with start <= timestamp <= end for one pair, oldest first."""
        # Stored keys are millisecond precision, so round a finer start up
        spill = start.microsecond % 1000
        if spill:
            start += timedelta(microseconds=1000 - spill)
        with self._guard(f"range {table}"):
            rows = self.conn.execute(
                f"SELECT {_COLUMNS} FROM {self._table(table)} "
                f"WHERE pair = ? AND timestamp >= ? AND timestamp <= ? ORDER BY timestamp ASC",
                (pair, ts_key(start), ts_key(end)),
            ).fetchall()
        return [self._row_to_kline(r) for r in rows]

    def count(self, table: str) -> int:
        with self._guard(f"count {table}"):
            row = self.conn.execute(f"SELECT COUNT(*) AS n FROM {self._table(table)}").fetchone()
        return row["n"]

    # ==================== Row Converters ====================

    def _row_to_kline(self, row) -> Kline:
        return Kline(
            timestamp=datetime.fromisoformat(row["timestamp"]),
            open=Decimal(row["open"]),
            high=Decimal(row["high"]),
            low=Decimal(row["low"]),
            close=Decimal(row["close"]),
            volume=Decimal(row["volume"]),
            pair=row["pair"],
        )
