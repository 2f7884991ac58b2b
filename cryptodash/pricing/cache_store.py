from __future__ import annotations

import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

logger = logging.getLogger("price_cache")


class PriceCacheStore:
    """Last known live price per symbol, used when every feed is down."""

    def __init__(self, db_path: str = "data/cryptodash.db"):
        self._db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self._db_path, timeout=10)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
        return self._local.conn

    def _init_db(self):
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS price_cache (
                symbol      TEXT PRIMARY KEY,
                price_usd   REAL NOT NULL,
                source      TEXT DEFAULT '',
                updated_at  TEXT NOT NULL
            )
        """)
        conn.commit()

    def put(self, symbol: str, price_usd: float, source: str,
            at: Optional[datetime] = None) -> None:
        ts = (at or datetime.now(timezone.utc)).isoformat()
        conn = self._get_conn()
        conn.execute("""
            INSERT INTO price_cache (symbol, price_usd, source, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                price_usd = excluded.price_usd,
                source = excluded.source,
                updated_at = excluded.updated_at
        """, (symbol, price_usd, source, ts))
        conn.commit()

    def get(self, symbol: str, max_age_seconds: Optional[int] = None) -> Optional[Tuple[float, datetime]]:
        conn = self._get_conn()
        row = conn.execute("SELECT price_usd, updated_at FROM price_cache WHERE symbol = ?",
                           (symbol,)).fetchone()
        if not row:
            return None
        updated_at = datetime.fromisoformat(row["updated_at"])
        if max_age_seconds is not None:
            if datetime.now(timezone.utc) - updated_at > timedelta(seconds=max_age_seconds):
                logger.debug("Cached price for %s is stale (%s)", symbol, row["updated_at"])
                return None
        return float(row["price_usd"]), updated_at

    def close(self):
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
