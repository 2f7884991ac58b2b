"""
Ledger Storage - SQLite-backed trade event log
==============================================

Tables:
  portfolio_trades  - canonical buy / sell / init events (one row per fill)
  journal_entries   - legacy-format spot journal rows, read by the migration adapter

Positions are never stored; they are derived by replaying portfolio_trades.
Migrated rows carry a deterministic "[MIGRATED_JE:<id>]" note which is unique
per account, so re-running a migration can never double-insert.
"""

from __future__ import annotations
import os
import sqlite3
import threading
import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Iterable, Set

from cryptodash.portfolio.models import (
    CASH_SYMBOL, LEGACY_JE_PORTFOLIO, LEGACY_PORTFOLIO_ADD, LEGACY_SPOT_TX_PREFIX,
    LegacyJournalRecord, TradeEvent, TradeKind, normalize_symbol, utc_now_iso,
)
from cryptodash.utils.exceptions import StoreError

logger = logging.getLogger("ledger_store")

_TRADE_KINDS = tuple(k.value for k in TradeKind)
_UPDATABLE_FIELDS = {"kind", "quantity", "price_usd", "fee_usd", "cash_delta_usd", "executed_at", "note"}
_COLUMN_FOR_FIELD = {
    "kind": "kind",
    "quantity": "qty",
    "price_usd": "price_usd",
    "fee_usd": "fee_usd",
    "cash_delta_usd": "cash_delta_usd",
    "executed_at": "trade_datetime",
    "note": "note",
}


class LedgerStore:
    """
    SQLite trade ledger.
    Thread-safe through per-thread connections; callers on the event loop go
    through run_in_executor.
    """

    def __init__(self, db_path: str = "data/cryptodash.db"):
        self._db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._local = threading.local()
        self._init_db()
        logger.info("LedgerStore initialized: %s", db_path)

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self._db_path, timeout=10)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
        return self._local.conn

    @contextmanager
    def _transaction(self):
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Ledger write failed: {e}") from e

    def _init_db(self):
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS portfolio_trades (
                id              TEXT PRIMARY KEY,
                account_id      TEXT NOT NULL,
                asset_name      TEXT NOT NULL,
                kind            TEXT NOT NULL,
                qty             REAL DEFAULT 0,
                price_usd       REAL DEFAULT 0,
                fee_usd         REAL DEFAULT 0,
                cash_delta_usd  REAL DEFAULT 0,
                trade_datetime  TEXT NOT NULL,
                note            TEXT,
                created_at      TEXT DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS journal_entries (
                id              TEXT PRIMARY KEY,
                account_id      TEXT NOT NULL,
                asset_name      TEXT NOT NULL,
                side            TEXT NOT NULL,
                amount          REAL,
                entry_price     REAL,
                trade_datetime  TEXT NOT NULL,
                buy_fee         REAL DEFAULT 0,
                sell_fee        REAL DEFAULT 0,
                notes_entry     TEXT DEFAULT '',
                is_spot         INTEGER DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_pt_account_asset ON portfolio_trades(account_id, asset_name);
            CREATE INDEX IF NOT EXISTS idx_pt_trade_datetime ON portfolio_trades(trade_datetime);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_pt_migrated_note
                ON portfolio_trades(account_id, note) WHERE substr(note, 1, 13) = '[MIGRATED_JE:';
            CREATE INDEX IF NOT EXISTS idx_je_account ON journal_entries(account_id);
        """)
        conn.commit()

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> TradeEvent:
        return TradeEvent(
            id=row["id"],
            account_id=row["account_id"],
            symbol=row["asset_name"],
            kind=str(row["kind"]).lower(),
            quantity=row["qty"],
            price_usd=row["price_usd"],
            fee_usd=row["fee_usd"],
            cash_delta_usd=row["cash_delta_usd"],
            executed_at=row["trade_datetime"],
            note=row["note"],
        )

    @staticmethod
    def _event_params(event: TradeEvent) -> tuple:
        return (
            event.id, event.account_id, normalize_symbol(event.symbol), TradeKind(event.kind).value,
            event.quantity, event.price_usd, event.fee_usd, event.cash_delta_usd,
            event.executed_at, event.note, utc_now_iso(),
        )

    # ─── TRADE EVENTS ───────────────────────────────────────────

    def list_trade_events(self, account_id: str, symbol: Optional[str] = None) -> List[TradeEvent]:
        """All non-CASH trade events of an account in ascending time order."""
        conn = self._get_conn()
        conditions = ["account_id = ?", "asset_name != ?",
                      f"kind IN ({', '.join('?' for _ in _TRADE_KINDS)})"]
        params: List[Any] = [account_id, CASH_SYMBOL, *_TRADE_KINDS]
        if symbol:
            conditions.append("asset_name = ?")
            params.append(normalize_symbol(symbol))
        rows = conn.execute(f"""
            SELECT * FROM portfolio_trades
            WHERE {" AND ".join(conditions)}
            ORDER BY trade_datetime ASC, rowid ASC
        """, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_recent_events(self, account_id: str, limit: int = 250) -> List[TradeEvent]:
        conn = self._get_conn()
        rows = conn.execute(f"""
            SELECT * FROM portfolio_trades
            WHERE account_id = ? AND asset_name != ?
              AND kind IN ({', '.join('?' for _ in _TRADE_KINDS)})
            ORDER BY trade_datetime DESC, rowid DESC
            LIMIT ?
        """, (account_id, CASH_SYMBOL, *_TRADE_KINDS, limit)).fetchall()
        return [self._row_to_event(r) for r in rows]

    def get_trade_event(self, account_id: str, trade_id: str) -> Optional[TradeEvent]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM portfolio_trades WHERE id = ? AND account_id = ?",
            (trade_id, account_id),
        ).fetchone()
        return self._row_to_event(row) if row else None

    def append_trade_event(self, event: TradeEvent) -> str:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO portfolio_trades
                (id, account_id, asset_name, kind, qty, price_usd, fee_usd,
                 cash_delta_usd, trade_datetime, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._event_params(event))
        logger.debug("Trade event appended: %s %s %s", event.id, event.kind, event.symbol)
        return event.id

    def append_trade_events(self, events: Iterable[TradeEvent]) -> int:
        """Bulk insert; rows colliding with an existing migration marker are ignored.

        Returns the number of rows actually written.
        """
        params = [self._event_params(e) for e in events]
        if not params:
            return 0
        with self._transaction() as conn:
            before = conn.total_changes
            conn.executemany("""
                INSERT OR IGNORE INTO portfolio_trades
                (id, account_id, asset_name, kind, qty, price_usd, fee_usd,
                 cash_delta_usd, trade_datetime, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, params)
            inserted = conn.total_changes - before
        return inserted

    def existing_notes(self, account_id: str, notes: List[str]) -> Set[str]:
        if not notes:
            return set()
        conn = self._get_conn()
        found: Set[str] = set()
        # SQLite caps bound parameters, so look the notes up in chunks
        for start in range(0, len(notes), 500):
            chunk = notes[start:start + 500]
            rows = conn.execute(f"""
                SELECT note FROM portfolio_trades
                WHERE account_id = ? AND note IN ({', '.join('?' for _ in chunk)})
            """, (account_id, *chunk)).fetchall()
            found.update(r["note"] for r in rows)
        return found

    def update_trade_event(self, account_id: str, trade_id: str, fields: Dict[str, Any]) -> bool:
        """Update a non-CASH trade row. Returns False when nothing matched."""
        updates = {k: v for k, v in fields.items() if k in _UPDATABLE_FIELDS}
        if not updates:
            return False
        set_clause = ", ".join(f"{_COLUMN_FOR_FIELD[k]} = ?" for k in updates)
        with self._transaction() as conn:
            cur = conn.execute(f"""
                UPDATE portfolio_trades SET {set_clause}
                WHERE id = ? AND account_id = ? AND asset_name != ?
                  AND kind IN ({', '.join('?' for _ in _TRADE_KINDS)})
            """, (*updates.values(), trade_id, account_id, CASH_SYMBOL, *_TRADE_KINDS))
            updated = cur.rowcount > 0
        if updated:
            logger.debug("Trade event updated: %s", trade_id)
        return updated

    def delete_trade_event(self, account_id: str, trade_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(f"""
                DELETE FROM portfolio_trades
                WHERE id = ? AND account_id = ? AND asset_name != ?
                  AND kind IN ({', '.join('?' for _ in _TRADE_KINDS)})
            """, (trade_id, account_id, CASH_SYMBOL, *_TRADE_KINDS))
            deleted = cur.rowcount > 0
        if deleted:
            logger.debug("Trade event deleted: %s", trade_id)
        return deleted

    def count_trade_events(self, account_id: str) -> int:
        conn = self._get_conn()
        row = conn.execute("SELECT COUNT(*) AS n FROM portfolio_trades WHERE account_id = ?",
                           (account_id,)).fetchone()
        return int(row["n"])

    # ─── LEGACY JOURNAL ─────────────────────────────────────────

    def add_legacy_record(self, record: LegacyJournalRecord) -> str:
        d = record.to_dict()
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO journal_entries
                (id, account_id, asset_name, side, amount, entry_price, trade_datetime,
                 buy_fee, sell_fee, notes_entry, is_spot)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                d["id"], d["account_id"], d["asset_name"], d["side"], d["amount"],
                d["entry_price"], d["trade_datetime"], d["buy_fee"], d["sell_fee"],
                d["notes_entry"], 1 if d["is_spot"] else 0,
            ))
        return record.id

    def list_legacy_portfolio_records(self, account_id: str) -> List[LegacyJournalRecord]:
        """Legacy spot rows written by the old portfolio screens."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT * FROM journal_entries
            WHERE account_id = ?
              AND UPPER(asset_name) != ?
              AND side IN ('buy', 'sell')
              AND is_spot = 1
              AND (substr(notes_entry, 1, ?) = ? OR notes_entry = ? OR notes_entry = ?)
            ORDER BY trade_datetime ASC, rowid ASC
        """, (
            account_id, CASH_SYMBOL,
            len(LEGACY_SPOT_TX_PREFIX), LEGACY_SPOT_TX_PREFIX,
            LEGACY_PORTFOLIO_ADD, LEGACY_JE_PORTFOLIO,
        )).fetchall()
        return [LegacyJournalRecord.from_dict(dict(r)) for r in rows]

    def close(self):
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
