"""
Exit Strategy Storage - SQLite
==============================

Tables:
  exit_strategies            - one scale-out policy per (account, coin); the
                               all-coins policy uses coin_symbol ''
  exit_strategy_executions   - append-only fills, one row per confirmed step
"""

from __future__ import annotations
import os
import sqlite3
import threading
import logging
from contextlib import contextmanager
from typing import Iterable, List, Optional

from cryptodash.exit_strategy.models import ExitStrategy, ExitStrategyExecution
from cryptodash.utils.exceptions import ConflictError, StoreError

logger = logging.getLogger("exit_strategy_store")

DUPLICATE_STRATEGY_MESSAGE = "An exit strategy already exists for one or more of the selected coins."


class ExitStrategyStore:
    def __init__(self, db_path: str = "data/cryptodash.db"):
        self._db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._local = threading.local()
        self._init_db()
        logger.info("ExitStrategyStore initialized: %s", db_path)

    def _get_conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self._db_path, timeout=10)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
        return self._local.conn

    @contextmanager
    def _transaction(self, conflict_message: Optional[str] = None):
        """Commit or roll back. Constraint violations become ConflictError only when a message is given."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if conflict_message is None:
                raise StoreError(f"Exit strategy write failed: {e}") from e
            raise ConflictError(conflict_message) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Exit strategy write failed: {e}") from e

    def _init_db(self):
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS exit_strategies (
                id              TEXT PRIMARY KEY,
                account_id      TEXT NOT NULL,
                coin_symbol     TEXT NOT NULL DEFAULT '',
                is_all_coins    INTEGER NOT NULL DEFAULT 0,
                strategy_type   TEXT NOT NULL DEFAULT 'percentage',
                sell_percent    REAL NOT NULL,
                gain_percent    REAL NOT NULL,
                is_active       INTEGER NOT NULL DEFAULT 1,
                created_at      TEXT NOT NULL,
                UNIQUE (account_id, coin_symbol)
            );

            CREATE TABLE IF NOT EXISTS exit_strategy_executions (
                id                  TEXT PRIMARY KEY,
                exit_strategy_id    TEXT NOT NULL,
                coin_symbol         TEXT NOT NULL DEFAULT '',
                step_gain_percent   REAL NOT NULL,
                target_price        REAL NOT NULL,
                executed_price      REAL NOT NULL,
                quantity_sold       REAL NOT NULL,
                proceeds            REAL NOT NULL,
                realized_profit     REAL NOT NULL,
                executed_at         TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_es_account ON exit_strategies(account_id);
            CREATE INDEX IF NOT EXISTS idx_ese_strategy ON exit_strategy_executions(exit_strategy_id);
        """)
        conn.commit()

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> ExitStrategyExecution:
        return ExitStrategyExecution(
            id=row["id"],
            exit_strategy_id=row["exit_strategy_id"],
            coin_symbol=row["coin_symbol"] or "",
            step_gain_percent=row["step_gain_percent"],
            target_price_usd=row["target_price"],
            executed_price_usd=row["executed_price"],
            quantity_sold=row["quantity_sold"],
            proceeds_usd=row["proceeds"],
            realized_profit_usd=row["realized_profit"],
            executed_at=row["executed_at"],
        )

    # ─── STRATEGIES ─────────────────────────────────────────────

    def get_strategy(self, strategy_id: str, account_id: str) -> Optional[ExitStrategy]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM exit_strategies WHERE id = ? AND account_id = ?",
            (strategy_id, account_id),
        ).fetchone()
        return ExitStrategy.from_dict(dict(row)) if row else None

    def list_strategies(self, account_id: str) -> List[ExitStrategy]:
        """Newest first."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT * FROM exit_strategies WHERE account_id = ?
            ORDER BY created_at DESC, rowid DESC
        """, (account_id,)).fetchall()
        return [ExitStrategy.from_dict(dict(r)) for r in rows]

    def create_strategies(self, strategies: Iterable[ExitStrategy]) -> List[str]:
        """Insert all strategies in one transaction; a duplicate coin rolls back every row."""
        strategies = list(strategies)
        with self._transaction(DUPLICATE_STRATEGY_MESSAGE) as conn:
            conn.executemany("""
                INSERT INTO exit_strategies
                (id, account_id, coin_symbol, is_all_coins, strategy_type,
                 sell_percent, gain_percent, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [(
                s.id, s.account_id, s.coin_symbol, 1 if s.is_all_coins else 0,
                s.strategy_type, s.sell_percent, s.gain_percent,
                1 if s.is_active else 0, s.created_at,
            ) for s in strategies])
        logger.info("Exit strategies created: %s", [s.id for s in strategies])
        return [s.id for s in strategies]

    def create_strategy(self, strategy: ExitStrategy) -> str:
        return self.create_strategies([strategy])[0]

    def delete_strategy(self, strategy_id: str, account_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM exit_strategies WHERE id = ? AND account_id = ?",
                (strategy_id, account_id),
            )
            deleted = cur.rowcount > 0
            if deleted:
                conn.execute("DELETE FROM exit_strategy_executions WHERE exit_strategy_id = ?",
                             (strategy_id,))
        if deleted:
            logger.info("Exit strategy deleted: %s", strategy_id)
        return deleted

    # ─── EXECUTIONS ─────────────────────────────────────────────

    def list_executions(self, strategy_id: str) -> List[ExitStrategyExecution]:
        """Ordered by step gain, then by when the fill was recorded."""
        conn = self._get_conn()
        rows = conn.execute("""
            SELECT * FROM exit_strategy_executions WHERE exit_strategy_id = ?
            ORDER BY step_gain_percent ASC, executed_at ASC, rowid ASC
        """, (strategy_id,)).fetchall()
        return [self._row_to_execution(r) for r in rows]

    def append_execution(self, execution: ExitStrategyExecution) -> str:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO exit_strategy_executions
                (id, exit_strategy_id, coin_symbol, step_gain_percent, target_price,
                 executed_price, quantity_sold, proceeds, realized_profit, executed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                execution.id, execution.exit_strategy_id, execution.coin_symbol,
                execution.step_gain_percent, execution.target_price_usd,
                execution.executed_price_usd, execution.quantity_sold,
                execution.proceeds_usd, execution.realized_profit_usd, execution.executed_at,
            ))
        logger.debug("Execution appended: %s step=%s", execution.exit_strategy_id,
                     execution.step_gain_percent)
        return execution.id

    def close(self):
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
