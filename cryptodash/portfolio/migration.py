"""
Legacy portfolio migration.

Copies old-format spot journal rows into the canonical portfolio_trades ledger.
Safe to call on every read: each migrated row carries a deterministic
"[MIGRATED_JE:<legacy id>]" marker, rows whose marker already exists are
skipped, and the ledger's unique marker index ignores any that slip through.
The in-process set of migrated accounts only saves the scan; a fresh process
simply re-scans and inserts nothing.

Legacy rows are never modified or deleted.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Set

from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.models import (
    LEGACY_PORTFOLIO_ADD,
    LegacyJournalRecord,
    TradeEvent,
    TradeKind,
    cash_delta_usd,
    migrated_note,
    normalize_symbol,
    normalize_timestamp,
)
from cryptodash.utils.logger import get_logger
from cryptodash.utils.numbers import to_float

logger = get_logger(__name__)


def legacy_record_to_event(record: LegacyJournalRecord) -> Optional[TradeEvent]:
    """Canonical form of a legacy row, or None when it cannot take part in a position."""
    qty = to_float(record.amount)
    price_usd = to_float(record.entry_price)
    if qty <= 0 or price_usd <= 0:
        return None

    try:
        executed_at = normalize_timestamp(record.trade_datetime)
    except (ValueError, AttributeError):
        logger.debug("legacy_row_skipped", legacy_id=record.id, trade_datetime=record.trade_datetime)
        return None

    side = (record.side or "").lower()
    fee_usd = to_float(record.buy_fee if side == "buy" else record.sell_fee)

    if record.notes_entry == LEGACY_PORTFOLIO_ADD:
        kind = TradeKind.INIT
    elif side == "sell":
        kind = TradeKind.SELL
    else:
        kind = TradeKind.BUY

    return TradeEvent(
        account_id=record.account_id,
        symbol=normalize_symbol(record.asset_name),
        kind=kind.value,
        quantity=qty,
        price_usd=price_usd,
        fee_usd=fee_usd,
        cash_delta_usd=cash_delta_usd(kind, qty, price_usd, fee_usd),
        executed_at=executed_at,
        note=migrated_note(record.id),
    )


class LegacyMigrator:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._migrated_accounts: Set[str] = set()

    def is_cached(self, account_id: str) -> bool:
        return account_id in self._migrated_accounts

    def forget(self, account_id: Optional[str] = None) -> None:
        """Drop the in-process marker so the next call re-scans."""
        if account_id is None:
            self._migrated_accounts.clear()
        else:
            self._migrated_accounts.discard(account_id)

    def migrate_sync(self, account_id: str) -> int:
        if not account_id or account_id in self._migrated_accounts:
            return 0

        legacy_rows = self._store.list_legacy_portfolio_records(account_id)
        if not legacy_rows:
            self._migrated_accounts.add(account_id)
            return 0

        notes = [migrated_note(r.id) for r in legacy_rows]
        already = self._store.existing_notes(account_id, notes)

        to_create: List[TradeEvent] = []
        for record in legacy_rows:
            if migrated_note(record.id) in already:
                continue
            event = legacy_record_to_event(record)
            if event is not None:
                to_create.append(event)

        inserted = self._store.append_trade_events(to_create) if to_create else 0
        self._migrated_accounts.add(account_id)

        if inserted:
            logger.info("legacy_migration_complete", account_id=account_id,
                        scanned=len(legacy_rows), inserted=inserted)
        return inserted

    async def migrate(self, account_id: str) -> int:
        """Backfill the canonical ledger for one account; returns rows inserted."""
        if not account_id or account_id in self._migrated_accounts:
            return 0
        return await asyncio.get_running_loop().run_in_executor(
            None, self.migrate_sync, account_id
        )
