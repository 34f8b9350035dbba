"""Apply one fetched transaction delta to the database.

Accounts, transactions, removals and the item cursor are written inside a
single database transaction. Every write is keyed by a Plaid identifier, so
replaying the same delta after a retry only repeats identical writes.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.models.account import ITEM_STATUS_GOOD, Account, Transaction
from app.services.items import require_item, update_item_transactions_cursor

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    added_count: int
    modified_count: int
    removed_count: int


def _to_decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _to_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _enum_str(value: Any) -> str | None:
    # Plaid model enums expose .value; plain dicts already carry strings
    if value is None:
        return None
    return getattr(value, "value", value)


# ─── Accounts ─────────────────────────────────────────────────────────────

def create_accounts(db: Session, plaid_item_id: str, accounts: list[dict]) -> int:
    """Upsert the full account snapshot of an item, keyed by plaid_account_id."""
    if not accounts:
        logger.debug("No accounts to upsert for item %s", plaid_item_id)
        return 0

    item = require_item(db, plaid_item_id)
    plaid_ids = [a["account_id"] for a in accounts]
    existing = {
        a.plaid_account_id: a
        for a in db.execute(
            select(Account).where(Account.plaid_account_id.in_(plaid_ids))
        ).scalars().all()
    }

    for pa in accounts:
        balances = pa.get("balances") or {}
        values = {
            "item_id": item.id,
            "name": pa.get("name"),
            "official_name": pa.get("official_name"),
            "mask": pa.get("mask"),
            "current_balance": _to_decimal(balances.get("current")),
            "available_balance": _to_decimal(balances.get("available")),
            "iso_currency_code": balances.get("iso_currency_code"),
            "unofficial_currency_code": balances.get("unofficial_currency_code"),
            "type": _enum_str(pa.get("type")),
            "subtype": _enum_str(pa.get("subtype")),
        }
        acct = existing.get(pa["account_id"])
        if acct is None:
            acct = Account(plaid_account_id=pa["account_id"], **values)
            db.add(acct)
            existing[pa["account_id"]] = acct
        else:
            # is_hidden is user-owned and never overwritten by a sync
            for key, value in values.items():
                setattr(acct, key, value)

    db.flush()
    logger.debug("Upserted %d accounts for item %s", len(accounts), plaid_item_id)
    return len(accounts)


# ─── Transactions ─────────────────────────────────────────────────────────

def _transaction_values(record: dict, account_id: int) -> dict:
    category = record.get("personal_finance_category") or {}
    return {
        "account_id": account_id,
        "amount": _to_decimal(record.get("amount")),
        "iso_currency_code": record.get("iso_currency_code"),
        "date": _to_date(record.get("date")),
        "authorized_date": _to_date(record.get("authorized_date")),
        "name": record.get("name"),
        "merchant_name": record.get("merchant_name"),
        "logo_url": record.get("logo_url"),
        "website": record.get("website"),
        "payment_channel": _enum_str(record.get("payment_channel")),
        "personal_finance_category": category.get("primary"),
        "personal_finance_subcategory": category.get("detailed"),
        "pending": bool(record.get("pending")),
        "pending_transaction_id": record.get("pending_transaction_id"),
    }


def create_or_update_transactions(db: Session, plaid_item_id: str, records: list[dict]) -> int:
    """Upsert transactions keyed by plaid transaction id. Returns rows written."""
    if not records:
        logger.debug("No transactions to upsert")
        return 0

    item = require_item(db, plaid_item_id)
    account_ids: dict[str, int] = {
        plaid_account_id: account_id
        for account_id, plaid_account_id in db.execute(
            select(Account.id, Account.plaid_account_id).where(Account.item_id == item.id)
        ).all()
    }

    # Last occurrence wins when a batch carries the same id twice
    by_id: dict[str, dict] = {}
    for record in records:
        by_id[record["transaction_id"]] = record

    existing = {
        t.plaid_transaction_id: t
        for t in db.execute(
            select(Transaction).where(Transaction.plaid_transaction_id.in_(list(by_id)))
        ).scalars().all()
    }

    written = 0
    for plaid_transaction_id, record in by_id.items():
        account_id = account_ids.get(record.get("account_id"))
        if account_id is None:
            logger.warning(
                "Skipping transaction %s: account %s not found",
                plaid_transaction_id, record.get("account_id"),
            )
            continue

        values = _transaction_values(record, account_id)
        txn = existing.get(plaid_transaction_id)
        if txn is None:
            db.add(Transaction(plaid_transaction_id=plaid_transaction_id, **values))
        else:
            for key, value in values.items():
                setattr(txn, key, value)
        written += 1

    db.flush()
    logger.debug("Upserted %d transactions (%d skipped)", written, len(by_id) - written)
    return written


def delete_transactions(db: Session, plaid_transaction_ids: list[str]) -> int:
    """Delete transactions by plaid transaction id. Unknown ids are ignored."""
    if not plaid_transaction_ids:
        return 0
    result = db.execute(
        delete(Transaction)
        .where(Transaction.plaid_transaction_id.in_(plaid_transaction_ids))
        .execution_options(synchronize_session="fetch")
    )
    logger.debug("Deleted %d of %d removed transactions", result.rowcount, len(plaid_transaction_ids))
    return result.rowcount


# ─── Unit of work ─────────────────────────────────────────────────────────

def apply_sync_delta(
    db: Session,
    plaid_item_id: str,
    *,
    added: list[dict],
    modified: list[dict],
    removed: list[str],
    cursor: str | None,
    accounts: list[dict],
) -> ReconcileResult:
    """Persist accounts, transactions, removals and the new cursor in one commit.

    If any step fails the whole unit is rolled back and the previous cursor
    stays in place, so the next pass refetches the same changes.
    """
    try:
        logger.info("Updating accounts data for item %s", plaid_item_id)
        create_accounts(db, plaid_item_id, accounts)

        logger.info("Updating transactions data for item %s", plaid_item_id)
        create_or_update_transactions(db, plaid_item_id, added + modified)

        logger.info("Deleting obsolete transactions for item %s", plaid_item_id)
        delete_transactions(db, removed)

        logger.info("Updating item transactions cursor for item %s", plaid_item_id)
        update_item_transactions_cursor(db, plaid_item_id, cursor)

        item = require_item(db, plaid_item_id)
        item.status = ITEM_STATUS_GOOD
        item.last_synced_at = datetime.now(timezone.utc)
        db.commit()
    except Exception:
        db.rollback()
        logger.error("Reconciliation failed for item %s, cursor not updated", plaid_item_id)
        raise

    return ReconcileResult(
        added_count=len(added),
        modified_count=len(modified),
        removed_count=len(removed),
    )
