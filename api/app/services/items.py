"""Per-item synchronization state: access credentials, cursor and status."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import decrypt_value
from app.models.account import PlaidItem

logger = logging.getLogger(__name__)


class PlaidSyncError(Exception):
    """Base class for sync failures raised by this package."""


class ItemNotFoundError(PlaidSyncError, LookupError):
    def __init__(self, plaid_item_id: str):
        super().__init__(f"Item not found: {plaid_item_id}")
        self.plaid_item_id = plaid_item_id


def retrieve_item_by_plaid_item_id(db: Session, plaid_item_id: str) -> PlaidItem | None:
    return db.execute(
        select(PlaidItem).where(PlaidItem.plaid_item_id == plaid_item_id)
    ).scalar_one_or_none()


def require_item(db: Session, plaid_item_id: str) -> PlaidItem:
    item = retrieve_item_by_plaid_item_id(db, plaid_item_id)
    if item is None:
        raise ItemNotFoundError(plaid_item_id)
    return item


def retrieve_items_by_user(db: Session, user_id: int) -> list[PlaidItem]:
    """Active items for a user, oldest first."""
    result = db.execute(
        select(PlaidItem)
        .where(
            PlaidItem.user_id == user_id,
            PlaidItem.is_active == True,  # noqa: E712
        )
        .order_by(PlaidItem.id)
    )
    return list(result.scalars().all())


def get_access_token(item: PlaidItem) -> str:
    return decrypt_value(item.encrypted_access_token)


def update_item_transactions_cursor(db: Session, plaid_item_id: str, cursor: str | None) -> None:
    """Stage the new cursor. The caller owns the commit so the cursor lands with its delta."""
    item = require_item(db, plaid_item_id)
    item.transactions_cursor = cursor
    db.flush()


def update_item_status(db: Session, plaid_item_id: str, status: str) -> bool:
    """Set the item status and commit. Returns False when the item is unknown."""
    item = retrieve_item_by_plaid_item_id(db, plaid_item_id)
    if item is None:
        return False
    if item.status != status:
        logger.info("Item %s status %s -> %s", plaid_item_id, item.status, status)
        item.status = status
    db.commit()
    return True


def deactivate_item(db: Session, plaid_item_id: str) -> bool:
    """Soft-deactivate an item whose access was revoked upstream."""
    item = retrieve_item_by_plaid_item_id(db, plaid_item_id)
    if item is None:
        return False
    item.is_active = False
    db.commit()
    logger.info("Deactivated item %s", plaid_item_id)
    return True
