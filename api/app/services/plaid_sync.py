"""Cursor-based, incremental and idempotent Plaid transaction sync.

One sync pass for an item:
    1. Look up the item's access token and last cursor
    2. Page through /transactions/sync until has_more is false
    3. Pull the current account snapshot from /accounts/get
    4. Hand the delta to the reconciler, which advances the cursor
"""

import logging
from dataclasses import dataclass, field

from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.plaid import ITEM_LOGIN_REQUIRED, plaid_error_code
from app.models.account import ITEM_STATUS_BAD
from app.services.items import get_access_token, retrieve_item_by_plaid_item_id, update_item_status
from app.services.reconciler import ReconcileResult, apply_sync_delta

logger = logging.getLogger(__name__)


@dataclass
class SyncData:
    """Changes accumulated across all pages fetched in one pass.

    ``access_token`` is None when the item does not exist. ``complete`` is
    False when a page request failed; ``cursor`` is then the last cursor that
    was fully applied, not the one the failing page started from.
    """

    added: list[dict] = field(default_factory=list)
    modified: list[dict] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    cursor: str | None = None
    access_token: str | None = None
    complete: bool = True
    pages: int = 0


def _sync_request(access_token: str, cursor: str | None, count: int) -> TransactionsSyncRequest:
    options = TransactionsSyncRequestOptions(include_personal_finance_category=True)
    if cursor:
        return TransactionsSyncRequest(
            access_token=access_token, cursor=cursor, count=count, options=options
        )
    return TransactionsSyncRequest(access_token=access_token, count=count, options=options)


def fetch_new_sync_data(
    db: Session,
    client,
    plaid_item_id: str,
    *,
    page_size: int | None = None,
) -> SyncData:
    """Fetch every change since the item's stored cursor."""
    page_size = page_size or settings.plaid_sync_page_size

    logger.debug("Looking up item %s in db", plaid_item_id)
    item = retrieve_item_by_plaid_item_id(db, plaid_item_id)
    if item is None:
        logger.warning("Item %s not found in db. Aborting sync operation", plaid_item_id)
        return SyncData()

    access_token = get_access_token(item)
    last_cursor = item.transactions_cursor
    data = SyncData(cursor=last_cursor, access_token=access_token)

    has_more = True
    try:
        while has_more:
            logger.debug("Asking Plaid for new sync data (cursor: %s)", data.cursor or "initial")
            response = client.transactions_sync(
                _sync_request(access_token, data.cursor, page_size)
            ).to_dict()

            data.added.extend(response.get("added") or [])
            data.modified.extend(response.get("modified") or [])
            data.removed.extend(r["transaction_id"] for r in response.get("removed") or [])
            has_more = bool(response.get("has_more"))
            data.cursor = response.get("next_cursor")
            data.pages += 1
            logger.debug("Processed page %d. More data available?: %s", data.pages, has_more)
    except Exception as exc:
        logger.warning(
            "Error fetching transactions for item %s on page %d: %s",
            plaid_item_id, data.pages + 1, exc,
        )
        data.cursor = last_cursor
        data.complete = False
        if plaid_error_code(exc) == ITEM_LOGIN_REQUIRED:
            update_item_status(db, plaid_item_id, ITEM_STATUS_BAD)

    return data


def fetch_accounts(client, access_token: str) -> list[dict]:
    """Current account snapshot (full state, not a delta)."""
    response = client.accounts_get(AccountsGetRequest(access_token=access_token)).to_dict()
    return response.get("accounts") or []


def sync_transactions(db: Session, client, plaid_item_id: str) -> ReconcileResult:
    """Run one full sync pass for an item and return the applied counts.

    Page failures are absorbed by the fetch and leave the stored cursor
    untouched. Account-snapshot and database errors propagate.
    """
    logger.info("Starting transaction sync for plaid item %s", plaid_item_id)
    data = fetch_new_sync_data(db, client, plaid_item_id)

    if data.access_token is None:
        logger.info("Nothing to sync for item %s", plaid_item_id)
        return ReconcileResult(added_count=0, modified_count=0, removed_count=0)

    if not data.complete:
        logger.warning(
            "Incomplete fetch for item %s after %d pages; keeping cursor %s",
            plaid_item_id, data.pages, data.cursor or "initial",
        )
        return ReconcileResult(added_count=0, modified_count=0, removed_count=0)

    logger.debug("Got transactions data. Now refreshing accounts info from Plaid")
    accounts = fetch_accounts(client, data.access_token)

    logger.info(
        "Ready to update item %s: %d added, %d modified, %d removed",
        plaid_item_id, len(data.added), len(data.modified), len(data.removed),
    )
    result = apply_sync_delta(
        db,
        plaid_item_id,
        added=data.added,
        modified=data.modified,
        removed=data.removed,
        cursor=data.cursor,
        accounts=accounts,
    )
    logger.info("Transaction sync is complete for item %s", plaid_item_id)
    return result
