"""Plaid webhook receiver and per-item sync trigger. Signature verification is handled upstream."""

import logging
from collections.abc import Callable

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.plaid import ITEM_LOGIN_REQUIRED
from app.models.account import ITEM_STATUS_BAD, ITEM_STATUS_GOOD
from app.services.items import ItemNotFoundError, deactivate_item, require_item, update_item_status
from app.services.sync import sync_item

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plaid", tags=["plaid"])

# Historical webhooks are superseded by SYNC_UPDATES_AVAILABLE
_IGNORED_TRANSACTION_CODES = {"DEFAULT_UPDATE", "INITIAL_UPDATE", "HISTORICAL_UPDATE"}


def get_sync_dispatcher() -> Callable[[str], object]:
    return sync_item.delay


def handle_transactions_webhook(code: str, body: dict, dispatch_sync: Callable[[str], object]) -> None:
    if code == "SYNC_UPDATES_AVAILABLE":
        item_id = body.get("item_id")
        if not item_id:
            logger.error("SYNC_UPDATES_AVAILABLE webhook without item_id")
            return
        logger.info("Transactions sync updates available for item %s. Starting the sync", item_id)
        dispatch_sync(item_id)
    elif code in _IGNORED_TRANSACTION_CODES:
        logger.info("Ignoring transactions webhook %s", code)
    else:
        logger.error("Can't handle transactions webhook code %s", code)


def handle_item_webhook(db: Session, code: str, body: dict) -> None:
    item_id = body.get("item_id")
    if code == "ERROR":
        error = body.get("error") or {}
        logger.error("Got item error for %s: %s", item_id, error.get("error_message"))
        if error.get("error_code") == ITEM_LOGIN_REQUIRED:
            update_item_status(db, item_id, ITEM_STATUS_BAD)
    elif code == "LOGIN_REPAIRED":
        logger.info("Login to item %s is repaired", item_id)
        update_item_status(db, item_id, ITEM_STATUS_GOOD)
    elif code in ("USER_PERMISSION_REVOKED", "USER_ACCOUNT_REVOKED"):
        logger.info("User revoked access to item %s", item_id)
        deactivate_item(db, item_id)
    elif code in ("PENDING_EXPIRATION", "PENDING_DISCONNECT"):
        logger.info("Item %s needs to be reconnected soon", item_id)
    elif code == "NEW_ACCOUNTS_AVAILABLE":
        logger.info("New accounts available for item %s", item_id)
    else:
        logger.debug("Unhandled item webhook code %s", code)


@router.post("/webhook")
def receive_webhook(
    body: dict = Body(...),
    db: Session = Depends(get_db),
    dispatch_sync: Callable[[str], object] = Depends(get_sync_dispatcher),
):
    product = body.get("webhook_type")
    code = body.get("webhook_code")
    logger.info("Incoming webhook %s/%s", product, code)

    if product == "TRANSACTIONS":
        handle_transactions_webhook(code, body, dispatch_sync)
    elif product == "ITEM":
        handle_item_webhook(db, code, body)
    else:
        logger.error("Can't handle webhook product %s", product)

    return {"status": "received"}


@router.post("/items/{plaid_item_id}/sync", status_code=status.HTTP_202_ACCEPTED)
def request_item_sync(
    plaid_item_id: str,
    db: Session = Depends(get_db),
    dispatch_sync: Callable[[str], object] = Depends(get_sync_dispatcher),
):
    try:
        item = require_item(db, plaid_item_id)
    except ItemNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if not item.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Item is not active")

    logger.info("Sync requested for item %s", plaid_item_id)
    dispatch_sync(plaid_item_id)
    return {"status": "queued", "item_id": plaid_item_id}
