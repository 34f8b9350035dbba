"""Plaid API client construction and error helpers."""

import json
import logging

import plaid
from plaid.api import plaid_api

from app.core.config import settings

logger = logging.getLogger(__name__)

ITEM_LOGIN_REQUIRED = "ITEM_LOGIN_REQUIRED"


class PlaidNotConfiguredError(RuntimeError):
    pass


def build_plaid_client() -> plaid_api.PlaidApi:
    if not settings.plaid_client_id or not settings.plaid_secret:
        raise PlaidNotConfiguredError("Plaid not configured")

    configuration = plaid.Configuration(
        host=getattr(plaid.Environment, settings.plaid_env.capitalize()),
        api_key={
            "clientId": settings.plaid_client_id,
            "secret": settings.plaid_secret,
        },
    )
    return plaid_api.PlaidApi(plaid.ApiClient(configuration))


def plaid_error_code(exc: Exception) -> str | None:
    """Return the Plaid ``error_code`` carried by an API exception, if any."""
    body = getattr(exc, "body", None)
    if not body:
        return None
    try:
        return json.loads(body).get("error_code")
    except (TypeError, ValueError, AttributeError):
        logger.debug("Unparseable Plaid error body: %r", body)
        return None
