"""Shared fixtures: in-memory SQLite, a fake Plaid client and an in-memory job queue."""
import os

from cryptography.fernet import Fernet

# Settings are read at import time, so configure the environment first
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("REFRESH_ON_STARTUP", "false")
os.environ.setdefault("PLAID_CLIENT_ID", "test-client")
os.environ.setdefault("PLAID_SECRET", "test-secret")

from dataclasses import dataclass, field  # noqa: E402
from datetime import date  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.database import Base  # noqa: E402
from app.core.security import encrypt_value  # noqa: E402
from app.models.account import PlaidItem  # noqa: E402
from app.models.refresh_job import RefreshJob  # noqa: F401,E402
from app.models.user import User  # noqa: E402
from app.services.refresh import RefreshQueue, RefreshService  # noqa: E402


# ── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture(name="session_factory")
def session_factory_fixture():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(name="db")
def db_fixture(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_user(db, user_id: int, *, is_active: bool = True) -> User:
    user = User(id=user_id, email=f"user{user_id}@example.com", is_active=is_active)
    db.add(user)
    db.commit()
    return user


def make_item(
    db,
    user_id: int,
    plaid_item_id: str = "item-1",
    *,
    cursor: str | None = None,
    is_active: bool = True,
) -> PlaidItem:
    item = PlaidItem(
        user_id=user_id,
        plaid_item_id=plaid_item_id,
        encrypted_access_token=encrypt_value(f"access-sandbox-{plaid_item_id}"),
        transactions_cursor=cursor,
        is_active=is_active,
    )
    db.add(item)
    db.commit()
    return item


# ── Plaid payloads ───────────────────────────────────────────────────────────

def plaid_account(account_id: str = "acc-1", *, current: float = 100.0, available: float | None = 90.0) -> dict:
    return {
        "account_id": account_id,
        "name": f"Checking {account_id}",
        "official_name": None,
        "mask": "0000",
        "balances": {
            "current": current,
            "available": available,
            "iso_currency_code": "USD",
            "unofficial_currency_code": None,
        },
        "type": "depository",
        "subtype": "checking",
    }


def plaid_txn(
    transaction_id: str,
    *,
    account_id: str = "acc-1",
    amount: float = 12.5,
    name: str = "Coffee Shop",
    pending: bool = False,
    pending_transaction_id: str | None = None,
    txn_date: date = date(2026, 10, 1),
) -> dict:
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "iso_currency_code": "USD",
        "date": txn_date,
        "authorized_date": None,
        "name": name,
        "merchant_name": name,
        "logo_url": None,
        "website": None,
        "payment_channel": "in store",
        "personal_finance_category": {"primary": "FOOD_AND_DRINK", "detailed": "FOOD_AND_DRINK_COFFEE"},
        "pending": pending,
        "pending_transaction_id": pending_transaction_id,
    }


def sync_page(
    *,
    added=(),
    modified=(),
    removed=(),
    has_more: bool = False,
    next_cursor: str = "c1",
) -> dict:
    return {
        "added": list(added),
        "modified": list(modified),
        "removed": [{"transaction_id": tid} for tid in removed],
        "has_more": has_more,
        "next_cursor": next_cursor,
    }


class FakeResponse:
    def __init__(self, payload: dict):
        self._payload = payload

    def to_dict(self) -> dict:
        return self._payload


class FakePlaidClient:
    """Serves queued /transactions/sync pages; an Exception in the queue is raised."""

    def __init__(self, pages=(), accounts=None):
        self.pages = list(pages)
        self.accounts = [plaid_account()] if accounts is None else accounts
        self.sync_requests: list[dict] = []
        self.accounts_calls = 0

    def transactions_sync(self, request):
        self.sync_requests.append(request.to_dict())
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return FakeResponse(page)

    def accounts_get(self, request):
        self.accounts_calls += 1
        if isinstance(self.accounts, Exception):
            raise self.accounts
        return FakeResponse({"accounts": self.accounts})


# ── Job queue ────────────────────────────────────────────────────────────────

@dataclass
class QueuedJob:
    data: dict
    job_id: str
    delay: float
    attempts: int = 0
    errors: list = field(default_factory=list)


class InMemoryRefreshQueue(RefreshQueue):
    """Queue double with the same retry contract as the Celery task."""

    def __init__(self, max_attempts: int = 3):
        self.jobs: list[QueuedJob] = []
        self.max_attempts = max_attempts

    def add(self, data: dict, *, job_id: str, delay: float = 0) -> str:
        self.jobs.append(QueuedJob(data=dict(data), job_id=job_id, delay=delay))
        return job_id

    def obliterate(self) -> int:
        removed = len(self.jobs)
        self.jobs.clear()
        return removed

    def run_next(self, service: RefreshService):
        """Run the oldest job to completion or final failure, firing the service events."""
        job = self.jobs.pop(0)
        while True:
            job.attempts += 1
            try:
                result = service.process_job(
                    job.data["user_id"], job.data["job_type"], job.job_id, job.data.get("job_db_id")
                )
            except Exception as exc:
                job.errors.append(exc)
                if job.attempts >= self.max_attempts:
                    service.on_failed(job.data, exc)
                    return job
                continue
            service.on_completed(job.data, result)
            return result


@pytest.fixture(name="queue")
def queue_fixture():
    return InMemoryRefreshQueue()


@pytest.fixture(name="plaid_client")
def plaid_client_fixture():
    return FakePlaidClient()


@pytest.fixture(name="service")
def service_fixture(queue, session_factory, plaid_client):
    return RefreshService(
        queue,
        session_factory,
        client_factory=lambda: plaid_client,
        interval_hours=12,
        jitter_minutes=60,
        settle_seconds=0,
        sleep=lambda seconds: None,
    )
