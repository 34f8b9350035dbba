"""Celery wiring for transaction sync and data refresh jobs."""

import logging
import socket
from dataclasses import asdict

from celery.signals import task_failure, task_success, worker_ready

from app.core.config import settings
from app.core.database import get_session_factory
from app.core.plaid import build_plaid_client
from app.core.redis import claim_refresh_startup
from app.services.plaid_sync import sync_transactions
from app.services.refresh import RefreshQueue, RefreshService
from app.worker import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.services.sync.run_refresh_job",
    bind=True,
    autoretry_for=(Exception,),
    max_retries=settings.refresh_max_attempts - 1,
    retry_backoff=settings.refresh_backoff_seconds,
    retry_backoff_max=settings.refresh_backoff_seconds * 2 ** settings.refresh_max_attempts,
    retry_jitter=False,
)
def run_refresh_job(self, user_id: int, job_type: str, job_db_id: int | None = None) -> dict:
    """Refresh every active item of one user (manual or scheduled)."""
    return get_refresh_service().process_job(user_id, job_type, self.request.id, job_db_id)


@celery_app.task(
    name="app.services.sync.sync_item",
    autoretry_for=(Exception,),
    max_retries=settings.refresh_max_attempts - 1,
    retry_backoff=settings.refresh_backoff_seconds,
    retry_jitter=False,
)
def sync_item(plaid_item_id: str) -> dict:
    """Sync a single Plaid item after Plaid reports new data."""
    logger.info("Syncing PlaidItem %s", plaid_item_id)
    with get_session_factory()() as db:
        result = sync_transactions(db, build_plaid_client(), plaid_item_id)
    return asdict(result)


@celery_app.task(name="app.services.sync.sync_all_items")
def sync_all_items() -> int:
    """Queue a manual refresh for every user, in batches."""
    logger.info("Starting transaction refresh for all users")
    return get_refresh_service().refresh_all_users()


# ─── Queue ────────────────────────────────────────────────────────────────

class CeleryRefreshQueue(RefreshQueue):
    def add(self, data: dict, *, job_id: str, delay: float = 0) -> str:
        result = run_refresh_job.apply_async(
            kwargs=data,
            task_id=job_id,
            countdown=delay or None,
        )
        return result.id

    def obliterate(self) -> int:
        return celery_app.control.purge() or 0


# ─── Service handle ───────────────────────────────────────────────────────

_service: RefreshService | None = None


def init_refresh_service(service: RefreshService | None = None) -> RefreshService:
    global _service
    _service = service or RefreshService(CeleryRefreshQueue())
    return _service


def get_refresh_service() -> RefreshService:
    if _service is None:
        return init_refresh_service()
    return _service


def shutdown_refresh_service() -> None:
    global _service
    _service = None


# ─── Signals ──────────────────────────────────────────────────────────────

@task_success.connect(sender=run_refresh_job)
def _on_refresh_job_success(sender=None, result=None, **kwargs):
    get_refresh_service().on_completed(dict(sender.request.kwargs or {}), result)


@task_failure.connect(sender=run_refresh_job)
def _on_refresh_job_failure(sender=None, exception=None, kwargs=None, **extra):
    get_refresh_service().on_failed(dict(kwargs or {}), exception)


@worker_ready.connect
def _on_worker_ready(sender=None, **kwargs):
    owner = getattr(sender, "hostname", None) or socket.gethostname()
    if not claim_refresh_startup(owner, settings.refresh_startup_guard_seconds):
        logger.info("Refresh startup already handled by another worker, skipping on %s", owner)
        return

    service = get_refresh_service()
    service.startup()
    if settings.refresh_on_startup:
        try:
            service.initialize_scheduled_refreshes()
        except Exception as exc:
            logger.error("Failed to initialize scheduled refreshes: %s", exc)
