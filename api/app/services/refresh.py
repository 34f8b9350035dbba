"""Background data refresh: manual, scheduled and bulk refreshes per user.

The service owns the RefreshJob lifecycle (pending → processing →
completed | failed) and drives one sync pass per active Plaid item of the
job's user. The job queue itself is injected so the worker can run on
Celery while tests use an in-memory queue.
"""

import logging
import random
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.database import get_session_factory
from app.core.plaid import build_plaid_client
from app.models.refresh_job import (
    JOB_TYPE_MANUAL,
    JOB_TYPE_SCHEDULED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    RefreshJob,
)
from app.services import refresh_jobs
from app.services.items import retrieve_items_by_user
from app.services.plaid_sync import sync_transactions
from app.services.refresh_jobs import RefreshInProgressError

logger = logging.getLogger(__name__)

IN_PROGRESS_MESSAGE = "A data refresh is already in progress"


class RefreshQueue:
    """The queue operations the refresh service relies on."""

    def add(self, data: dict, *, job_id: str, delay: float = 0) -> str:
        """Enqueue ``data`` under ``job_id`` to run after ``delay`` seconds."""
        raise NotImplementedError

    def obliterate(self) -> int:
        """Drop every queued entry. Returns the number removed."""
        raise NotImplementedError


def _job_key(job_type: str, user_id: int) -> str:
    return f"{job_type}-{user_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _skipped(user_id: int, job_type: str, *, rechain: bool = True) -> dict:
    return {"success": False, "skipped": True, "userId": user_id, "jobType": job_type, "rechain": rechain}


def _age(moment: datetime) -> timedelta:
    # SQLite hands back naive datetimes; they are stored as UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - moment


class RefreshService:
    def __init__(
        self,
        queue: RefreshQueue,
        session_factory: sessionmaker[Session] | None = None,
        client_factory: Callable = build_plaid_client,
        *,
        interval_hours: float | None = None,
        jitter_minutes: int | None = None,
        settle_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self.queue = queue
        self._session_factory = session_factory
        self._client_factory = client_factory
        self.interval_hours = interval_hours if interval_hours is not None else settings.refresh_interval_hours
        self.jitter_minutes = jitter_minutes if jitter_minutes is not None else settings.refresh_jitter_minutes
        self.settle_seconds = settle_seconds if settle_seconds is not None else settings.refresh_settle_seconds
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _session(self) -> Session:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory()

    # ─── Startup ──────────────────────────────────────────────────────────

    def startup(self) -> int:
        """Drop queue entries left by a previous process; fail their unfinished rows."""
        removed = self.queue.obliterate()
        with self._session() as db:
            failed = refresh_jobs.fail_unfinished_jobs(db, "Interrupted by worker restart")
        logger.info(
            "Refresh queue reset: %d queued entries dropped, %d unfinished jobs marked failed",
            removed, failed,
        )
        return removed

    def initialize_scheduled_refreshes(self, interval_hours: float | None = None) -> int:
        """Schedule a first refresh for every user, spread out by a random offset."""
        interval_hours = interval_hours if interval_hours is not None else self.interval_hours
        logger.info("Initializing scheduled refreshes with interval of %s hours", interval_hours)

        with self._session() as db:
            user_ids = refresh_jobs.get_all_user_ids(db)

        for user_id in user_ids:
            # Random offset so all users don't hit Plaid at the same time
            offset_minutes = self._rng.randrange(self.jitter_minutes) if self.jitter_minutes else 0
            adjusted = interval_hours + offset_minutes / 60
            self.schedule_next_refresh(user_id, adjusted)
            logger.debug("Initialized scheduled refresh for user %s at +%.2fh", user_id, adjusted)

        logger.info("Scheduled refreshes initialized for %d users", len(user_ids))
        return len(user_ids)

    # ─── Job execution ────────────────────────────────────────────────────

    def process_job(self, user_id: int, job_type: str, job_id: str, job_db_id: int | None = None) -> dict:
        """Worker body for one queue job. Errors are recorded, then re-raised for retry.

        Manual jobs carry the id of the row created when they were requested.
        Scheduled ticks get their row when they fire, unless they turn out to
        be redundant (see ``_redundant_tick``).
        """
        logger.info("Processing %s data refresh job %s for user %s", job_type, job_id, user_id)

        with self._session() as db:
            job = self._find_job(db, job_id, job_db_id)
            if job is None:
                if job_type == JOB_TYPE_SCHEDULED:
                    skipped = self._redundant_tick(db, user_id)
                    if skipped is not None:
                        return skipped
                else:
                    logger.warning("No refresh job row for %s job %s, creating one", job_type, job_id)
                job = refresh_jobs.create_refresh_job(db, user_id, job_type)
                refresh_jobs.update_job_id(db, job.id, job_id)

            try:
                refresh_jobs.update_job_status(db, user_id, job_id, STATUS_PROCESSING)
            except RefreshInProgressError:
                logger.info("Skipping %s refresh job %s for user %s: lost the lease", job_type, job_id, user_id)
                refresh_jobs.update_job_status(db, user_id, job_id, STATUS_FAILED, IN_PROGRESS_MESSAGE)
                return _skipped(user_id, job_type)

            try:
                counts = self.perform_data_refresh(db, user_id)
            except Exception as exc:
                logger.error("Refresh failed for user %s: %s", user_id, exc)
                db.rollback()
                refresh_jobs.update_job_status(db, user_id, job_id, STATUS_FAILED, str(exc))
                raise

            refresh_jobs.update_job_status(db, user_id, job_id, STATUS_COMPLETED)

        logger.info("Completed %s refresh for user %s", job_type, user_id)
        return {
            "success": True,
            "userId": user_id,
            "jobType": job_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **counts,
        }

    def _find_job(self, db: Session, job_id: str, job_db_id: int | None) -> RefreshJob | None:
        if job_db_id is None:
            return refresh_jobs.get_job_by_job_id(db, job_id)
        job = refresh_jobs.get_job(db, job_db_id)
        if job is not None and job.job_id != job_id:
            refresh_jobs.update_job_id(db, job.id, job_id)
        return job

    def _redundant_tick(self, db: Session, user_id: int) -> dict | None:
        """Skip result for a scheduled tick that must not run, else None.

        A tick is skipped while the user has a job in flight. When that job is
        itself scheduled, or another scheduled tick fired less than half an
        interval ago, this tick belongs to a duplicate chain and is not
        re-chained, so duplicate chains collapse into one.
        """
        in_flight = refresh_jobs.get_processing_job(db, user_id)
        if in_flight is not None:
            logger.info("Skipping %s refresh for user %s: %s", JOB_TYPE_SCHEDULED, user_id, IN_PROGRESS_MESSAGE)
            return _skipped(user_id, JOB_TYPE_SCHEDULED, rechain=in_flight.job_type != JOB_TYPE_SCHEDULED)

        last = refresh_jobs.get_last_scheduled_job(db, user_id)
        if last is not None and _age(last.created_at) < timedelta(hours=self.interval_hours / 2):
            logger.info(
                "Dropping duplicate %s refresh for user %s: last tick fired at %s",
                JOB_TYPE_SCHEDULED, user_id, last.created_at.isoformat(),
            )
            return _skipped(user_id, JOB_TYPE_SCHEDULED, rechain=False)
        return None

    def perform_data_refresh(self, db: Session, user_id: int) -> dict:
        """Sync every active item of a user. Returns summed counts."""
        items = retrieve_items_by_user(db, user_id)
        totals = {"addedCount": 0, "modifiedCount": 0, "removedCount": 0}
        if not items:
            logger.info("User %s has no active items to refresh", user_id)
            return totals

        client = self._client_factory()
        for item in items:
            logger.info("Syncing transactions for item %s", item.plaid_item_id)
            result = sync_transactions(db, client, item.plaid_item_id)
            totals["addedCount"] += result.added_count
            totals["modifiedCount"] += result.modified_count
            totals["removedCount"] += result.removed_count
        return totals

    # ─── Queue events ─────────────────────────────────────────────────────

    def on_completed(self, data: dict, result: dict | None = None) -> None:
        """A job finished successfully; scheduled jobs chain their successor."""
        if data.get("job_type") != JOB_TYPE_SCHEDULED:
            return
        user_id = data["user_id"]
        if result and result.get("rechain") is False:
            logger.info("Ending duplicate scheduled refresh chain for user %s", user_id)
            return
        logger.info("Scheduling next refresh for user %s after scheduled job completed", user_id)
        self._chain_next_refresh(user_id)

    def on_failed(self, data: dict, error: BaseException) -> None:
        """A job exhausted its retries."""
        user_id = data.get("user_id")
        logger.error("Refresh job for user %s failed permanently: %s", user_id, error)
        if data.get("job_type") == JOB_TYPE_SCHEDULED:
            # Keep the periodic chain alive past a failed tick
            self._chain_next_refresh(user_id)

    def _chain_next_refresh(self, user_id: int) -> None:
        if self.settle_seconds:
            self._sleep(self.settle_seconds)
        try:
            self.schedule_next_refresh(user_id)
        except Exception as exc:
            logger.error("Failed to schedule next refresh for user %s: %s", user_id, exc)

    # ─── Status ───────────────────────────────────────────────────────────

    def get_refresh_status(self, user_id: int) -> dict:
        with self._session() as db:
            job = refresh_jobs.get_refresh_status(db, user_id)

        if job is None:
            return {
                "status": "never_run",
                "lastRefreshTime": None,
                "nextScheduledTime": None,
            }

        return {
            "status": job.status,
            "jobType": job.job_type,
            "lastRefreshTime": job.last_refresh_time,
            "nextScheduledTime": job.next_scheduled_time,
            "errorMessage": job.error_message,
        }

    # ─── Manual refresh ───────────────────────────────────────────────────

    def is_refresh_in_progress(self, db: Session, user_id: int) -> bool:
        if refresh_jobs.get_processing_job(db, user_id):
            logger.info("Manual refresh requested but a job is already in progress for user %s", user_id)
            return True
        return False

    def _create_and_schedule_job(self, db: Session, user_id: int) -> str:
        job = refresh_jobs.create_refresh_job(db, user_id, JOB_TYPE_MANUAL)
        # The row must carry its key before a worker can pick the job up
        job_id = _job_key(JOB_TYPE_MANUAL, user_id)
        refresh_jobs.update_job_id(db, job.id, job_id)
        try:
            self.queue.add(
                {"user_id": user_id, "job_type": JOB_TYPE_MANUAL, "job_db_id": job.id},
                job_id=job_id,
            )
        except Exception as exc:
            # An orphaned pending row would block every later request
            refresh_jobs.update_job_status(db, user_id, job_id, STATUS_FAILED, f"Failed to queue: {exc}")
            raise
        return job_id

    def request_manual_refresh(self, user_id: int) -> dict:
        logger.info("Requesting manual refresh for user %s", user_id)
        with self._session() as db:
            if self.is_refresh_in_progress(db, user_id):
                return {"success": False, "message": IN_PROGRESS_MESSAGE}
            job_id = self._create_and_schedule_job(db, user_id)

        logger.info("Manual refresh queued for user %s", user_id)
        return {"success": True, "jobId": job_id, "message": "Refresh has been queued"}

    def request_manual_refresh_all_users(self) -> dict:
        logger.info("Requesting manual refresh for all users")
        with self._session() as db:
            user_ids = refresh_jobs.get_all_user_ids(db)

        if not user_ids:
            logger.info("No users found for refresh")
            return {"success": False, "message": "No users found for refresh"}

        job_results = []
        for user_id in user_ids:
            try:
                result = self.request_manual_refresh(user_id)
            except Exception as exc:
                logger.error("Failed to queue refresh for user %s: %s", user_id, exc)
                result = {"success": False, "message": f"Failed to queue: {exc}"}
            job_results.append({"userId": user_id, **result})

        success_count = sum(1 for r in job_results if r["success"])
        message = f"Refresh has been queued for {success_count} out of {len(user_ids)} users"
        logger.info(message)
        return {
            "success": success_count > 0,
            "totalUsers": len(user_ids),
            "successfulJobs": success_count,
            "jobResults": job_results,
            "message": message,
        }

    def refresh_all_users(self, batch_size: int | None = None) -> int:
        """Queue manual refreshes for all users in batches. Returns how many were queued."""
        batch_size = batch_size or settings.refresh_batch_size
        with self._session() as db:
            user_ids = refresh_jobs.get_all_user_ids(db)

        if not user_ids:
            logger.info("No users found for refresh")
            return 0

        queued = 0
        batches = (len(user_ids) + batch_size - 1) // batch_size
        for start in range(0, len(user_ids), batch_size):
            logger.info("Processing refresh batch %d of %d", start // batch_size + 1, batches)
            for user_id in user_ids[start:start + batch_size]:
                try:
                    result = self.request_manual_refresh(user_id)
                except Exception as exc:
                    logger.error("Failed to queue refresh for user %s: %s", user_id, exc)
                    continue
                if result["success"]:
                    queued += 1
                else:
                    logger.info("Skipped refresh for user %s: %s", user_id, result["message"])

            # Pause between batches to avoid Redis/DB connection spikes
            if start + batch_size < len(user_ids):
                self._sleep(1)

        logger.info("Immediate refresh queued for %d of %d users", queued, len(user_ids))
        return queued

    # ─── Scheduling ───────────────────────────────────────────────────────

    def schedule_next_refresh(self, user_id: int, interval_hours: float | None = None) -> str:
        interval_hours = interval_hours if interval_hours is not None else self.interval_hours
        next_run = datetime.now(timezone.utc) + timedelta(hours=interval_hours)

        with self._session() as db:
            refresh_jobs.update_next_scheduled_time(db, user_id, next_run)

        job_id = self.queue.add(
            {"user_id": user_id, "job_type": JOB_TYPE_SCHEDULED},
            job_id=_job_key(JOB_TYPE_SCHEDULED, user_id),
            delay=interval_hours * 60 * 60,
        )
        logger.info("Next scheduled refresh for user %s at %s", user_id, next_run.isoformat())
        return job_id
