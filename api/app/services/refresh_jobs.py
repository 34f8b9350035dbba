"""Queries for the refresh_jobs table."""

import logging
from datetime import datetime, timezone

from sqlalchemy import case, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.refresh_job import (
    JOB_TYPE_SCHEDULED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    RefreshJob,
)
from app.models.user import User

logger = logging.getLogger(__name__)


class RefreshInProgressError(Exception):
    """Another job already holds the processing slot for this user."""

    def __init__(self, user_id: int):
        super().__init__(f"A data refresh is already in progress for user {user_id}")
        self.user_id = user_id


def create_refresh_job(db: Session, user_id: int, job_type: str) -> RefreshJob:
    job = RefreshJob(user_id=user_id, job_type=job_type, status=STATUS_PENDING)
    db.add(job)
    db.commit()
    return job


def update_job_id(db: Session, job_db_id: int, queue_job_id: str) -> RefreshJob | None:
    """Attach the queue's job id to a refresh_jobs row."""
    job = db.get(RefreshJob, job_db_id)
    if job is None:
        return None
    job.job_id = queue_job_id
    db.commit()
    return job


def update_job_status(
    db: Session,
    user_id: int,
    job_id: str,
    status: str,
    error_message: str | None = None,
) -> RefreshJob | None:
    """Move a job to a new status. Completing a job stamps last_refresh_time.

    Raises RefreshInProgressError when ``processing`` is requested while the
    user already has a processing job.
    """
    job = db.execute(
        select(RefreshJob).where(RefreshJob.user_id == user_id, RefreshJob.job_id == job_id)
    ).scalar_one_or_none()
    if job is None:
        logger.warning("No refresh job %s for user %s", job_id, user_id)
        return None

    now = datetime.now(timezone.utc)
    job.status = status
    job.error_message = error_message
    job.updated_at = now
    if status == STATUS_COMPLETED:
        job.last_refresh_time = now

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if status == STATUS_PROCESSING:
            raise RefreshInProgressError(user_id) from exc
        raise
    return job


def get_job(db: Session, job_db_id: int) -> RefreshJob | None:
    return db.get(RefreshJob, job_db_id)


def get_job_by_job_id(db: Session, job_id: str) -> RefreshJob | None:
    return db.execute(
        select(RefreshJob).where(RefreshJob.job_id == job_id)
    ).scalar_one_or_none()


def get_processing_job(db: Session, user_id: int) -> RefreshJob | None:
    """A job for this user that is queued or running, if any."""
    return db.execute(
        select(RefreshJob)
        .where(
            RefreshJob.user_id == user_id,
            RefreshJob.status.in_((STATUS_PENDING, STATUS_PROCESSING)),
        )
        .order_by(RefreshJob.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_last_scheduled_job(db: Session, user_id: int) -> RefreshJob | None:
    """The user's most recently fired scheduled tick, whatever its outcome."""
    return db.execute(
        select(RefreshJob)
        .where(RefreshJob.user_id == user_id, RefreshJob.job_type == JOB_TYPE_SCHEDULED)
        .order_by(RefreshJob.created_at.desc(), RefreshJob.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def fail_unfinished_jobs(db: Session, error_message: str) -> int:
    """Mark every pending or processing job failed. Returns rows changed."""
    jobs = db.execute(
        select(RefreshJob).where(RefreshJob.status.in_((STATUS_PENDING, STATUS_PROCESSING)))
    ).scalars().all()
    now = datetime.now(timezone.utc)
    for job in jobs:
        job.status = STATUS_FAILED
        job.error_message = error_message
        job.updated_at = now
    db.commit()
    return len(jobs)


def update_next_scheduled_time(db: Session, user_id: int, next_time: datetime) -> RefreshJob | None:
    """Record the next scheduled run on the user's latest completed job (or latest job)."""
    latest = (
        select(RefreshJob)
        .where(RefreshJob.user_id == user_id)
        .order_by(RefreshJob.updated_at.desc(), RefreshJob.id.desc())
        .limit(1)
    )
    job = db.execute(latest.where(RefreshJob.status == STATUS_COMPLETED)).scalar_one_or_none()
    if job is None:
        job = db.execute(latest).scalar_one_or_none()
    if job is None:
        return None
    job.next_scheduled_time = next_time
    db.commit()
    return job


def get_refresh_status(db: Session, user_id: int) -> RefreshJob | None:
    """Most relevant job for a user: in-flight first, then the most recently updated."""
    priority = case(
        (RefreshJob.status == STATUS_PROCESSING, 1),
        (RefreshJob.status == STATUS_PENDING, 2),
        (RefreshJob.status == STATUS_COMPLETED, 3),
        (RefreshJob.status == STATUS_FAILED, 4),
        else_=5,
    )
    return db.execute(
        select(RefreshJob)
        .where(RefreshJob.user_id == user_id)
        .order_by(priority, RefreshJob.updated_at.desc(), RefreshJob.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_all_user_ids(db: Session) -> list[int]:
    return list(
        db.execute(
            select(User.id).where(User.is_active == True).order_by(User.id)  # noqa: E712
        ).scalars().all()
    )
