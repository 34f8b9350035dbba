from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

JOB_TYPE_MANUAL = "manual"
JOB_TYPE_SCHEDULED = "scheduled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshJob(Base):
    """One requested data refresh for a user (manual or scheduled tick)."""
    __tablename__ = "refresh_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_refresh_jobs_status",
        ),
        CheckConstraint("job_type IN ('manual', 'scheduled')", name="ck_refresh_jobs_job_type"),
        # At most one processing job per user; acts as the per-user refresh lease
        Index(
            "uq_refresh_jobs_user_processing",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, index=True)
    job_type: Mapped[str] = mapped_column(String(20))  # manual | scheduled
    job_id: Mapped[str | None] = mapped_column(String(255), unique=True)  # Celery task id
    last_refresh_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_scheduled_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
