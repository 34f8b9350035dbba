from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "ledgersync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# Scheduled refreshes sit in Redis as ETA tasks; the visibility timeout must
# outlive the longest countdown or Redis re-delivers them early.
_max_delay_seconds = int((settings.refresh_interval_hours + 2) * 60 * 60)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue=settings.refresh_queue_name,
    result_expires=None,  # keep job results for audit history
    broker_transport_options={"visibility_timeout": _max_delay_seconds},
)

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "app.services.sync",
]
