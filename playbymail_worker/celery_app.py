"""Celery app configuration for the turn sheet pipeline worker."""

from __future__ import annotations

from celery import Celery, signals
from celery.schedules import crontab

from .config import settings
from .logging import logger
from .services.job_runs import mark_stale_runs_interrupted

TURN_QUEUE = "turn-orchestration"
SHEET_QUEUE = "turn-sheets"
SCAN_QUEUE = "scan-intake"

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_track_started": True,
    # Redelivered messages are the retry mechanism; handlers are idempotent
    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    "worker_prefetch_multiplier": 1,
    "task_time_limit": 600,       # 10 min hard limit
    "task_soft_time_limit": 540,  # 9 min soft limit
    "task_default_queue": TURN_QUEUE,
}

app = Celery(
    "playbymail-worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["playbymail_worker.jobs.tasks"],
)
app.conf.update(**celery_config)
app.conf.task_routes = {
    "open_turn": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    "resolve_turn": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    "check_turn_deadlines": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    "withdraw_subscription": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    "cancel_instance": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    # Rendering and delivery talk to external transports
    "emit_turn_sheet": {"queue": SHEET_QUEUE, "routing_key": SHEET_QUEUE},
    "deliver_turn_sheet": {"queue": SHEET_QUEUE, "routing_key": SHEET_QUEUE},
    # OCR is slow and may call a remote model
    "ingest_scan": {"queue": SCAN_QUEUE, "routing_key": SCAN_QUEUE},
    "reconcile_scan": {"queue": SCAN_QUEUE, "routing_key": SCAN_QUEUE},
}
# Deadline sweep: resolves overdue turns and re-enqueues stalled sheets.
app.conf.beat_schedule = {
    "turn-deadline-sweep-every-5-min": {
        "task": "check_turn_deadlines",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": TURN_QUEUE, "routing_key": TURN_QUEUE},
    },
}


@signals.worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    """Called when Celery worker is ready. Mark any stale runs as interrupted."""
    worker_name = getattr(sender, "hostname", None) or str(sender) if sender else "unknown"
    logger.info("celery_worker_ready", worker=worker_name)
    try:
        mark_stale_runs_interrupted()
    except Exception as exc:
        logger.exception("failed_to_mark_stale_runs", error=str(exc))
