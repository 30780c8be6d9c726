"""Bookkeeping rows for pipeline job runs.

Sweeps and turn steps each leave a ``pipeline_job_runs`` row, so operators
can see which natural key ran, how long it took and why it failed.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Iterator

from celery import current_task
from sqlalchemy import update

from ..db import db_models, get_session
from ..logging import logger
from ..utils.datetime_utils import ensure_utc, now_utc

RUNNING = "running"
STALE_AFTER = timedelta(hours=1)
MAX_ERROR_LENGTH = 500


class JobRunTracker:
    """Summary counters collected while a job run is open."""

    def __init__(self, kind: str, natural_key: str | None = None) -> None:
        self.kind = kind
        self.natural_key = natural_key
        self.run_id: int | None = None
        self.summary_data: dict[str, Any] = {}

    def set(self, key: str, value: Any) -> None:
        self.summary_data[key] = value

    def increment(self, key: str, amount: int = 1) -> None:
        self.summary_data[key] = self.summary_data.get(key, 0) + amount

    def _open(self, celery_task_id: str | None) -> None:
        with get_session() as session:
            run = db_models.PipelineJobRun(
                kind=self.kind,
                natural_key=self.natural_key,
                status=RUNNING,
                started_at=now_utc(),
                celery_task_id=celery_task_id,
            )
            session.add(run)
            session.flush()
            self.run_id = int(run.id)
        logger.info("job_run_started", run_id=self.run_id, kind=self.kind, natural_key=self.natural_key)

    def _close(self, status: str, error: str | None = None) -> None:
        with get_session() as session:
            run = session.get(db_models.PipelineJobRun, self.run_id)
            if run is None:
                logger.error("job_run_missing", run_id=self.run_id, kind=self.kind)
                return
            finished_at = now_utc()
            run.status = status
            run.finished_at = finished_at
            run.duration_seconds = (finished_at - ensure_utc(run.started_at)).total_seconds()
            run.error_summary = error
            run.summary_data = self.summary_data or None
        log = logger.warning if status == "error" else logger.info
        log("job_run_finished", run_id=self.run_id, kind=self.kind, status=status)


def _celery_task_id() -> str | None:
    task = current_task
    if task and task.request.id:
        return str(task.request.id)
    return None


@contextmanager
def track_job_run(kind: str, natural_key: str | None = None) -> Iterator[JobRunTracker]:
    """Record a job run around the block.

        with track_job_run("resolve_turn", "resolve:12:3") as tracker:
            tracker.set("sheets_resolved", 4)

    The row ends as ``success``, or as ``error`` with the exception re-raised.
    """
    tracker = JobRunTracker(kind, natural_key)
    tracker._open(_celery_task_id())
    try:
        yield tracker
    except Exception as exc:
        tracker._close("error", str(exc)[:MAX_ERROR_LENGTH])
        raise
    tracker._close("success")


def mark_stale_runs_interrupted(max_age: timedelta = STALE_AFTER) -> int:
    """Close out runs left ``running`` by a worker that died mid-job."""
    cutoff = now_utc() - max_age
    with get_session() as session:
        result = session.execute(
            update(db_models.PipelineJobRun)
            .where(
                db_models.PipelineJobRun.status == RUNNING,
                db_models.PipelineJobRun.started_at < cutoff,
            )
            .values(
                status="interrupted",
                finished_at=now_utc(),
                error_summary="worker stopped before the run finished",
            )
        )
        count = result.rowcount or 0
    if count:
        logger.warning("stale_job_runs_interrupted", count=count)
    return count
