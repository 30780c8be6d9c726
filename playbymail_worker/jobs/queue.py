"""Job messages for the turn sheet pipeline.

Services return ``Job`` values instead of enqueueing directly; the task
layer dispatches them only after the transaction that produced them has
committed. Each job carries a natural key used as its Celery task id, so a
redelivered message is recognisable, and every handler is idempotent on
that key.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..logging import logger

# Job kind -> Celery task name
TASK_NAMES = {
    "opening": "open_turn",
    "emit": "emit_turn_sheet",
    "deliver": "deliver_turn_sheet",
    "ingest_scan": "ingest_scan",
    "resolve": "resolve_turn",
}


@dataclass(frozen=True)
class Job:
    kind: str
    args: tuple[Any, ...]
    key: str
    countdown: float | None = None
    options: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def task_name(self) -> str:
        return TASK_NAMES[self.kind]

    @classmethod
    def opening(cls, game_instance_id: int, turn_number: int | None = None) -> Job:
        suffix = f":{turn_number}" if turn_number is not None else ""
        return cls("opening", (game_instance_id,), f"opening:{game_instance_id}{suffix}")

    @classmethod
    def emit(cls, turn_sheet_id: int) -> Job:
        return cls("emit", (turn_sheet_id,), f"emit:{turn_sheet_id}")

    @classmethod
    def deliver(
        cls, turn_sheet_id: int, channel: str, attempt_number: int, countdown: float | None = None
    ) -> Job:
        return cls(
            "deliver",
            (turn_sheet_id, channel, attempt_number),
            f"deliver:{turn_sheet_id}:{channel}:{attempt_number}",
            countdown=countdown,
        )

    @classmethod
    def ingest_scan(cls, scan_image_id: int) -> Job:
        return cls("ingest_scan", (scan_image_id,), f"ingest_scan:{scan_image_id}")

    @classmethod
    def resolve(cls, game_instance_id: int, turn_number: int, countdown: float | None = None) -> Job:
        return cls(
            "resolve",
            (game_instance_id, turn_number),
            f"resolve:{game_instance_id}:{turn_number}",
            countdown=countdown,
        )


@dataclass
class StepResult:
    """Outcome of one pipeline step plus the follow-up jobs it produced."""

    status: str
    jobs: list[Job] = field(default_factory=list)
    detail: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"status": self.status, "jobs": [job.key for job in self.jobs], **self.detail}


def dispatch(jobs: Iterable[Job]) -> list[str]:
    """Send jobs to the broker. Returns the task ids used."""
    from ..celery_app import app

    task_ids = []
    for job in jobs:
        options = dict(job.options)
        if job.countdown:
            options["countdown"] = job.countdown
        app.send_task(job.task_name, args=list(job.args), task_id=job.key, **options)
        task_ids.append(job.key)
        logger.info("job_dispatched", kind=job.kind, key=job.key, countdown=job.countdown)
    return task_ids
