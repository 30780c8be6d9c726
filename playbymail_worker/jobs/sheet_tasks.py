"""Per-sheet tasks: rendering and delivery."""

from __future__ import annotations

from celery import shared_task

from ..errors import RenderFailed
from ..services import dispatcher, orchestrator
from .queue import dispatch
from .turn_tasks import TRANSIENT_ERRORS


@shared_task(
    name="emit_turn_sheet",
    autoretry_for=(RenderFailed, *TRANSIENT_ERRORS),
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def emit_turn_sheet(turn_sheet_id: int) -> dict:
    """Render one draft sheet, store its artifact and dispatch it."""
    result = orchestrator.emit_sheet(turn_sheet_id)
    dispatch(result.jobs)
    return result.as_dict()


@shared_task(
    name="deliver_turn_sheet",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def deliver_turn_sheet(turn_sheet_id: int, channel: str, attempt_number: int) -> dict:
    """Run one delivery attempt; the next attempt is its own job with a backoff countdown."""
    result = dispatcher.deliver(turn_sheet_id, channel, attempt_number)
    dispatch(result.jobs)
    return result.as_dict()
