"""Turn lifecycle tasks: opening, resolution, the deadline sweep and
instance/subscription lifecycle commands.

Each task calls one orchestrator step and enqueues the follow-up jobs only
after that step's transaction has committed.
"""

from __future__ import annotations

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import OperationalError

from ..logging import logger
from ..services import orchestrator
from ..services.job_runs import track_job_run
from ..utils.redis_lock import acquire_redis_lock, release_redis_lock
from .queue import dispatch

SWEEP_LOCK = "lock:check_turn_deadlines"

# Database hiccups and timeouts; every other error is final
TRANSIENT_ERRORS = (OperationalError, SoftTimeLimitExceeded)


@shared_task(
    name="open_turn",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def open_turn(game_instance_id: int) -> dict:
    """Open the current turn of a game instance and queue its sheets for emission."""
    result = orchestrator.open_turn(game_instance_id)
    dispatch(result.jobs)
    return result.as_dict()


@shared_task(
    name="resolve_turn",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def resolve_turn(game_instance_id: int, turn_number: int) -> dict:
    """Resolve a turn once every sheet is scanned or its deadline has passed."""
    result = orchestrator.resolve_turn(game_instance_id, turn_number)
    dispatch(result.jobs)
    return result.as_dict()


@shared_task(name="check_turn_deadlines")
def check_turn_deadlines() -> dict:
    """Periodic sweep for overdue turns and stalled sheets (runs every 5 min)."""
    token = acquire_redis_lock(SWEEP_LOCK)
    if token is None:
        logger.debug("check_turn_deadlines_skipped_locked")
        return {"skipped": True, "reason": "locked"}

    try:
        with track_job_run("check_turn_deadlines") as tracker:
            result = orchestrator.sweep_turns()
            dispatch(result.jobs)
            tracker.set("jobs", len(result.jobs))
        return result.as_dict()
    finally:
        release_redis_lock(SWEEP_LOCK, token)


@shared_task(
    name="withdraw_subscription",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def withdraw_subscription(subscription_id: int) -> dict:
    result = orchestrator.withdraw_subscription(subscription_id)
    dispatch(result.jobs)
    return result.as_dict()


@shared_task(
    name="cancel_instance",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def cancel_instance(game_instance_id: int) -> dict:
    result = orchestrator.cancel_instance(game_instance_id)
    dispatch(result.jobs)
    return result.as_dict()
