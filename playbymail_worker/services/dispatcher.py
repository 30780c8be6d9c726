"""Delivery dispatcher.

A dispatched sheet gets one delivery job per channel on its subscription.
Channels run independently; the sheet counts as delivered once any channel
succeeds. A failing channel is retried with exponential backoff until its
attempt budget runs out, then abandoned. Only when every channel has been
abandoned does the sheet fail.

Each attempt is a row keyed by (sheet, channel, attempt_number), so a
redelivered job message finds its row already final and does nothing.
"""

from __future__ import annotations

import random

from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_session
from ..db.games import Account, GameInstance, GameInstanceState, GameSubscription
from ..db.turn_sheets import DeliveryAttemptState, TurnSheet, TurnSheetState
from ..delivery.transports import DeliveryPackage, Transport, get_transports
from ..errors import DeliveryFailed, StaleState, TransportTimeout
from ..jobs.queue import Job, StepResult
from ..logging import logger
from ..persistence import delivery as attempts_store
from ..persistence import turn_sheets as store
from ..persistence.rls import RLSScope, apply_session_scope, privileged_lookup, worker_scope
from .artifacts import read_artifact

_FINAL_ATTEMPT_STATES = {
    DeliveryAttemptState.succeeded.value,
    DeliveryAttemptState.failed.value,
    DeliveryAttemptState.abandoned.value,
}
_DELIVERABLE_STATES = {TurnSheetState.dispatched.value, TurnSheetState.delivered.value}


def backoff_delay(
    attempt_number: int,
    base_seconds: float | None = None,
    factor: float | None = None,
    jitter: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Delay before ``attempt_number + 1``: base * factor^(n-1), scaled by +/- jitter."""
    config = settings.pipeline_config
    base_seconds = config.delivery_backoff_base_seconds if base_seconds is None else base_seconds
    factor = config.delivery_backoff_factor if factor is None else factor
    jitter = config.delivery_backoff_jitter if jitter is None else jitter
    rng = rng or random
    delay = base_seconds * (factor ** (attempt_number - 1))
    return max(0.0, delay * (1 + rng.uniform(-jitter, jitter)))


def dispatch_sheet(
    session: Session, scope: RLSScope, sheet: TurnSheet, subscription: GameSubscription
) -> list[Job]:
    """Move a rendered sheet to dispatched and fan out first attempts per channel."""
    store.transition(session, scope, sheet.id, TurnSheetState.rendered, TurnSheetState.dispatched)
    jobs = [Job.deliver(sheet.id, channel, 1) for channel in subscription.delivery_channels]
    logger.info(
        "turn_sheet_dispatched",
        sheet_id=sheet.id,
        channels=list(subscription.delivery_channels),
    )
    return jobs


def _build_package(session: Session, sheet: TurnSheet, channel: str) -> DeliveryPackage:
    account = session.get(Account, sheet.account_id)
    template = sheet.template_data or {}
    return DeliveryPackage(
        turn_sheet_id=sheet.id,
        code=sheet.code,
        channel=channel,
        artifact=read_artifact(sheet.artifact_path),
        account_name=account.name if account else "",
        email=account.email if account else None,
        postal_address=account.postal_address if account else None,
        game_name=template.get("game_name"),
        turn_number=sheet.turn_number,
        deadline=sheet.deadline,
    )


def _prepare(turn_sheet_id: int, channel: str, attempt_number: int) -> DeliveryPackage | StepResult:
    """First transaction: idempotence checks and the pending attempt row."""
    with get_session() as session:
        with privileged_lookup(session):
            sheet = session.get(TurnSheet, turn_sheet_id)
        if sheet is None:
            return StepResult("not_found")
        instance = session.get(GameInstance, sheet.game_instance_id)
        if instance.state == GameInstanceState.cancelled.value:
            return StepResult("skipped", detail={"reason": "instance_cancelled"})
        if sheet.state not in _DELIVERABLE_STATES:
            return StepResult("skipped", detail={"reason": f"sheet_{sheet.state}"})
        if attempts_store.channel_succeeded(session, sheet.id, channel):
            return StepResult("skipped", detail={"reason": "channel_already_delivered"})
        attempt = attempts_store.get_or_create_attempt(session, sheet.id, channel, attempt_number)
        if attempt.state in _FINAL_ATTEMPT_STATES:
            return StepResult("skipped", detail={"reason": f"attempt_{attempt.state}"})
        return _build_package(session, sheet, channel)


def _record_success(turn_sheet_id: int, channel: str, attempt_number: int) -> StepResult:
    with get_session() as session:
        with privileged_lookup(session):
            sheet = session.get(TurnSheet, turn_sheet_id)
        scope = worker_scope(session, sheet.game_instance_id)
        apply_session_scope(session, scope)
        attempt = attempts_store.get_or_create_attempt(session, turn_sheet_id, channel, attempt_number)
        attempts_store.finish_attempt(attempt, DeliveryAttemptState.succeeded)
        session.flush()
        if sheet.state == TurnSheetState.dispatched.value:
            try:
                store.transition(session, scope, sheet.id, TurnSheetState.dispatched, TurnSheetState.delivered)
            except StaleState as exc:
                # Another channel or a scan got there first
                logger.info("delivery_transition_lost", sheet_id=sheet.id, current_state=exc.current_state)
        logger.info("delivery_attempt_succeeded", sheet_id=turn_sheet_id, channel=channel, attempt=attempt_number)
        return StepResult("delivered", detail={"channel": channel, "attempt": attempt_number})


def _record_failure(
    turn_sheet_id: int, channel: str, attempt_number: int, error: Exception
) -> StepResult:
    budget = settings.pipeline_config.delivery_retry_budget
    with get_session() as session:
        with privileged_lookup(session):
            sheet = session.get(TurnSheet, turn_sheet_id)
        scope = worker_scope(session, sheet.game_instance_id)
        apply_session_scope(session, scope)
        attempt = attempts_store.get_or_create_attempt(session, turn_sheet_id, channel, attempt_number)

        if attempt_number < budget:
            attempts_store.finish_attempt(attempt, DeliveryAttemptState.failed, str(error)[:2000])
            delay = backoff_delay(attempt_number)
            logger.warning(
                "delivery_attempt_failed",
                sheet_id=turn_sheet_id,
                channel=channel,
                attempt=attempt_number,
                retry_in_seconds=round(delay, 1),
                error=str(error),
            )
            return StepResult(
                "retry_scheduled",
                jobs=[Job.deliver(turn_sheet_id, channel, attempt_number + 1, countdown=delay)],
                detail={"channel": channel, "attempt": attempt_number},
            )

        attempts_store.finish_attempt(attempt, DeliveryAttemptState.abandoned, str(error)[:2000])
        session.flush()
        logger.warning(
            "delivery_channel_abandoned",
            sheet_id=turn_sheet_id,
            channel=channel,
            attempts=attempt_number,
            error=str(error),
        )

        subscription = session.get(GameSubscription, sheet.game_subscription_id)
        outcomes = attempts_store.channel_outcomes(session, turn_sheet_id)
        all_abandoned = all(
            outcomes.get(ch) == DeliveryAttemptState.abandoned.value
            for ch in subscription.delivery_channels
        )
        if all_abandoned and sheet.state == TurnSheetState.dispatched.value:
            try:
                store.transition(
                    session,
                    scope,
                    sheet.id,
                    TurnSheetState.dispatched,
                    TurnSheetState.failed,
                    {"error_kind": DeliveryFailed.kind, "error_message": "every delivery channel abandoned"},
                )
            except StaleState as exc:
                logger.info("delivery_failure_transition_lost", sheet_id=sheet.id, current_state=exc.current_state)
            else:
                logger.error("turn_sheet_undeliverable", sheet_id=sheet.id)
                return StepResult(
                    "sheet_failed",
                    jobs=[Job.resolve(sheet.game_instance_id, sheet.turn_number)],
                    detail={"channel": channel},
                )
        return StepResult("abandoned", detail={"channel": channel, "attempt": attempt_number})


def deliver(
    turn_sheet_id: int,
    channel: str,
    attempt_number: int,
    transports: dict[str, Transport] | None = None,
) -> StepResult:
    """Run one delivery attempt.

    The send happens outside any transaction; a crash between send and
    bookkeeping replays the send on redelivery.
    """
    prepared = _prepare(turn_sheet_id, channel, attempt_number)
    if isinstance(prepared, StepResult):
        logger.info(
            "delivery_attempt_skipped",
            sheet_id=turn_sheet_id,
            channel=channel,
            attempt=attempt_number,
            status=prepared.status,
            **prepared.detail,
        )
        return prepared

    transports = transports if transports is not None else get_transports()
    transport = transports.get(channel)
    try:
        if transport is None:
            raise DeliveryFailed(f"no transport configured for channel {channel!r}")
        transport.send(prepared)
    except (DeliveryFailed, TransportTimeout) as exc:
        return _record_failure(turn_sheet_id, channel, attempt_number, exc)
    return _record_success(turn_sheet_id, channel, attempt_number)
