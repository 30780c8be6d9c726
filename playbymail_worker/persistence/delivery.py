"""Delivery attempt persistence helpers."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.turn_sheets import DeliveryAttempt, DeliveryAttemptState
from ..utils.datetime_utils import now_utc


def get_or_create_attempt(
    session: Session, turn_sheet_id: int, channel: str, attempt_number: int
) -> DeliveryAttempt:
    """Return the attempt row for (sheet, channel, attempt), creating it as pending."""
    attempt = session.scalar(
        select(DeliveryAttempt).where(
            DeliveryAttempt.turn_sheet_id == turn_sheet_id,
            DeliveryAttempt.channel == channel,
            DeliveryAttempt.attempt_number == attempt_number,
        )
    )
    if attempt is not None:
        return attempt
    attempt = DeliveryAttempt(
        turn_sheet_id=turn_sheet_id,
        channel=channel,
        attempt_number=attempt_number,
        state=DeliveryAttemptState.pending.value,
        created_at=now_utc(),
    )
    try:
        with session.begin_nested():
            session.add(attempt)
            session.flush()
    except IntegrityError:
        # Another worker created it between our read and insert
        attempt = session.scalar(
            select(DeliveryAttempt).where(
                DeliveryAttempt.turn_sheet_id == turn_sheet_id,
                DeliveryAttempt.channel == channel,
                DeliveryAttempt.attempt_number == attempt_number,
            )
        )
    return attempt


def attempts_for_sheet(session: Session, turn_sheet_id: int) -> list[DeliveryAttempt]:
    return list(
        session.scalars(
            select(DeliveryAttempt)
            .where(DeliveryAttempt.turn_sheet_id == turn_sheet_id)
            .order_by(DeliveryAttempt.channel, DeliveryAttempt.attempt_number)
        )
    )


def channel_succeeded(session: Session, turn_sheet_id: int, channel: str) -> bool:
    return session.scalar(
        select(DeliveryAttempt.id).where(
            DeliveryAttempt.turn_sheet_id == turn_sheet_id,
            DeliveryAttempt.channel == channel,
            DeliveryAttempt.state == DeliveryAttemptState.succeeded.value,
        )
    ) is not None


def channel_outcomes(session: Session, turn_sheet_id: int) -> dict[str, str]:
    """Final outcome per channel: succeeded, abandoned, or pending while still trying."""
    outcomes: dict[str, str] = {}
    # Attempts come back in attempt order, so the latest one decides unless a success was seen
    for attempt in attempts_for_sheet(session, turn_sheet_id):
        if outcomes.get(attempt.channel) == DeliveryAttemptState.succeeded.value:
            continue
        if attempt.state in (DeliveryAttemptState.succeeded.value, DeliveryAttemptState.abandoned.value):
            outcomes[attempt.channel] = attempt.state
        else:
            outcomes[attempt.channel] = DeliveryAttemptState.pending.value
    return outcomes


def finish_attempt(attempt: DeliveryAttempt, state: DeliveryAttemptState, error: str | None = None) -> None:
    attempt.state = state.value
    attempt.last_error = error
    attempt.completed_at = now_utc()
