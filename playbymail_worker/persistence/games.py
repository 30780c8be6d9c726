"""Game instance and subscription persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.games import (
    DeliveryChannel,
    Game,
    GameInstance,
    GameInstanceState,
    GameSubscription,
    SubscriptionStatus,
)
from ..logging import logger
from ..utils.datetime_utils import now_utc

_CHANNELS = {channel.value for channel in DeliveryChannel}


def normalize_channels(channels: Iterable[str]) -> list[str]:
    """Validate and de-duplicate delivery channels, keeping their order."""
    result: list[str] = []
    for channel in channels:
        value = channel.value if isinstance(channel, DeliveryChannel) else str(channel)
        if value not in _CHANNELS:
            raise ValueError(f"unknown delivery channel {value!r}")
        if value not in result:
            result.append(value)
    return result


def subscribe(
    session: Session,
    instance: GameInstance,
    account_id: int,
    delivery_channels: Iterable[str],
    status: SubscriptionStatus = SubscriptionStatus.active,
) -> GameSubscription:
    """Create a subscription; an active subscription needs at least one channel."""
    channels = normalize_channels(delivery_channels)
    if status == SubscriptionStatus.active and not channels:
        raise ValueError("an active subscription needs at least one delivery channel")
    subscription = GameSubscription(
        game_id=instance.game_id,
        game_instance_id=instance.id,
        account_id=account_id,
        delivery_channels=channels,
        status=status.value,
    )
    session.add(subscription)
    session.flush()
    logger.info(
        "subscription_created",
        subscription_id=subscription.id,
        game_instance_id=instance.id,
        channels=channels,
    )
    return subscription


def active_subscriptions(session: Session, game_instance_id: int) -> list[GameSubscription]:
    return list(
        session.scalars(
            select(GameSubscription)
            .where(
                GameSubscription.game_instance_id == game_instance_id,
                GameSubscription.status == SubscriptionStatus.active.value,
            )
            .order_by(GameSubscription.id)
        )
    )


def count_active_subscriptions(session: Session, game_instance_id: int) -> int:
    return session.scalar(
        select(func.count(GameSubscription.id)).where(
            GameSubscription.game_instance_id == game_instance_id,
            GameSubscription.status == SubscriptionStatus.active.value,
        )
    ) or 0


def load_instance(session: Session, game_instance_id: int) -> tuple[GameInstance, Game] | None:
    """Re-read an instance and its game, bypassing the identity map."""
    instance = session.get(GameInstance, game_instance_id, populate_existing=True)
    if instance is None:
        return None
    return instance, session.get(Game, instance.game_id)


def is_halted(instance: GameInstance) -> bool:
    return instance.state in (GameInstanceState.cancelled.value, GameInstanceState.completed.value)


def turn_duration_hours(game: Game, default_hours: int) -> int:
    return game.turn_duration_hours or default_hours


def overdue_instances(session: Session) -> list[GameInstance]:
    """Active instances whose current turn deadline has passed and is still open."""
    return list(
        session.scalars(
            select(GameInstance).where(
                GameInstance.state == GameInstanceState.active.value,
                GameInstance.deadline_for_current_turn.is_not(None),
                GameInstance.deadline_for_current_turn <= now_utc(),
                GameInstance.turn_phase.in_(("emitting", "awaiting", "timed_out", "resolving")),
            )
        )
    )
