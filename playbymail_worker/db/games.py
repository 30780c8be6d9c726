"""Account, game, instance and subscription models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType


class GameType(str, Enum):
    adventure = "adventure"


class GameInstanceState(str, Enum):
    pending = "pending"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class TurnPhase(str, Enum):
    """Phase of an instance's current turn."""

    opening = "opening"
    emitting = "emitting"
    awaiting = "awaiting"
    timed_out = "timed_out"
    resolving = "resolving"
    closed = "closed"


class SubscriptionStatus(str, Enum):
    pending = "pending"
    active = "active"
    withdrawn = "withdrawn"


class DeliveryChannel(str, Enum):
    email = "email"
    physical_post = "physical_post"
    physical_local = "physical_local"


class Account(Base):
    """Delivery target for turn sheets."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    postal_address: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Game(Base):
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    game_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    turn_duration_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Instance completes once this many turns have been resolved
    max_turns: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    instances: Mapped[list[GameInstance]] = relationship(back_populates="game")


class GameInstance(Base):
    """One running occurrence of a game."""

    __tablename__ = "game_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    state: Mapped[str] = mapped_column(
        String(20), default=GameInstanceState.pending.value, nullable=False, index=True
    )
    current_turn_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    required_player_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    deadline_for_current_turn: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    turn_phase: Mapped[str | None] = mapped_column(String(20), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_turn_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    game: Mapped[Game] = relationship(back_populates="instances")
    subscriptions: Mapped[list[GameSubscription]] = relationship(back_populates="game_instance")

    __table_args__ = (
        Index("idx_game_instances_state_deadline", "state", "deadline_for_current_turn"),
    )


class GameSubscription(Base):
    """An account's seat in a game instance and how it receives sheets."""

    __tablename__ = "game_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("game_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.pending.value, nullable=False
    )
    delivery_channels: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    game_instance: Mapped[GameInstance] = relationship(back_populates="subscriptions")
    account: Mapped[Account] = relationship()

    __table_args__ = (
        UniqueConstraint("game_instance_id", "account_id", name="uq_subscription_instance_account"),
    )
