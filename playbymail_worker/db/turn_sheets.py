"""Turn sheet, delivery attempt and scan intake models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType


class TurnSheetState(str, Enum):
    """Lifecycle of a turn sheet.

    States up to ``resolved`` are ordered and only move forward.
    ``failed`` and ``abandoned`` may be entered from any non-terminal state.
    """

    draft = "draft"
    rendered = "rendered"
    dispatched = "dispatched"
    delivered = "delivered"
    received = "received"
    scanned = "scanned"
    resolved = "resolved"
    failed = "failed"
    abandoned = "abandoned"

    @classmethod
    def ordered_states(cls) -> list["TurnSheetState"]:
        """Return the forward-only states in lifecycle order."""
        return [
            cls.draft,
            cls.rendered,
            cls.dispatched,
            cls.delivered,
            cls.received,
            cls.scanned,
            cls.resolved,
        ]

    @classmethod
    def terminal_states(cls) -> set["TurnSheetState"]:
        return {cls.resolved, cls.failed, cls.abandoned}


class SheetType(str, Enum):
    location_choice = "location_choice"
    inventory_management = "inventory_management"


class DeliveryAttemptState(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    abandoned = "abandoned"


class ScanImageStatus(str, Enum):
    pending = "pending"
    bound = "bound"
    failed = "failed"


class TurnSheet(Base):
    """A per-account, per-turn printable sheet."""

    __tablename__ = "turn_sheets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("game_instances.id", ondelete="CASCADE"), nullable=False
    )
    game_subscription_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("game_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_number: Mapped[int] = mapped_column(Integer, nullable=False)
    sheet_type: Mapped[str] = mapped_column(String(50), nullable=False)
    sheet_order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    code: Mapped[str] = mapped_column(String(13), nullable=False, unique=True)
    state: Mapped[str] = mapped_column(
        String(20), default=TurnSheetState.draft.value, nullable=False, index=True
    )
    template_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    rendered_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    artifact_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    scanned_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "game_instance_id",
            "turn_number",
            "account_id",
            "sheet_type",
            name="uq_turn_sheet_instance_turn_account_type",
        ),
        Index("idx_turn_sheets_instance_turn", "game_instance_id", "turn_number"),
    )


class DeliveryAttempt(Base):
    """One try at delivering a sheet over one channel."""

    __tablename__ = "delivery_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    turn_sheet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("turn_sheets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel: Mapped[str] = mapped_column(String(30), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=DeliveryAttemptState.pending.value, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "turn_sheet_id", "channel", "attempt_number", name="uq_delivery_attempt_key"
        ),
        # At most one success per (sheet, channel)
        Index(
            "uq_delivery_attempt_success",
            "turn_sheet_id",
            "channel",
            unique=True,
            postgresql_where=text("state = 'succeeded'"),
            sqlite_where=text("state = 'succeeded'"),
        ),
    )


class ScanImage(Base):
    """An inbound scan, kept whether or not it could be paired to a sheet."""

    __tablename__ = "scan_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    image_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    image_digest: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_metadata: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    sheet_type_hint: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=ScanImageStatus.pending.value, nullable=False, index=True
    )
    code: Mapped[str | None] = mapped_column(String(13), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    turn_sheet_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("turn_sheets.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
