"""Adventure game world and per-instance derived state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AdventureLocation(Base):
    __tablename__ = "adventure_game_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_starting_location: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AdventureLocationLink(Base):
    """A named pathway from one location to another."""

    __tablename__ = "adventure_game_location_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_location_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("adventure_game_locations.id", ondelete="CASCADE"), nullable=False
    )
    to_location_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("adventure_game_locations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class AdventureCharacterInstance(Base):
    """An account's character inside one game instance."""

    __tablename__ = "adventure_game_character_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("game_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    location_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("adventure_game_locations.id", ondelete="SET NULL"), nullable=True
    )
    health: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    inventory_capacity: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("game_instance_id", "account_id", name="uq_character_instance_account"),
    )


class AdventureItemInstance(Base):
    """An item lying at a location or carried by a character."""

    __tablename__ = "adventure_game_item_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("game_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("adventure_game_locations.id", ondelete="SET NULL"), nullable=True
    )
    character_instance_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("adventure_game_character_instances.id", ondelete="SET NULL"),
        nullable=True,
    )
    can_equip: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    equipment_slot: Mapped[str | None] = mapped_column(String(30), nullable=True)
    is_equipped: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
