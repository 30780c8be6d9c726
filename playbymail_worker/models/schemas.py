"""Pydantic models for turn sheet template data and scanned choices."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ..errors import BadCode
from ..turn_sheets.codes import parse


class TurnSheetTemplate(BaseModel):
    """Fields common to every sheet type.

    Only ``code``, ``turn_number`` and ``deadline`` are required.
    """

    code: str
    turn_number: int = Field(ge=0)
    deadline: datetime
    game_name: str | None = None
    game_type: str | None = None
    account_name: str | None = None
    title: str | None = None
    instructions: str | None = None
    background_image: str | None = None

    @field_validator("code")
    @classmethod
    def _valid_code(cls, v: str) -> str:
        try:
            parse(v)
        except BadCode as exc:
            raise ValueError(str(exc)) from exc
        return v


class LocationOption(BaseModel):
    location_link_id: int
    name: str
    description: str | None = None
    destination_location_id: int | None = None


class LocationChoiceTemplate(TurnSheetTemplate):
    location_name: str | None = None
    location_description: str | None = None
    location_options: list[LocationOption] = Field(default_factory=list)


class InventoryItem(BaseModel):
    item_instance_id: int
    item_name: str
    item_description: str | None = None
    is_equipped: bool = False
    equipment_slot: str | None = None
    can_equip: bool = False


class LocationItem(BaseModel):
    item_instance_id: int
    item_name: str
    item_description: str | None = None


class InventoryManagementTemplate(TurnSheetTemplate):
    character_name: str
    current_location_name: str | None = None
    health: int = 100
    inventory_capacity: int = 10
    current_inventory: list[InventoryItem] = Field(default_factory=list)
    location_items: list[LocationItem] = Field(default_factory=list)

    @property
    def inventory_count(self) -> int:
        return len(self.current_inventory)


class ScanResult(BaseModel):
    """What a scanner recovered from one image."""

    code: str
    sheet_type: str
    choices: dict[str, list[str]]
    ocr_text: str | None = None
