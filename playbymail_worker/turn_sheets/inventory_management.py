"""Adventure game inventory management sheet.

Options are grouped under PICK UP, DROP, EQUIP and UNEQUIP headers; each
header becomes a choice slot holding the marked item names.
"""

from __future__ import annotations

import re
from typing import ClassVar

from ..errors import ChoiceExtractionFailed
from ..models.schemas import InventoryManagementTemplate
from .generator import BOLD_FONT, EMPTY_BOX, TurnSheetGenerator, _PageWriter
from .scanner import TurnSheetScanner, marked_labels

SHEET_TYPE = "inventory_management"
FORM_NAME = "INVENTORY MANAGEMENT"

SECTIONS = (
    ("pick_up", "PICK UP"),
    ("drop", "DROP"),
    ("equip", "EQUIP"),
    ("unequip", "UNEQUIP"),
)

_SECTION_RE = re.compile(r"^\s*(pick\s*up|drop|unequip|equip)\s*:?\s*$", re.IGNORECASE)


class InventoryManagementGenerator(TurnSheetGenerator):
    sheet_type: ClassVar[str] = SHEET_TYPE
    form_name: ClassVar[str] = FORM_NAME
    template_model = InventoryManagementTemplate
    default_title = "Inventory Management"
    default_instructions = (
        "Manage your inventory by marking boxes to pick up items, drop items, "
        "equip items, or unequip items. Return this sheet by the deadline."
    )

    def draw_body(self, writer: _PageWriter, data: InventoryManagementTemplate) -> None:
        writer.line(f"Character: {data.character_name}", font=BOLD_FONT, size=13)
        if data.current_location_name:
            writer.line(f"Location: {data.current_location_name}", size=11)
        writer.line(
            f"Health: {data.health}   Carrying {data.inventory_count}/{data.inventory_capacity} items",
            size=11,
        )
        sections = {
            "pick_up": [item.item_name for item in data.location_items],
            "drop": [item.item_name for item in data.current_inventory],
            "equip": [
                item.item_name
                for item in data.current_inventory
                if item.can_equip and not item.is_equipped
            ],
            "unequip": [item.item_name for item in data.current_inventory if item.is_equipped],
        }
        for slot, header in SECTIONS:
            writer.gap()
            writer.line(header, font=BOLD_FONT, size=12)
            names = sections[slot]
            if not names:
                writer.line("(nothing)", size=10, indent=12)
            for name in names:
                writer.line(f"{EMPTY_BOX} {name}", size=11)


class InventoryManagementScanner(TurnSheetScanner):
    sheet_type: ClassVar[str] = SHEET_TYPE
    form_name: ClassVar[str] = FORM_NAME

    def extract_choices(self, lines: list[str]) -> dict[str, list[str]]:
        choices: dict[str, list[str]] = {slot: [] for slot, _ in SECTIONS}
        current: str | None = None
        seen_section = False
        for line in lines:
            header = _SECTION_RE.match(line)
            if header:
                current = re.sub(r"\s+", "_", header.group(1).strip().lower())
                if current == "pickup":
                    current = "pick_up"
                seen_section = True
                continue
            if current is None:
                continue
            choices[current].extend(marked_labels([line]))
        if not seen_section:
            raise ChoiceExtractionFailed("no inventory sections found")
        return choices
