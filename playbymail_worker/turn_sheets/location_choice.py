"""Adventure game location choice sheet.

The player picks exactly one pathway out of their current location. The
scanned choice is stored in slot ``"a"`` as a one-element list holding the
pathway name as printed.
"""

from __future__ import annotations

from typing import ClassVar

from ..errors import ChoiceExtractionFailed
from ..models.schemas import LocationChoiceTemplate
from .generator import BOLD_FONT, EMPTY_BOX, TurnSheetGenerator, _PageWriter
from .scanner import TurnSheetScanner, marked_labels

SHEET_TYPE = "location_choice"
FORM_NAME = "LOCATION CHOICE"
CHOICE_SLOT = "a"


class LocationChoiceGenerator(TurnSheetGenerator):
    sheet_type: ClassVar[str] = SHEET_TYPE
    form_name: ClassVar[str] = FORM_NAME
    template_model = LocationChoiceTemplate
    default_title = "Where will you go?"
    default_instructions = (
        "Mark exactly ONE box to choose where your character travels next. "
        "Return this sheet by the deadline."
    )

    def draw_body(self, writer: _PageWriter, data: LocationChoiceTemplate) -> None:
        if data.location_name:
            writer.line(f"You are at: {data.location_name}", font=BOLD_FONT, size=13)
        if data.location_description:
            writer.paragraph(data.location_description)
        writer.gap()
        writer.line("Choose your destination:", font=BOLD_FONT, size=12)
        for option in data.location_options:
            writer.line(f"{EMPTY_BOX} {option.name}", size=12)
            if option.description:
                writer.paragraph(option.description, size=9, indent=20)


class LocationChoiceScanner(TurnSheetScanner):
    sheet_type: ClassVar[str] = SHEET_TYPE
    form_name: ClassVar[str] = FORM_NAME

    def extract_choices(self, lines: list[str]) -> dict[str, list[str]]:
        labels = marked_labels(lines)
        if not labels:
            raise ChoiceExtractionFailed("no destination marked")
        if len(labels) > 1:
            raise ChoiceExtractionFailed(
                f"{len(labels)} destinations marked, expected one", labels=labels
            )
        return {CHOICE_SLOT: labels}
