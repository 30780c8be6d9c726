"""Tests for turn sheet PDF rendering."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from playbymail_worker.errors import InvalidTemplate, RenderFailed
from playbymail_worker.turn_sheets import codes
from playbymail_worker.turn_sheets.generator import digest
from playbymail_worker.turn_sheets.inventory_management import InventoryManagementGenerator
from playbymail_worker.turn_sheets.location_choice import LocationChoiceGenerator


def _location_template(code: str | None = None, **overrides) -> dict:
    data = {
        "code": code or codes.mint(),
        "turn_number": 3,
        "deadline": datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc).isoformat(),
        "game_name": "The Murky Town",
        "game_type": "adventure",
        "account_name": "Ada",
        "location_name": "Town Square",
        "location_description": "Cobbles and pigeons.",
        "location_options": [
            {"location_link_id": 1, "name": "The dark alley", "destination_location_id": 2},
            {"location_link_id": 2, "name": "The tavern door", "description": "Warm and loud."},
        ],
    }
    data.update(overrides)
    return data


def _inventory_template(code: str | None = None) -> dict:
    return {
        "code": code or codes.mint(),
        "turn_number": 1,
        "deadline": "2026-11-01T12:00:00+00:00",
        "character_name": "Ada",
        "current_location_name": "Town Square",
        "health": 90,
        "inventory_capacity": 2,
        "current_inventory": [
            {"item_instance_id": 10, "item_name": "Rusty Sword", "can_equip": True, "equipment_slot": "weapon"},
            {"item_instance_id": 11, "item_name": "Lantern", "is_equipped": True, "can_equip": True},
        ],
        "location_items": [{"item_instance_id": 12, "item_name": "Bread"}],
    }


class TestLocationChoiceGenerator:
    """Tests for the location choice sheet."""

    def test_renders_pdf(self):
        artifact = LocationChoiceGenerator().generate(_location_template())
        assert artifact.startswith(b"%PDF")

    def test_code_recoverable_from_artifact(self):
        """The printed code label can be recognised straight from the PDF text."""
        code = codes.mint()
        artifact = LocationChoiceGenerator().generate(_location_template(code))
        assert codes.recognise(artifact.decode("latin-1")) == code

    def test_artifact_prints_form_line_and_options(self):
        text = LocationChoiceGenerator().generate(_location_template()).decode("latin-1")
        assert "Form: LOCATION CHOICE" in text
        assert "The dark alley" in text
        assert "The tavern door" in text

    def test_identical_input_identical_digest(self):
        template = _location_template()
        generator = LocationChoiceGenerator()
        assert digest(generator.generate(template)) == digest(generator.generate(dict(template)))

    def test_different_code_different_digest(self):
        generator = LocationChoiceGenerator()
        first = generator.generate(_location_template())
        second = generator.generate(_location_template())
        assert digest(first) != digest(second)

    @pytest.mark.parametrize("field", ["code", "turn_number", "deadline"])
    def test_missing_required_field(self, field):
        template = _location_template()
        del template[field]
        with pytest.raises(InvalidTemplate) as excinfo:
            LocationChoiceGenerator().generate(template)
        assert field in str(excinfo.value)

    def test_invalid_code_is_invalid_template(self):
        with pytest.raises(InvalidTemplate):
            LocationChoiceGenerator().generate(_location_template(code="NOTACODE"))

    def test_optional_fields_may_be_absent(self):
        template = {
            "code": codes.mint(),
            "turn_number": 0,
            "deadline": "2026-11-01T12:00:00Z",
        }
        assert LocationChoiceGenerator().generate(template).startswith(b"%PDF")

    def test_missing_background_image_is_skipped(self, tmp_path):
        template = _location_template(background_image=str(tmp_path / "missing.png"))
        assert LocationChoiceGenerator().generate(template).startswith(b"%PDF")

    def test_drawing_error_is_render_failed(self, monkeypatch):
        generator = LocationChoiceGenerator()

        def explode(writer, data):
            raise OSError("disk on fire")

        monkeypatch.setattr(generator, "draw_body", explode)
        with pytest.raises(RenderFailed):
            generator.generate(_location_template())

    def test_long_option_list_spans_pages(self):
        options = [{"location_link_id": i, "name": f"Path number {i}"} for i in range(120)]
        code = codes.mint()
        artifact = LocationChoiceGenerator().generate(_location_template(code, location_options=options))
        text = artifact.decode("latin-1")
        # Header label plus one footer per page
        assert text.count(f"Code: {code}") >= 4
        assert "Path number 119" in text


class TestInventoryManagementGenerator:
    """Tests for the inventory management sheet."""

    def test_prints_sections(self):
        text = InventoryManagementGenerator().generate(_inventory_template()).decode("latin-1")
        assert "Form: INVENTORY MANAGEMENT" in text
        for header in ("PICK UP", "DROP", "EQUIP", "UNEQUIP"):
            assert header in text
        assert "Bread" in text
        assert "Rusty Sword" in text

    def test_code_round_trip(self):
        code = codes.mint()
        artifact = InventoryManagementGenerator().generate(_inventory_template(code))
        assert codes.recognise(artifact.decode("latin-1")) == code

    def test_character_name_required(self):
        template = _inventory_template()
        del template["character_name"]
        with pytest.raises(InvalidTemplate, match="character_name"):
            InventoryManagementGenerator().generate(template)
