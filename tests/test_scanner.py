"""Tests for turn sheet scanners and choice extraction."""

from __future__ import annotations

import pytest

from playbymail_worker.errors import ChoiceExtractionFailed, CodeNotRecognised, OCRFailed
from playbymail_worker.turn_sheets import codes
from playbymail_worker.turn_sheets.inventory_management import InventoryManagementScanner
from playbymail_worker.turn_sheets.location_choice import LocationChoiceScanner
from playbymail_worker.turn_sheets.ocr import CachedOCR
from playbymail_worker.turn_sheets.scanner import FormMismatch, marked_labels, normalise_label

from conftest import StubOCR, scan_text


def _inventory_text(code: str, body: str) -> bytes:
    return f"Inventory Management\nForm: INVENTORY MANAGEMENT\nTurn Sheet Code: {code}\n{body}".encode()


class TestMarkedLabels:
    """Tests for the printed choice grammar."""

    @pytest.mark.parametrize(
        "line",
        ["[X] Lantern", "[x] Lantern", "[✓] Lantern", "[✔] Lantern", "[ X ] Lantern", "(X) Lantern", "☒ Lantern", "☑ Lantern"],
    )
    def test_marked_forms(self, line):
        assert marked_labels([line]) == ["Lantern"]

    @pytest.mark.parametrize("line", ["[ ] Lantern", "[] Lantern", "Lantern", "( ) Lantern"])
    def test_unmarked_forms(self, line):
        assert marked_labels([line]) == []

    def test_whitespace_collapsed(self):
        assert marked_labels(["  [X]   The   dark  alley  "]) == ["The dark alley"]

    def test_normalise_label(self):
        assert normalise_label("  The  Dark\tAlley ") == "the dark alley"


class TestLocationChoiceScanner:
    """Tests for the location choice scanner."""

    def test_extracts_single_choice(self):
        code = codes.mint()
        result = LocationChoiceScanner(StubOCR()).scan(scan_text(code, {"The dark alley"}))
        assert result.code == code
        assert result.sheet_type == "location_choice"
        assert result.choices == {"a": ["The dark alley"]}

    def test_no_mark_fails(self):
        with pytest.raises(ChoiceExtractionFailed, match="no destination"):
            LocationChoiceScanner(StubOCR()).scan(scan_text(codes.mint(), set()))

    def test_two_marks_fail(self):
        with pytest.raises(ChoiceExtractionFailed, match="2 destinations"):
            LocationChoiceScanner(StubOCR()).scan(
                scan_text(codes.mint(), {"The dark alley", "The tavern door"})
            )

    def test_no_code(self):
        with pytest.raises(CodeNotRecognised):
            LocationChoiceScanner(StubOCR()).scan(b"Form: LOCATION CHOICE\n[X] The dark alley")

    def test_empty_text(self):
        with pytest.raises(OCRFailed):
            LocationChoiceScanner(StubOCR()).scan(b"   \n ")

    def test_empty_image(self):
        with pytest.raises(OCRFailed):
            LocationChoiceScanner(StubOCR()).scan(b"")

    def test_other_form_is_form_mismatch(self):
        code = codes.mint()
        with pytest.raises(FormMismatch) as excinfo:
            LocationChoiceScanner(StubOCR()).scan(_inventory_text(code, "DROP\n[X] Lantern"))
        assert excinfo.value.context["code"] == code
        assert isinstance(excinfo.value, ChoiceExtractionFailed)

    def test_bad_checksum_is_bad_code(self):
        from playbymail_worker.errors import BadCode

        with pytest.raises(BadCode):
            LocationChoiceScanner(StubOCR()).scan(
                b"Form: LOCATION CHOICE\nTurn Sheet Code: AAAAAA-AAAAAA\n[X] The dark alley"
            )

    def test_misread_code_falls_back_to_later_copy(self):
        code = codes.mint()
        text = (
            "Form: LOCATION CHOICE\nTurn Sheet Code: AAAAAA-AAAAAA\n"
            f"[X] The dark alley\n[ ] The tavern door\nCode: {code}"
        ).encode()

        result = LocationChoiceScanner(StubOCR()).scan(text)

        assert result.code == code
        assert result.choices == {"a": ["The dark alley"]}


class TestInventoryManagementScanner:
    """Tests for the inventory management scanner."""

    def test_sections_map_to_slots(self):
        body = "\n".join(
            [
                "PICK UP",
                "[X] Bread",
                "[ ] Rope",
                "DROP",
                "[ ] Rusty Sword",
                "[x] Old Boot",
                "EQUIP",
                "[✓] Rusty Sword",
                "UNEQUIP",
                "[ ] Lantern",
            ]
        )
        result = InventoryManagementScanner(StubOCR()).scan(_inventory_text(codes.mint(), body))
        assert result.choices == {
            "pick_up": ["Bread"],
            "drop": ["Old Boot"],
            "equip": ["Rusty Sword"],
            "unequip": [],
        }

    def test_headers_tolerate_case_and_colon(self):
        body = "pick up:\n[X] Bread\nPickUp\n[X] Rope"
        result = InventoryManagementScanner(StubOCR()).scan(_inventory_text(codes.mint(), body))
        assert result.choices["pick_up"] == ["Bread", "Rope"]

    def test_marks_before_first_header_ignored(self):
        body = "[X] Stray mark\nDROP\n[X] Lantern"
        result = InventoryManagementScanner(StubOCR()).scan(_inventory_text(codes.mint(), body))
        assert result.choices["drop"] == ["Lantern"]
        assert result.choices["pick_up"] == []

    def test_empty_well_formed_sheet(self):
        body = "PICK UP\n(nothing)\nDROP\n[ ] Lantern\nEQUIP\nUNEQUIP"
        result = InventoryManagementScanner(StubOCR()).scan(_inventory_text(codes.mint(), body))
        assert result.choices == {"pick_up": [], "drop": [], "equip": [], "unequip": []}

    def test_no_sections_fails(self):
        with pytest.raises(ChoiceExtractionFailed, match="no inventory sections"):
            InventoryManagementScanner(StubOCR()).scan(_inventory_text(codes.mint(), "[X] Lantern"))


class TestCachedOCR:
    """Tests for sharing one OCR pass between scanners."""

    def test_same_image_runs_ocr_once(self):
        backend = StubOCR()
        ocr = CachedOCR(backend)
        image = scan_text(codes.mint(), {"The dark alley"})
        for scanner in (InventoryManagementScanner(ocr), LocationChoiceScanner(ocr)):
            try:
                scanner.scan(image)
            except FormMismatch:
                pass
        assert backend.calls == 1

    def test_new_image_runs_ocr_again(self):
        backend = StubOCR()
        ocr = CachedOCR(backend)
        ocr.extract_text(b"one")
        ocr.extract_text(b"two")
        ocr.extract_text(b"two")
        assert backend.calls == 2
