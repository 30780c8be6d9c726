"""Scanning returned turn sheets.

Every scanner runs OCR, recovers the printed code, confirms the sheet's
form line, then hands the text to its sheet type's choice extractor.

Choices are printed as ``[ ] <label>`` lines. A player marks one by writing
in the box; OCR renders that as ``[X]``, ``[x]``, ``[✓]``, ``[✔]``, ``(X)``,
``☒`` or ``☑``.
"""

from __future__ import annotations

import re
from typing import ClassVar

from ..errors import ChoiceExtractionFailed, CodeNotRecognised, OCRFailed
from ..logging import logger
from ..models.schemas import ScanResult
from .codes import is_valid, labelled_codes, parse
from .ocr import OCRBackend

_MARKED_LINE_RE = re.compile(
    r"^\s*(?:\[\s*[xX✓✔✗]\s*\]|\(\s*[xX✓✔]\s*\)|[☒☑])\s*(?P<label>\S.*?)\s*$"
)
_WHITESPACE_RE = re.compile(r"\s+")


class FormMismatch(ChoiceExtractionFailed):
    """The image carries a code but not this scanner's form line."""


def normalise_label(label: str) -> str:
    """Collapse whitespace and casefold a printed option label for matching."""
    return _WHITESPACE_RE.sub(" ", label).strip().casefold()


def marked_labels(lines: list[str]) -> list[str]:
    """Labels of every marked option line, whitespace collapsed, in print order."""
    labels = []
    for line in lines:
        match = _MARKED_LINE_RE.match(line)
        if match:
            labels.append(_WHITESPACE_RE.sub(" ", match.group("label")).strip())
    return labels


def _first_valid_code(found: list[str]) -> str:
    """The sheet prints its code several times; the first copy OCR read intact wins."""
    for raw_code in found:
        if is_valid(raw_code):
            return raw_code
    return parse(found[0]).value


class TurnSheetScanner:
    """Base scanner: OCR, code recovery and form check."""

    sheet_type: ClassVar[str] = ""
    form_name: ClassVar[str] = ""

    def __init__(self, ocr: OCRBackend) -> None:
        self.ocr = ocr
        self._form_re = re.compile(
            r"form\s*:\s*" + r"\s+".join(re.escape(w) for w in self.form_name.split()),
            re.IGNORECASE,
        )

    def scan(self, image_bytes: bytes) -> ScanResult:
        if not image_bytes:
            raise OCRFailed("empty image data")
        text = self.ocr.extract_text(image_bytes)
        if not text or not text.strip():
            raise OCRFailed("scanner produced no text")

        found = labelled_codes(text)
        if not found:
            raise CodeNotRecognised("no turn sheet code found in scan")
        code = _first_valid_code(found)

        if not self._form_re.search(text):
            raise FormMismatch(f"not a {self.sheet_type} sheet", code=code)

        try:
            choices = self.extract_choices(text.splitlines())
        except ChoiceExtractionFailed as exc:
            exc.context.setdefault("code", code)
            raise
        logger.debug("turn_sheet_scanned", sheet_type=self.sheet_type, code=code, choices=choices)
        return ScanResult(code=code, sheet_type=self.sheet_type, choices=choices, ocr_text=text)

    def extract_choices(self, lines: list[str]) -> dict[str, list[str]]:
        raise NotImplementedError
