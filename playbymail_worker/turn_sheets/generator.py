"""PDF rendering shared by every turn sheet type.

Sheets are drawn with reportlab in invariant mode and without page
compression, so identical template data yields byte-identical output and
the printed code stays recoverable from the PDF text stream. The code is
printed as a labelled line in the header, repeated in the footer, and
encoded as a Code 128 barcode.
"""

from __future__ import annotations

import hashlib
import io
from pathlib import Path
from typing import Any, ClassVar

from pydantic import ValidationError
from reportlab.graphics.barcode import code128
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from ..errors import InvalidTemplate, PipelineError, RenderFailed
from ..logging import logger
from ..models.schemas import TurnSheetTemplate
from ..utils.datetime_utils import ensure_utc

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 18 * mm
BODY_FONT = "Helvetica"
BOLD_FONT = "Helvetica-Bold"
EMPTY_BOX = "[ ]"


def digest(artifact: bytes) -> str:
    """SHA-256 hex digest of a rendered artifact."""
    return hashlib.sha256(artifact).hexdigest()


class _PageWriter:
    """Top-down line writer that starts a new page when the body runs out."""

    def __init__(self, pdf: canvas.Canvas, footer) -> None:
        self.pdf = pdf
        self.footer = footer
        self.y = PAGE_HEIGHT - MARGIN

    def _ensure_room(self, height: float) -> None:
        if self.y - height < MARGIN + 30 * mm:
            self.footer(self.pdf)
            self.pdf.showPage()
            self.y = PAGE_HEIGHT - MARGIN

    def line(self, text: str, font: str = BODY_FONT, size: float = 11, indent: float = 0) -> None:
        self._ensure_room(size * 1.5)
        self.pdf.setFont(font, size)
        self.pdf.drawString(MARGIN + indent, self.y - size, text)
        self.y -= size * 1.5

    def paragraph(self, text: str, size: float = 10, indent: float = 0) -> None:
        width = PAGE_WIDTH - 2 * MARGIN - indent
        for chunk in simpleSplit(text, BODY_FONT, size, width):
            self.line(chunk, size=size, indent=indent)

    def gap(self, height: float = 4 * mm) -> None:
        self.y -= height


class TurnSheetGenerator:
    """Renders one sheet type to PDF bytes.

    Subclasses set ``sheet_type``, ``form_name`` and ``template_model`` and
    draw their choices in ``draw_body``.
    """

    sheet_type: ClassVar[str] = ""
    form_name: ClassVar[str] = ""
    template_model: ClassVar[type[TurnSheetTemplate]] = TurnSheetTemplate
    default_title: ClassVar[str] = "Turn Sheet"
    default_instructions: ClassVar[str] = "Mark your choices and return this sheet by the deadline."

    def validate(self, template_data: dict[str, Any]) -> TurnSheetTemplate:
        try:
            return self.template_model.model_validate(template_data)
        except ValidationError as exc:
            missing = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise InvalidTemplate(
                f"invalid {self.sheet_type} template data: {', '.join(missing)}",
                fields=missing,
            ) from exc

    def generate(self, template_data: dict[str, Any]) -> bytes:
        data = self.validate(template_data)
        try:
            buffer = io.BytesIO()
            pdf = canvas.Canvas(buffer, pagesize=A4, invariant=1, pageCompression=0)
            pdf.setTitle(f"{data.game_name or 'Turn sheet'} turn {data.turn_number}")
            pdf.setAuthor("playbymail")

            def footer(page: canvas.Canvas) -> None:
                self._draw_footer(page, data)

            self._draw_background(pdf, data)
            writer = _PageWriter(pdf, footer)
            self._draw_header(writer, data)
            self.draw_body(writer, data)
            footer(pdf)
            pdf.showPage()
            pdf.save()
        except PipelineError:
            raise
        except Exception as exc:
            logger.warning(
                "turn_sheet_render_failed",
                sheet_type=self.sheet_type,
                code=data.code,
                error=str(exc),
            )
            raise RenderFailed(f"failed to render {self.sheet_type}: {exc}") from exc
        return buffer.getvalue()

    def draw_body(self, writer: _PageWriter, data: TurnSheetTemplate) -> None:
        raise NotImplementedError

    def _draw_background(self, pdf: canvas.Canvas, data: TurnSheetTemplate) -> None:
        if not data.background_image:
            return
        path = Path(data.background_image)
        if not path.is_file():
            logger.warning("turn_sheet_background_missing", path=str(path), code=data.code)
            return
        pdf.drawImage(
            str(path), 0, 0, width=PAGE_WIDTH, height=PAGE_HEIGHT,
            preserveAspectRatio=True, mask="auto",
        )

    def _draw_header(self, writer: _PageWriter, data: TurnSheetTemplate) -> None:
        deadline = ensure_utc(data.deadline)
        writer.line(data.game_name or "Play by Mail", font=BOLD_FONT, size=18)
        writer.line(data.title or self.default_title, font=BOLD_FONT, size=14)
        writer.line(f"Form: {self.form_name}", size=9)
        writer.line(f"Turn {data.turn_number}", size=11)
        if data.account_name:
            writer.line(f"Player: {data.account_name}", size=11)
        writer.line(f"Deadline: {deadline:%Y-%m-%d %H:%M} UTC", size=11)
        writer.line(f"Turn Sheet Code: {data.code}", font=BOLD_FONT, size=12)
        writer.gap()
        writer.paragraph(data.instructions or self.default_instructions)
        writer.gap()

    def _draw_footer(self, pdf: canvas.Canvas, data: TurnSheetTemplate) -> None:
        barcode = code128.Code128(data.code, barHeight=10 * mm, barWidth=0.35 * mm)
        barcode.drawOn(pdf, MARGIN, MARGIN + 6 * mm)
        pdf.setFont(BOLD_FONT, 11)
        pdf.drawString(MARGIN, MARGIN, f"Code: {data.code}")
