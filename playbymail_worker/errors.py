"""Error kinds raised by the turn sheet pipeline.

Every kind carries a stable ``kind`` string (recorded on ingest records and
sheets) and whether the job queue should retry it.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message or self.kind)
        self.context = context


class BadCode(PipelineError):
    """Code failed character set, length, or checksum validation."""

    kind = "bad_code"


class CodeNotRecognised(PipelineError):
    """OCR text contained no labelled code."""

    kind = "code_not_recognised"


class OCRFailed(PipelineError):
    """OCR backend produced no text."""

    kind = "ocr_failed"


class ChoiceExtractionFailed(PipelineError):
    """Code found but the choice slots were empty or ambiguous."""

    kind = "choice_extraction_failed"


class InvalidTemplate(PipelineError):
    kind = "invalid_template"


class RenderFailed(PipelineError):
    kind = "render_failed"
    retryable = True


class DeliveryFailed(PipelineError):
    kind = "delivery_failed"
    retryable = True


class TransportTimeout(PipelineError):
    kind = "transport_timeout"
    retryable = True


class StaleState(PipelineError):
    """Compare-and-swap lost: the sheet is no longer in the expected state."""

    kind = "stale_state"

    def __init__(self, message: str = "", current_state: str | None = None, **context: object) -> None:
        super().__init__(message, **context)
        self.current_state = current_state


class DuplicateSheet(PipelineError):
    kind = "duplicate_sheet"


class DuplicateCode(PipelineError):
    kind = "duplicate_code"


class UnsupportedSheet(PipelineError):
    """No processor registered for the (game_type, sheet_type) pair."""

    kind = "unsupported_sheet"


class IllegalTransition(PipelineError):
    """Requested transition would move a sheet backwards or out of a terminal state."""

    kind = "illegal_transition"


class RLSViolation(PipelineError):
    """Read or write outside the caller's row-level-security scope."""

    kind = "rls_violation"


class SheetNotFound(PipelineError):
    kind = "sheet_not_found"


class ResolverFailed(PipelineError):
    """Scanned choices could not be applied to the game state."""

    kind = "resolver_failed"


class InstanceHalted(PipelineError):
    """The sheet's game instance was cancelled or has completed."""

    kind = "instance_halted"


# Recorded on the ingest record; the operator re-submits
SCAN_ERRORS = (
    BadCode,
    CodeNotRecognised,
    OCRFailed,
    ChoiceExtractionFailed,
    SheetNotFound,
    InstanceHalted,
)
