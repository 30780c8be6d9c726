"""Scan intake.

A returned sheet arrives as an image. The raw bytes are persisted first,
then a job runs OCR, recovers the printed code, extracts the marked
choices and binds them to the sheet carrying that code. Failures that a
retry cannot fix are recorded on the ingest record for an operator, who can
correct the code and choices by hand through ``reconcile_scan``.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from ..db import get_session
from ..db.games import GameInstance
from ..db.turn_sheets import ScanImage, ScanImageStatus, TurnSheet
from ..errors import (
    SCAN_ERRORS,
    ChoiceExtractionFailed,
    InstanceHalted,
    PipelineError,
    SheetNotFound,
    StaleState,
)
from ..jobs.queue import Job, StepResult
from ..logging import logger
from ..models.schemas import ScanResult
from ..persistence import games as games_store
from ..persistence import scans as scans_store
from ..persistence import turn_sheets as store
from ..persistence.rls import apply_session_scope, privileged_lookup, worker_scope
from ..turn_sheets import codes
from ..turn_sheets.registry import ProcessorRegistry, get_registry
from ..turn_sheets.scanner import FormMismatch


def submit_scan(
    image_bytes: bytes,
    source_metadata: dict[str, Any] | None = None,
    sheet_type_hint: str | None = None,
) -> StepResult:
    """Persist an inbound scan and queue its ingestion."""
    with get_session() as session:
        scan = scans_store.store_scan(session, image_bytes, source_metadata, sheet_type_hint)
        scan_id = scan.id
    return StepResult("stored", jobs=[Job.ingest_scan(scan_id)], detail={"scan_image_id": scan_id})


def _run_scanners(image_bytes: bytes, hint: str | None, registry: ProcessorRegistry) -> ScanResult:
    """Try each sheet type's scanner, hinted type first. Only a form mismatch moves on."""
    mismatch: FormMismatch | None = None
    for scanner in registry.scanners(hint):
        try:
            return scanner.scan(image_bytes)
        except FormMismatch as exc:
            mismatch = exc
            continue
    raise ChoiceExtractionFailed(
        "no scanner recognised the sheet form",
        **(mismatch.context if mismatch else {}),
    )


def _bind(session, scan: ScanImage, code: str, choices: dict[str, list[str]], sheet_type: str | None) -> TurnSheet:
    """Privileged code lookup, then a scoped bind of the scanned choices."""
    with privileged_lookup(session):
        located = session.scalar(select(TurnSheet.game_instance_id).where(TurnSheet.code == code))
    if located is None:
        raise SheetNotFound(f"no sheet for code {code}", code=code)
    instance = session.get(GameInstance, located)
    if games_store.is_halted(instance):
        raise InstanceHalted(f"game instance {instance.id} is {instance.state}", code=code)
    scope = worker_scope(session, located)
    apply_session_scope(session, scope)

    sheet = store.find_by_code(session, scope, code)
    if sheet is None:
        raise SheetNotFound(f"no sheet for code {code}", code=code)
    if sheet_type is not None and sheet.sheet_type != sheet_type:
        raise ChoiceExtractionFailed(
            f"scan read as {sheet_type} but code belongs to a {sheet.sheet_type} sheet",
            code=code,
        )
    sheet = store.bind_scan(session, scope, code, choices)
    scans_store.record_scan_bound(scan, sheet.id, code)
    return sheet


def _record_error(
    scan_image_id: int, error: PipelineError, code: str | None = None, event: str = "scan_ingest_failed"
) -> StepResult:
    with get_session() as session:
        scan = session.get(ScanImage, scan_image_id, with_for_update=True)
        recorded = scans_store.record_scan_error(scan, error, code)
    if not recorded:
        logger.info("scan_error_not_recorded", scan_image_id=scan_image_id, error_kind=error.kind)
        return StepResult("skipped", detail={"reason": "scan_bound"})
    logger.warning(
        event,
        scan_image_id=scan_image_id,
        error_kind=error.kind,
        code=code,
        error=str(error),
    )
    return StepResult("failed", detail={"scan_image_id": scan_image_id, "error_kind": error.kind})


def ingest_scan(scan_image_id: int, registry: ProcessorRegistry | None = None) -> StepResult:
    """OCR one stored scan and bind its choices to the matching sheet.

    ``TransportTimeout`` from a remote OCR backend propagates so the job is
    retried; every other scan error is final for this image. A redelivered
    job that finds the scan already handled exits without touching it.
    """
    registry = registry or get_registry()
    with get_session() as session:
        scan = session.get(ScanImage, scan_image_id)
        if scan is None:
            return StepResult("not_found")
        if scan.status != ScanImageStatus.pending.value:
            return StepResult("skipped", detail={"reason": f"scan_{scan.status}"})
        image_bytes = scan.image_data
        hint = scan.sheet_type_hint

    # OCR runs outside any transaction
    try:
        result = _run_scanners(image_bytes, hint, registry)
    except SCAN_ERRORS as exc:
        return _record_error(scan_image_id, exc, exc.context.get("code"))

    try:
        with get_session() as session:
            scan = session.get(ScanImage, scan_image_id, with_for_update=True, populate_existing=True)
            if scan.status != ScanImageStatus.pending.value:
                logger.info("scan_ingest_superseded", scan_image_id=scan_image_id, status=scan.status)
                return StepResult("skipped", detail={"reason": f"scan_{scan.status}"})
            sheet = _bind(session, scan, result.code, result.choices, result.sheet_type)
            instance_id, turn_number, sheet_id = sheet.game_instance_id, sheet.turn_number, sheet.id
    except (*SCAN_ERRORS, StaleState) as exc:
        return _record_error(scan_image_id, exc, result.code)

    logger.info(
        "scan_bound",
        scan_image_id=scan_image_id,
        sheet_id=sheet_id,
        code=result.code,
        sheet_type=result.sheet_type,
    )
    return StepResult(
        "bound",
        jobs=[Job.resolve(instance_id, turn_number)],
        detail={"scan_image_id": scan_image_id, "sheet_id": sheet_id},
    )


def _operator_choices(scanned_data: Any) -> dict[str, list[str]]:
    """Operator-entered choices: a non-empty mapping of slot to a list of labels."""
    if not isinstance(scanned_data, dict) or not scanned_data:
        raise ChoiceExtractionFailed("reconciled choices are empty")
    for slot, labels in scanned_data.items():
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise ChoiceExtractionFailed(f"choice slot {slot!r} must be a list of labels", slot=slot)
    return {slot: list(labels) for slot, labels in scanned_data.items()}


def reconcile_scan(scan_image_id: int, code: str, scanned_data: dict[str, list[str]]) -> StepResult:
    """Bind operator-corrected choices for a scan that failed automatic intake.

    Malformed input is recorded on the ingest record like any intake failure.
    """
    with get_session() as session:
        scan = session.get(ScanImage, scan_image_id)
        if scan is None:
            return StepResult("not_found")
        if scan.status == ScanImageStatus.bound.value:
            return StepResult("skipped", detail={"reason": "scan_bound"})

    parsed: str | None = None
    try:
        parsed = codes.parse(str(code).strip().upper()).value
        choices = _operator_choices(scanned_data)
        with get_session() as session:
            scan = session.get(ScanImage, scan_image_id, with_for_update=True, populate_existing=True)
            if scan.status == ScanImageStatus.bound.value:
                return StepResult("skipped", detail={"reason": "scan_bound"})
            sheet = _bind(session, scan, parsed, choices, None)
            instance_id, turn_number, sheet_id = sheet.game_instance_id, sheet.turn_number, sheet.id
    except (*SCAN_ERRORS, StaleState) as exc:
        return _record_error(scan_image_id, exc, parsed, event="scan_reconcile_failed")

    logger.info("scan_reconciled", scan_image_id=scan_image_id, sheet_id=sheet_id, code=parsed)
    return StepResult(
        "bound",
        jobs=[Job.resolve(instance_id, turn_number)],
        detail={"scan_image_id": scan_image_id, "sheet_id": sheet_id},
    )
