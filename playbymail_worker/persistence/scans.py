"""Scan image (ingest record) persistence helpers."""

from __future__ import annotations

import hashlib
from typing import Any

from sqlalchemy.orm import Session

from ..db.turn_sheets import ScanImage, ScanImageStatus
from ..errors import PipelineError
from ..logging import logger


def store_scan(
    session: Session,
    image_bytes: bytes,
    source_metadata: dict[str, Any] | None = None,
    sheet_type_hint: str | None = None,
) -> ScanImage:
    """Persist the raw image before anything else touches it."""
    scan = ScanImage(
        image_data=image_bytes,
        image_digest=hashlib.sha256(image_bytes).hexdigest(),
        source_metadata=dict(source_metadata or {}),
        sheet_type_hint=sheet_type_hint,
        status=ScanImageStatus.pending.value,
    )
    session.add(scan)
    session.flush()
    logger.info("scan_image_stored", scan_image_id=scan.id, digest=scan.image_digest, size=len(image_bytes))
    return scan


def record_scan_error(scan: ScanImage, error: PipelineError, code: str | None = None) -> bool:
    """Mark the scan failed. A bound scan is never downgraded; returns whether it was marked."""
    if scan.status == ScanImageStatus.bound.value:
        return False
    scan.status = ScanImageStatus.failed.value
    scan.error_kind = error.kind
    scan.error_message = str(error)[:2000]
    if code:
        scan.code = code
    return True


def record_scan_bound(scan: ScanImage, turn_sheet_id: int, code: str) -> None:
    scan.status = ScanImageStatus.bound.value
    scan.turn_sheet_id = turn_sheet_id
    scan.code = code
    scan.error_kind = None
    scan.error_message = None
