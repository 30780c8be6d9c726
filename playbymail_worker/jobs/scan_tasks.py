"""Scan intake tasks."""

from __future__ import annotations

from celery import shared_task

from ..errors import TransportTimeout
from ..services import intake
from .queue import dispatch
from .turn_tasks import TRANSIENT_ERRORS


@shared_task(
    name="ingest_scan",
    autoretry_for=(TransportTimeout, *TRANSIENT_ERRORS),
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def ingest_scan(scan_image_id: int) -> dict:
    """OCR a stored scan and bind its choices to the sheet with the printed code."""
    result = intake.ingest_scan(scan_image_id)
    dispatch(result.jobs)
    return result.as_dict()


@shared_task(
    name="reconcile_scan",
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def reconcile_scan(scan_image_id: int, code: str, scanned_data: dict) -> dict:
    """Bind operator-corrected choices for a scan that failed automatic intake."""
    result = intake.reconcile_scan(scan_image_id, code, scanned_data)
    dispatch(result.jobs)
    return result.as_dict()
