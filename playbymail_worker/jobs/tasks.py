"""Celery tasks for the turn sheet pipeline.

This module re-exports all tasks from specialized modules for Celery discovery:
- turn_tasks: Turn opening, resolution, deadline sweep, lifecycle commands
- sheet_tasks: Sheet rendering and delivery
- scan_tasks: Scan intake and operator reconciliation
"""

from __future__ import annotations

# Re-export all tasks for Celery discovery
from .turn_tasks import (
    cancel_instance,
    check_turn_deadlines,
    open_turn,
    resolve_turn,
    withdraw_subscription,
)
from .sheet_tasks import (
    deliver_turn_sheet,
    emit_turn_sheet,
)
from .scan_tasks import (
    ingest_scan,
    reconcile_scan,
)

__all__ = [
    "open_turn",
    "resolve_turn",
    "check_turn_deadlines",
    "withdraw_subscription",
    "cancel_instance",
    "emit_turn_sheet",
    "deliver_turn_sheet",
    "ingest_scan",
    "reconcile_scan",
]
