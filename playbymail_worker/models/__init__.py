"""Typed template data and scan results."""

from .schemas import (
    InventoryItem,
    InventoryManagementTemplate,
    LocationChoiceTemplate,
    LocationItem,
    LocationOption,
    ScanResult,
    TurnSheetTemplate,
)

__all__ = [
    "TurnSheetTemplate",
    "LocationOption",
    "LocationChoiceTemplate",
    "InventoryItem",
    "LocationItem",
    "InventoryManagementTemplate",
    "ScanResult",
]
