"""Checklist parsing, scanning and lease-based checkout for ``AGENTS.md`` files."""

from agentloop.checklist.lease import (
    ItemValidationError,
    LockTimeoutError,
    checkout,
    restore_item,
    restore_leases,
)
from agentloop.checklist.models import (
    ChecklistError,
    CheckoutFilters,
    CheckoutResult,
    MarkerType,
    WorkItem,
)
from agentloop.checklist.scanner import ScanResult, has_incomplete_items, scan_all_checklists

__all__ = [
    "ChecklistError",
    "CheckoutFilters",
    "CheckoutResult",
    "ItemValidationError",
    "LockTimeoutError",
    "MarkerType",
    "ScanResult",
    "WorkItem",
    "checkout",
    "has_incomplete_items",
    "restore_item",
    "restore_leases",
    "scan_all_checklists",
]
