"""Domain models for checklist work items and leases."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

LEASE_ID_LENGTH = 4


class ChecklistError(Exception):
    """Base error for checklist checkout operations."""


class MarkerType(str, Enum):
    """Status tag derived from the bracketed marker of a checklist line."""

    INCOMPLETE = "incomplete"
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"

    @classmethod
    def from_marker(cls, marker: str) -> MarkerType:
        """Map exact marker text such as ``[ ]`` or ``[ip:a3f7]`` to its type."""

        if marker == "[ ]":
            return cls.INCOMPLETE
        if marker == "[x]":
            return cls.UNVERIFIED
        if marker == "[V]":
            return cls.VERIFIED
        if marker.startswith("[ip"):
            return cls.IN_PROGRESS
        if marker.startswith("[BLOCKED"):
            return cls.BLOCKED
        return cls.UNKNOWN


@dataclass(slots=True)
class CheckoutFilters:
    """Marker types eligible for selection."""

    incomplete: bool = True
    unverified: bool = False
    blocked: bool = False

    def allows(self, marker_type: MarkerType) -> bool:
        if marker_type == MarkerType.INCOMPLETE:
            return self.incomplete
        if marker_type == MarkerType.UNVERIFIED:
            return self.unverified
        if marker_type == MarkerType.BLOCKED:
            return self.blocked
        return False


@dataclass(slots=True)
class WorkItem:
    """One checklist entry as parsed from disk."""

    file: Path
    line: int
    marker: str
    content: str
    sub_items: list[str] = field(default_factory=list)
    lease_id: str | None = None

    @property
    def marker_type(self) -> MarkerType:
        return MarkerType.from_marker(self.marker)

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}"


@dataclass(slots=True)
class CheckoutResult:
    """Items leased by one checkout call and the files rewritten for it."""

    items: list[WorkItem] = field(default_factory=list)
    modified_files: list[Path] = field(default_factory=list)


def lease_marker(lease_id: str) -> str:
    return f"[ip:{lease_id}]"


def extract_lease_id(marker: str) -> str | None:
    """Return ``ID`` for ``[ip:ID]`` markers, ``None`` otherwise."""

    if marker.startswith("[ip:") and marker.endswith("]"):
        lease_id = marker[4:-1]
        if lease_id:
            return lease_id
    return None


def generate_lease_id(worker_id: int, *, now_ms: int | None = None) -> str:
    """Derive a 4-hex-char lease id from the millisecond clock and the worker index."""

    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    value = (now_ms & 0xFFFF) ^ (worker_id & 0xFFFF)
    return f"{value:0{LEASE_ID_LENGTH}x}"
