"""Deterministic completion detection across every checklist under a directory."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from agentloop.checklist.models import MarkerType, WorkItem
from agentloop.checklist.parser import CHECKLIST_FILE_NAME, find_checklist_files, parse_file

PARTIAL_MARKER = "[~]"


@dataclass(slots=True, frozen=True)
class IncompleteItem:
    line: int
    marker: str
    content: str

    @classmethod
    def from_item(cls, item: WorkItem) -> IncompleteItem:
        return cls(line=item.line, marker=item.marker, content=item.content)


@dataclass(slots=True)
class ScanResult:
    """Checklist files found under a base path and their incomplete items.

    The root checklist sits directly in the base path and usually holds the
    architecture guide; component checklists live in subdirectories.
    """

    root_checklist: Path | None = None
    component_checklists: list[Path] = field(default_factory=list)
    total_incomplete: int = 0
    incomplete_by_file: dict[Path, list[IncompleteItem]] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.total_incomplete == 0

    @property
    def total_files(self) -> int:
        return (1 if self.root_checklist is not None else 0) + len(self.component_checklists)

    def summary(self) -> str:
        if self.is_complete:
            return f"All checklists complete ({self.total_files} files scanned)"
        return (
            f"{self.total_incomplete} incomplete items across "
            f"{len(self.incomplete_by_file)} files ({self.total_files} files scanned)"
        )


def is_incomplete_marker(marker: str) -> bool:
    """Scanner completeness policy: only ``[x]`` and ``[V]`` count as done."""

    if marker == PARTIAL_MARKER:
        return True
    return MarkerType.from_marker(marker) in {
        MarkerType.INCOMPLETE,
        MarkerType.IN_PROGRESS,
        MarkerType.BLOCKED,
    }


def scan_all_checklists(base_path: Path) -> ScanResult:
    files = find_checklist_files(base_path)
    root_path = base_path / CHECKLIST_FILE_NAME

    result = ScanResult()
    for path in files:
        if path == root_path:
            result.root_checklist = path
        else:
            result.component_checklists.append(path)
    result.component_checklists.sort()

    for path in files:
        incomplete = [
            IncompleteItem.from_item(item)
            for item in parse_file(path)
            if is_incomplete_marker(item.marker)
        ]
        if incomplete:
            result.total_incomplete += len(incomplete)
            result.incomplete_by_file[path] = incomplete
    return result


def has_incomplete_items(base_path: Path) -> bool:
    for path in find_checklist_files(base_path):
        if any(is_incomplete_marker(item.marker) for item in parse_file(path)):
            return True
    return False
