"""Parser for ``AGENTS.md`` checklist files.

Parsing is split into a line matcher (item, sub-item, fence toggle) and a
small state machine that tracks the current item, its indentation and
whether a fenced code block is open inside its sub-item block.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from agentloop.checklist.models import WorkItem

CHECKLIST_FILE_NAME = "AGENTS.md"
FENCE = "```"

CHECKLIST_PATTERN = re.compile(
    r"^(\s*)-\s*\[([ ~xV]|ip(?::[a-f0-9]+)?|BLOCKED(?::[^\]]*)?)\]\s*(.*)$",
)
SUB_ITEM_PATTERN = re.compile(r"^(\s+)-\s+(.*)$")


@dataclass(slots=True, frozen=True)
class ItemMatch:
    """Recognized checklist item line."""

    indent: int
    marker: str
    content: str


def match_item(line: str) -> ItemMatch | None:
    match = CHECKLIST_PATTERN.match(line)
    if match is None:
        return None
    return ItemMatch(
        indent=len(match.group(1)),
        marker=f"[{match.group(2)}]",
        content=match.group(3),
    )


def match_sub_item(line: str) -> int | None:
    """Return the indentation of a dash sub-item line."""

    match = SUB_ITEM_PATTERN.match(line)
    if match is None:
        return None
    return len(match.group(1))


def toggles_fence(line: str) -> bool:
    return FENCE in line


def _leading_whitespace(line: str) -> int:
    return len(line) - len(line.lstrip())


@dataclass(slots=True)
class _ParserState:
    path: Path
    items: list[WorkItem] = field(default_factory=list)
    current: WorkItem | None = None
    current_indent: int = 0
    fence_lines: int = 0
    pending_blank: list[str] = field(default_factory=list)

    @property
    def in_fence(self) -> bool:
        return self.fence_lines % 2 == 1

    def start_item(self, match: ItemMatch, line_no: int) -> None:
        self.finish_item()
        self.current = WorkItem(
            file=self.path,
            line=line_no,
            marker=match.marker,
            content=match.content,
        )
        self.current_indent = match.indent

    def append(self, line: str) -> None:
        if self.current is None:
            return
        if self.pending_blank:
            self.current.sub_items.extend(self.pending_blank)
            self.pending_blank.clear()
        self.current.sub_items.append(line)
        if toggles_fence(line):
            self.fence_lines += 1

    def finish_item(self) -> None:
        if self.current is not None:
            self.items.append(self.current)
        self.current = None
        self.current_indent = 0
        self.fence_lines = 0
        self.pending_blank.clear()

    def feed(self, line: str, line_no: int) -> None:
        if self.current is not None and self.in_fence:
            self.append(line)
            return

        item = match_item(line)
        if item is not None:
            self.start_item(item, line_no)
            return

        if self.current is None:
            return

        sub_indent = match_sub_item(line)
        if sub_indent is not None and sub_indent > self.current_indent:
            self.append(line)
            return

        stripped = line.strip()
        if stripped and _leading_whitespace(line) >= self.current_indent + 2:
            self.append(line)
            return

        if not stripped:
            # Kept only if more indented content follows.
            self.pending_blank.append(line)
            return

        self.pending_blank.clear()
        if not line.startswith((" ", "\t")):
            self.finish_item()


def find_checklist_files(base_path: Path, *, file_name: str = CHECKLIST_FILE_NAME) -> list[Path]:
    """Find every checklist file under ``base_path``, following symlinks."""

    files: list[Path] = []
    visited: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(base_path, followlinks=True):
        real = os.path.realpath(dirpath)
        if real in visited:
            dirnames[:] = []
            continue
        visited.add(real)
        dirnames.sort()
        if file_name in filenames and os.path.isfile(os.path.join(dirpath, file_name)):
            files.append(Path(dirpath) / file_name)
    return files


def parse_lines(path: Path, lines: list[str]) -> list[WorkItem]:
    state = _ParserState(path=path)
    for index, line in enumerate(lines, start=1):
        state.feed(line, index)
    state.finish_item()
    return state.items


def parse_file(path: Path) -> list[WorkItem]:
    """Parse one checklist file into work items, in file order."""

    return parse_lines(path, path.read_text("utf-8").splitlines())


def parse_all(base_path: Path) -> list[WorkItem]:
    items: list[WorkItem] = []
    for path in find_checklist_files(base_path):
        items.extend(parse_file(path))
    return items
