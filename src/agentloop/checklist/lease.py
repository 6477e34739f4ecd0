"""Leasing checklist items to workers under a cross-process file lock.

Every mutation of checklist files happens while holding an exclusive
``flock`` on ``<base>/.gimme.lock`` and is persisted with a temp-file plus
rename, so readers in other processes never observe a half-written file.
Threads inside one process take the same lock: each acquisition opens its
own file description, and ``flock`` treats those as independent holders.
"""

from __future__ import annotations

import fcntl
import logging
import os
import random
import re
import shutil
import tempfile
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from agentloop.checklist.models import (
    ChecklistError,
    CheckoutFilters,
    CheckoutResult,
    WorkItem,
    extract_lease_id,
    generate_lease_id,
    lease_marker,
)
from agentloop.checklist.parser import parse_all
from agentloop.checklist.selector import select

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".gimme.lock"
DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_RETRY_SECONDS = 0.05
RESTORED_MARKER = "[ ]"

LEASE_MARKER_PATTERN = re.compile(
    r"^(\s*-\s*)\[([ xV]|ip(?::[a-f0-9]+)?|BLOCKED(?::[^\]]*)?)\](.*)$",
)
_LEASE_IN_TEXT_PATTERN = re.compile(r"\[ip:([a-f0-9]+)\]")


class LockTimeoutError(ChecklistError):
    """The checklist lock stayed busy past the timeout. Safe to retry."""


class ItemValidationError(ChecklistError):
    """A selected item no longer matches the file; the batch was not leased."""


@contextmanager
def acquire_lock(
    base_path: Path,
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    retry_interval: float = DEFAULT_LOCK_RETRY_SECONDS,
) -> Iterator[Path]:
    """Hold the exclusive checklist lock for the duration of the block."""

    lock_path = base_path / LOCK_FILE_NAME
    fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        started = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                elapsed = time.monotonic() - started
                if elapsed >= timeout:
                    raise LockTimeoutError(
                        f"Timeout acquiring checklist lock {lock_path} after {elapsed:.2f}s",
                    ) from None
                time.sleep(min(retry_interval, max(timeout - elapsed, 0.0)))
        logger.debug("Acquired checklist lock %s", lock_path)
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released checklist lock %s", lock_path)
    finally:
        os.close(fd)


def read_lines(path: Path) -> list[str]:
    """Read a file as lines with their original line endings kept."""

    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read().splitlines(keepends=True)


def atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` via a temp file in the same directory."""

    directory = path.parent
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        newline="",
        dir=directory,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    tmp_path = Path(handle.name)
    try:
        with handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def replace_marker_with_lease(line: str, lease_id: str) -> str:
    """Swap only the bracketed marker of ``line`` for ``[ip:<lease_id>]``.

    Lines that do not carry a recognized marker come back unchanged.
    """

    body = line.rstrip("\r\n")
    ending = line[len(body) :]
    match = LEASE_MARKER_PATTERN.match(body)
    if match is None:
        return line
    return f"{match.group(1)}{lease_marker(lease_id)}{match.group(3)}{ending}"


def _group_by_file(items: Iterable[WorkItem]) -> dict[Path, list[WorkItem]]:
    grouped: dict[Path, list[WorkItem]] = {}
    for item in items:
        grouped.setdefault(item.file, []).append(item)
    return grouped


def validate_items(items: Iterable[WorkItem]) -> None:
    """Check every item is still at its line with its recorded marker."""

    for path, file_items in _group_by_file(items).items():
        lines = read_lines(path)
        for item in file_items:
            if item.line < 1 or item.line > len(lines):
                raise ItemValidationError(
                    f"Item at line {item.line} no longer exists in {path} "
                    f"(file has {len(lines)} lines)",
                )
            line = lines[item.line - 1]
            if item.marker not in line:
                raise ItemValidationError(
                    f"Item at line {item.line} in {path} has changed: "
                    f"expected marker {item.marker}, got: {line.rstrip()}",
                )


def _existing_lease_ids(paths: Iterable[Path]) -> set[str]:
    ids: set[str] = set()
    for path in paths:
        ids.update(_LEASE_IN_TEXT_PATTERN.findall(path.read_text("utf-8")))
    return ids


def _unique_lease_id(worker_id: int, taken: set[str]) -> str:
    lease_id = generate_lease_id(worker_id)
    while lease_id in taken:
        # A 16-bit id derived from the clock repeats within one batch and can
        # match an earlier lease still in the file; step until it is free.
        lease_id = f"{(int(lease_id, 16) + 1) & 0xFFFF:04x}"
    taken.add(lease_id)
    return lease_id


def mark_in_progress(items: list[WorkItem], worker_id: int) -> list[Path]:
    """Assign lease ids to ``items`` and rewrite their markers on disk.

    Must be called with the checklist lock held. Returns the rewritten files.
    """

    grouped = _group_by_file(items)
    taken = _existing_lease_ids(grouped)
    for item in items:
        item.lease_id = _unique_lease_id(worker_id, taken)

    modified: list[Path] = []
    for path, file_items in grouped.items():
        lines = read_lines(path)
        for item in file_items:
            lines[item.line - 1] = replace_marker_with_lease(
                lines[item.line - 1],
                item.lease_id or "",
            )
        atomic_write(path, "".join(lines))
        modified.append(path)
    return modified


def lease_items(items: list[WorkItem], worker_id: int) -> list[Path]:
    """Validate then mark a selected batch. Validation failure leaves files untouched."""

    validate_items(items)
    return mark_in_progress(items, worker_id)


def checkout(
    base_path: Path,
    count: int,
    filters: CheckoutFilters,
    worker_id: int,
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    retry_interval: float = DEFAULT_LOCK_RETRY_SECONDS,
    rng: random.Random | None = None,
) -> CheckoutResult:
    """Lease up to ``count`` items for ``worker_id``.

    Raises:
        LockTimeoutError: the lock could not be taken within ``timeout``.
        ItemValidationError: a selected item changed before it could be marked.
    """

    with acquire_lock(base_path, timeout=timeout, retry_interval=retry_interval):
        selected = select(parse_all(base_path), count, filters, rng=rng)
        if not selected:
            return CheckoutResult()
        modified = lease_items(selected, worker_id)

    for item in selected:
        logger.info("Worker %s leased %s as %s", worker_id, item.location, item.lease_id)
    return CheckoutResult(items=selected, modified_files=modified)


def _restore_unlocked(item: WorkItem) -> bool:
    if item.lease_id is None:
        logger.warning("Cannot restore item without lease id: %s", item.content)
        return False
    marker = lease_marker(item.lease_id)
    content = "".join(read_lines(item.file))
    if marker not in content:
        logger.warning(
            "Lease %s not found in %s, item may have been completed",
            item.lease_id,
            item.file,
        )
        return False
    atomic_write(item.file, content.replace(marker, RESTORED_MARKER))
    logger.info("Restored lease %s in %s", item.lease_id, item.file)
    return True


def restore_item(
    item: WorkItem,
    *,
    lock_dir: Path | None = None,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
) -> bool:
    """Put a leased item back to ``[ ]``.

    Returns ``False`` when the lease text is gone (already completed or
    restored). With ``lock_dir`` the rewrite happens under the checklist lock.
    """

    if lock_dir is None:
        return _restore_unlocked(item)
    with acquire_lock(lock_dir, timeout=timeout):
        return _restore_unlocked(item)


def restore_leases(
    base_path: Path,
    lease_ids: Iterable[str],
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
) -> dict[str, list[WorkItem]]:
    """Restore leases by id across every checklist under ``base_path``.

    Returns the restored items per requested id; ids with no match map to an
    empty list.
    """

    wanted = {lease_id.lower() for lease_id in lease_ids}
    restored: dict[str, list[WorkItem]] = {lease_id: [] for lease_id in wanted}
    with acquire_lock(base_path, timeout=timeout):
        for item in parse_all(base_path):
            lease_id = extract_lease_id(item.marker)
            if lease_id is None or lease_id not in wanted:
                continue
            item.lease_id = lease_id
            if _restore_unlocked(item):
                restored[lease_id].append(item)
    return restored
