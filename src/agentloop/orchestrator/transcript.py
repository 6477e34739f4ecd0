"""Per-worker transcript sinks for tool output and loop status lines."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TextIO

logger = logging.getLogger(__name__)

Echo = Callable[[str], None]


class Transcript(Protocol):
    """Sink threaded through every loop and chain call."""

    def message(self, text: str) -> None:
        """Record one status line."""

    def output(self, text: str) -> None:
        """Record raw tool output as produced."""

    def close(self) -> None:
        """Flush and release resources."""


class NullTranscript:
    """Transcript that drops everything."""

    def message(self, text: str) -> None:
        return None

    def output(self, text: str) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryTranscript:
    """Transcript that keeps lines in memory."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def message(self, text: str) -> None:
        self.lines.append(text)

    def output(self, text: str) -> None:
        self.lines.append(text)

    def close(self) -> None:
        return None


class FileTranscript:
    """Append-only transcript file, optionally echoed to the console."""

    def __init__(self, path: Path, *, echo: Echo | None = None, prefix: str = "") -> None:
        self.path = path
        self._echo = echo
        self._prefix = prefix
        self._lock = threading.Lock()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._handle: TextIO | None = path.open("a", encoding="utf-8")

    def _write(self, text: str) -> None:
        with self._lock:
            if self._handle is None:
                return
            self._handle.write(text)
            self._handle.flush()

    def message(self, text: str) -> None:
        self._write(f"{text}\n")
        if self._echo is not None:
            self._echo(f"{self._prefix}{text}")

    def output(self, text: str) -> None:
        self._write(text)
        if self._echo is not None and text:
            self._echo(f"{self._prefix}{text.rstrip()}")

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
                self._handle = None


def worker_transcript_path(log_file: Path, suffix: str | int) -> Path:
    """``agentloop.log`` -> ``agentloop.log.3`` / ``agentloop.log.verifier``."""

    return log_file.with_name(f"{log_file.name}.{suffix}")


def open_transcript(
    log_file: Path | None,
    suffix: str | int,
    *,
    echo: Echo | None = None,
) -> Transcript:
    if log_file is None:
        return NullTranscript()
    path = worker_transcript_path(log_file, suffix)
    prefix = f"[worker {suffix}] " if isinstance(suffix, int) else f"[{suffix}] "
    logger.debug("Transcript for %s at %s", suffix, path)
    return FileTranscript(path, echo=echo, prefix=prefix)
