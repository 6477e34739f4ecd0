"""Runner interface for external LLM command-line tools."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import NamedTuple, Protocol


class ToolOutput(NamedTuple):
    """Captured output streams of one tool invocation."""

    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        return f"{self.stdout}{self.stderr}"


@dataclass(slots=True)
class ToolRunRequest:
    """Fully resolved command line for one invocation."""

    tool: str
    argv: Sequence[str]
    stdin_text: str | None = None
    timeout_seconds: float | None = None


class ToolRunner(Protocol):
    """Protocol implemented by tool runners."""

    def run(self, request: ToolRunRequest) -> ToolOutput:
        """Run one invocation to completion and return its output."""
