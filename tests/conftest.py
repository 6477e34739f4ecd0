"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from agentloop.orchestrator.backend.base import ToolOutput, ToolRunRequest

ECHO_TOOL_COMMAND = f"{shlex.quote(sys.executable)} -m agentloop.orchestrator.backend.echo_tool"

Reply = "ToolOutput | Exception | Callable[[ToolRunRequest], ToolOutput]"


class FakeRunner:
    """Scripted tool runner. Replies are consumed per tool, then ``default`` repeats."""

    def __init__(
        self,
        replies: dict[str, list[Reply]] | None = None,
        *,
        default: Reply = ToolOutput("working on it\n", ""),
    ) -> None:
        self._replies = {name: list(items) for name, items in (replies or {}).items()}
        self._default = default
        self._lock = threading.Lock()
        self.requests: list[ToolRunRequest] = []

    def run(self, request: ToolRunRequest) -> ToolOutput:
        with self._lock:
            self.requests.append(request)
            queue = self._replies.get(request.tool)
            reply = queue.pop(0) if queue else self._default
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    @property
    def tools(self) -> list[str]:
        return [request.tool for request in self.requests]

    def prompt(self, index: int) -> str:
        request = self.requests[index]
        if request.stdin_text is not None:
            return request.stdin_text
        return request.argv[-1]


def write_checklist(directory: Path, text: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "AGENTS.md"
    path.write_text(text, "utf-8")
    return path


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    """Keep real ``AGENTLOOP_*`` variables and config files out of tests."""

    for name in list(os.environ):
        if name.startswith("AGENTLOOP_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
