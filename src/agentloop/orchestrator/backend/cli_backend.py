"""Subprocess-based runner for CLI agents."""

from __future__ import annotations

import logging
import os
import subprocess

from agentloop.orchestrator.backend.base import ToolOutput, ToolRunRequest

logger = logging.getLogger(__name__)


class ToolInvocationError(RuntimeError):
    """Tool execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliToolRunner:
    """Spawn the tool, feed the prompt and collect both streams to completion.

    The child runs in its own session so a terminal interrupt reaches only
    the orchestrator, which then lets the in-flight turn finish.
    """

    def __init__(self, *, env: dict[str, str] | None = None) -> None:
        self._env = env

    def run(self, request: ToolRunRequest) -> ToolOutput:
        argv = list(request.argv)
        if not argv:
            raise ToolInvocationError(f"{request.tool}: empty command line.", transient=False)

        env = os.environ.copy()
        if self._env:
            env.update(self._env)

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as error:
            raise ToolInvocationError(
                f"Failed to spawn {request.tool} process. Is {argv[0]} installed?",
                transient=False,
            ) from error
        except OSError as error:
            raise ToolInvocationError(
                f"{request.tool} failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout, stderr = process.communicate(
                input=request.stdin_text if request.stdin_text is not None else "",
                timeout=request.timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            _terminate_process(process)
            raise ToolInvocationError(
                f"{request.tool} timed out after {request.timeout_seconds}s",
                transient=True,
            ) from error

        if process.returncode != 0 and not stdout.strip() and not stderr.strip():
            raise ToolInvocationError(
                f"{request.tool} exited with code {process.returncode} and no output",
                transient=True,
            )
        if process.returncode != 0:
            logger.debug("%s exited with code %s", request.tool, process.returncode)
        return ToolOutput(stdout=stdout, stderr=stderr)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
