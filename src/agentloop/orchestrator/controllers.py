"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from agentloop.checklist.lease import checkout, restore_leases
from agentloop.checklist.models import CheckoutFilters
from agentloop.checklist.scanner import scan_all_checklists
from agentloop.config import Settings
from agentloop.orchestrator.backend.base import ToolRunner
from agentloop.orchestrator.parallel import ParallelConfig, ParallelOrchestrator, RunSummary
from agentloop.orchestrator.transcript import Echo
from agentloop.orchestrator.worker import RunConfig, RunMode

logger = logging.getLogger(__name__)

FORCE_EXIT_WINDOW_SECONDS = 5.0


@dataclass(slots=True)
class RunCommand:
    """CLI input for ``agentloop run``. ``None`` keeps the configured value."""

    checklist: Path
    config_path: Path | None = None
    tools: str | None = None
    mode: str | None = None
    worker_prompt: str | None = None
    controller_prompt: str | None = None
    completion_token: str | None = None
    sleep_seconds: float | None = None
    log_file: Path | None = None
    instances: int | None = None
    warmup_delay: float | None = None
    no_lease: bool = False
    base_path: Path | None = None
    items_per_instance: int | None = None
    verify: bool | None = None
    verifier_prompt: Path | None = None
    spiral: bool | None = None
    max_spirals: int | None = None
    commit_verifier: bool | None = None
    models: dict[str, str | None] = field(default_factory=dict)


@dataclass(slots=True)
class ScanCommand:
    base_path: Path


@dataclass(slots=True)
class CheckoutCommand:
    base_path: Path
    count: int
    filters: CheckoutFilters
    worker_id: int = 0


@dataclass(slots=True)
class RestoreCommand:
    base_path: Path
    lease_ids: tuple[str, ...]


@dataclass(slots=True)
class RunResult:
    lines: list[str]
    success: bool
    summary: RunSummary


def apply_run_overrides(settings: Settings, command: RunCommand) -> Settings:
    """Layer explicit CLI options over env and file settings."""

    if command.tools is not None:
        settings.tools.names = command.tools
    settings.tools.models.update({k: v for k, v in command.models.items() if v})
    loop = settings.loop
    if command.mode is not None:
        loop.mode = command.mode.strip().lower()
    if command.worker_prompt is not None:
        loop.worker_prompt = command.worker_prompt
    if command.controller_prompt is not None:
        loop.controller_prompt = command.controller_prompt
    if command.completion_token is not None:
        loop.completion_token = command.completion_token
    if command.sleep_seconds is not None:
        loop.sleep_seconds = command.sleep_seconds
    if command.log_file is not None:
        loop.log_file = command.log_file
    parallel = settings.parallel
    if command.instances is not None:
        parallel.instances = command.instances
    if command.warmup_delay is not None:
        parallel.warmup_delay_seconds = command.warmup_delay
    if command.no_lease:
        parallel.lease_enabled = False
    if command.base_path is not None:
        parallel.base_path = command.base_path
    if command.items_per_instance is not None:
        parallel.items_per_instance = command.items_per_instance
    verifier = settings.verifier
    if command.verify is not None:
        verifier.enabled = command.verify
    if command.verifier_prompt is not None:
        verifier.prompt_path = command.verifier_prompt
    if command.spiral is not None:
        verifier.spiral = command.spiral
    if command.max_spirals is not None:
        verifier.max_spirals = command.max_spirals
    if command.commit_verifier is not None:
        verifier.commit = command.commit_verifier
    return settings


def build_parallel_config(settings: Settings, checklist: Path, shutdown: threading.Event) -> ParallelConfig:
    return ParallelConfig(
        run_config=RunConfig(
            checklist=checklist,
            worker_prompt=settings.loop.worker_prompt,
            controller_prompt=settings.loop.controller_prompt,
            completion_token=settings.loop.completion_token,
            sleep_seconds=settings.loop.sleep_seconds,
            mode=RunMode(settings.loop.mode),
            shutdown=shutdown,
        ),
        tools=settings.tools.names,
        tool_overrides=settings.tools.overrides(),
        rate_limit_timeout_seconds=settings.tools.rate_limit_timeout_seconds,
        instances=settings.parallel.instances,
        warmup_delay_seconds=settings.parallel.warmup_delay_seconds,
        lease_enabled=settings.parallel.lease_enabled,
        base_path=settings.parallel.base_path,
        items_per_instance=settings.parallel.items_per_instance,
        lock_timeout_seconds=settings.parallel.lock_timeout_seconds,
        lease_attempts=settings.parallel.lease_attempts,
        log_file=settings.loop.log_file,
        verify_enabled=settings.verifier.enabled,
        verifier_prompt=settings.verifier.prompt_path,
        commit_verifier=settings.verifier.commit,
        spiral_enabled=settings.verifier.spiral,
        max_spirals=settings.verifier.max_spirals,
    )


class LoopCliController:
    """Coordinates run, scan, checkout and restore CLI operations."""

    def __init__(
        self,
        *,
        runner: ToolRunner | None = None,
        echo: Echo | None = None,
        force_exit: Callable[[int], None] = os._exit,
    ) -> None:
        self._runner = runner
        self._echo = echo
        self._force_exit = force_exit
        self.shutdown = threading.Event()
        self._last_interrupt: float | None = None

    def run(self, command: RunCommand) -> RunResult:
        settings = apply_run_overrides(Settings.from_env(command.config_path), command)
        settings.validate()
        if not command.checklist.exists():
            raise ValueError(f"Checklist not found: {command.checklist}")

        orchestrator = ParallelOrchestrator(
            build_parallel_config(settings, command.checklist, self.shutdown),
            runner=self._runner,
            echo=self._echo,
        )
        with self._signal_handlers():
            summary = orchestrator.run()

        lines = [
            "Run summary: "
            f"phases={len(summary.phases)} spirals={summary.spirals} "
            f"errors={len(summary.errors)}",
        ]
        for index, phase in enumerate(summary.phases):
            if phase.skipped:
                lines.append(f"Phase {index}: skipped (no incomplete items)")
                continue
            outcomes = " ".join(
                f"{worker_id}={result.describe()}" for worker_id, result in sorted(phase.results.items())
            )
            lines.append(f"Phase {index}: launched={phase.launched} {outcomes}".rstrip())
        if summary.failed_workers:
            lines.append(f"Warning: {summary.failed_workers} instance(s) ended with errors")
        lines.extend(f"Error: {error}" for error in summary.errors)
        return RunResult(lines=lines, success=not summary.failed, summary=summary)

    def scan(self, command: ScanCommand) -> list[str]:
        result = scan_all_checklists(command.base_path)
        lines = [result.summary()]
        if result.root_checklist is not None:
            lines.append(f"Root checklist: {result.root_checklist}")
        for path in sorted(result.incomplete_by_file):
            lines.append(f"{path}:")
            lines.extend(
                f"  {item.line}: {item.marker} {item.content}" for item in result.incomplete_by_file[path]
            )
        return lines

    def checkout(self, command: CheckoutCommand) -> list[str]:
        result = checkout(command.base_path, command.count, command.filters, command.worker_id)
        if not result.items:
            return ["No matching work items available."]
        lines = [f"Checked out {len(result.items)} work item(s):"]
        for item in result.items:
            lines.append(f"[ip:{item.lease_id}] {item.content} ({item.location})")
            lines.extend(f"  {sub}" for sub in item.sub_items)
        return lines

    def restore(self, command: RestoreCommand) -> list[str]:
        restored = restore_leases(command.base_path, command.lease_ids)
        lines: list[str] = []
        for lease_id in sorted(restored):
            items = restored[lease_id]
            if not items:
                lines.append(f"{lease_id}: not found")
                continue
            lines.extend(f"{lease_id}: restored {item.content} ({item.location})" for item in items)
        return lines

    def handle_interrupt(self, now: float | None = None) -> None:
        """First interrupt finishes the current turn; a second within 5s exits."""

        now = time.monotonic() if now is None else now
        if self._last_interrupt is not None and now - self._last_interrupt < FORCE_EXIT_WINDOW_SECONDS:
            self._notify("\nInterrupted again. Force exiting.")
            self._force_exit(130)
            return
        self._last_interrupt = now
        self.shutdown.set()
        self._notify(
            "\nInterrupted. Finishing current turn... "
            "(Press Ctrl+C again within 5s to force exit)",
        )

    def _notify(self, text: str) -> None:
        if self._echo is not None:
            self._echo(text)
        else:
            print(text, file=sys.stderr)  # noqa: T201

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s", signal.Signals(signum).name)
            self.handle_interrupt()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
