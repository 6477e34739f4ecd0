"""Parallel worker phases and the verifier spiral around them.

A phase launches one thread per worker, staggered by the warmup delay, each
with its own tool chain, transcript and (optionally) leased checklist items.
The calling thread supervises until the workers settle. When verification
is enabled, a verifier call follows each phase and may start another one.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agentloop.checklist.lease import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    LockTimeoutError,
    checkout,
    restore_item,
)
from agentloop.checklist.models import ChecklistError, CheckoutFilters, WorkItem
from agentloop.checklist.scanner import has_incomplete_items
from agentloop.orchestrator.backend.base import ToolRunner
from agentloop.orchestrator.backend.cli_backend import ToolInvocationError
from agentloop.orchestrator.coordinator import StopCoordinator, WorkerOutcome, WorkerResult
from agentloop.orchestrator.fallback import (
    DEFAULT_RATE_LIMIT_TIMEOUT_SECONDS,
    ToolChain,
    ToolsExhaustedError,
)
from agentloop.orchestrator.tools import ToolOverrides
from agentloop.orchestrator.transcript import Echo, NullTranscript, Transcript, open_transcript
from agentloop.orchestrator.verifier import VerifierConfig, VerifierResult, run_verifier
from agentloop.orchestrator.worker import RunConfig, WorkerLoop

logger = logging.getLogger(__name__)

STOP_SETTLE_TIMEOUT_SECONDS = 300.0
SHUTDOWN_SETTLE_TIMEOUT_SECONDS = 60.0
POLL_INTERVAL_SECONDS = 0.1


@dataclass(slots=True)
class ParallelConfig:
    """Everything one ``agentloop run`` needs beyond the shared run config."""

    run_config: RunConfig
    tools: str = "gemini,codex,claude"
    tool_overrides: ToolOverrides = field(default_factory=ToolOverrides)
    rate_limit_timeout_seconds: float = DEFAULT_RATE_LIMIT_TIMEOUT_SECONDS
    instances: int = 1
    warmup_delay_seconds: float = 30.0
    lease_enabled: bool = True
    base_path: Path = Path(".")
    items_per_instance: int = 1
    filters: CheckoutFilters = field(default_factory=CheckoutFilters)
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    lease_attempts: int = 3
    log_file: Path | None = None
    verify_enabled: bool = False
    verifier_prompt: Path | None = None
    commit_verifier: bool = False
    spiral_enabled: bool = False
    max_spirals: int = 5


@dataclass(slots=True)
class PhaseSummary:
    """Outcome of one worker phase."""

    results: dict[int, WorkerResult] = field(default_factory=dict)
    launched: int = 0
    skipped: bool = False

    @property
    def stop_confirmed(self) -> bool:
        return any(r.outcome == WorkerOutcome.STOP_CONFIRMED for r in self.results.values())


@dataclass(slots=True)
class RunSummary:
    phases: list[PhaseSummary] = field(default_factory=list)
    verifier_results: list[VerifierResult] = field(default_factory=list)
    spirals: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def failed_workers(self) -> int:
        return sum(
            1 for phase in self.phases for result in phase.results.values() if result.is_error
        )


@dataclass(slots=True)
class _WorkerSlot:
    worker_id: int
    items: list[WorkItem]
    transcript: Transcript
    thread: threading.Thread | None = None
    result: WorkerResult | None = None


class ParallelOrchestrator:
    """Runs worker phases and the verifier spiral for one invocation."""

    def __init__(  # noqa: PLR0913
        self,
        config: ParallelConfig,
        *,
        runner: ToolRunner | None = None,
        echo: Echo | None = None,
        stop_settle_timeout: float = STOP_SETTLE_TIMEOUT_SECONDS,
        shutdown_settle_timeout: float = SHUTDOWN_SETTLE_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._runner = runner
        self._echo = echo
        self._stop_settle_timeout = stop_settle_timeout
        self._shutdown_settle_timeout = shutdown_settle_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._lease_refused = False
        self.summary = RunSummary()

    @property
    def shutdown(self) -> threading.Event:
        return self.config.run_config.shutdown

    def _announce(self, text: str) -> None:
        logger.info(text)
        if self._echo is not None:
            self._echo(text)

    def _error(self, text: str) -> None:
        logger.error(text)
        self.summary.errors.append(text)
        if self._echo is not None:
            self._echo(text)

    def build_chain(self, transcript: Transcript) -> ToolChain:
        return ToolChain.from_names(
            self.config.tools,
            overrides=self.config.tool_overrides,
            runner=self._runner,
            rate_limit_timeout_seconds=self.config.rate_limit_timeout_seconds,
            transcript=transcript,
        )

    def run(self) -> RunSummary:
        """Worker phase, then verifier, repeated while the verifier finds work."""

        while True:
            if self.shutdown.is_set():
                self._announce("Shutdown requested. Exiting spiral loop.")
                break
            if self.summary.spirals > 0:
                self._announce(f"=== Spiral iteration {self.summary.spirals} ===")

            self.summary.phases.append(self._run_phase_if_needed())

            if self.shutdown.is_set():
                self._announce("Shutdown requested after worker phase. Exiting.")
                break
            if not self.config.verify_enabled or self.summary.errors:
                break

            verifier_result = self._run_verifier()
            if verifier_result is None:
                break
            self.summary.verifier_results.append(verifier_result)
            if not verifier_result.found_work:
                self._announce("Verifier confirmed: no new work found. Project complete.")
                break

            self.summary.spirals += 1
            self._announce(
                f"Verifier found {verifier_result.new_items} new work items "
                f"(spiral {self.summary.spirals})",
            )
            if not self.config.spiral_enabled:
                self._announce("Spiral mode disabled. Exiting after verification.")
                break
            if self.summary.spirals >= self.config.max_spirals:
                self._announce(f"Reached maximum spirals ({self.config.max_spirals}). Exiting.")
                break
            self._announce(f"Restarting workers for spiral iteration {self.summary.spirals + 1}...")
        return self.summary

    def _run_phase_if_needed(self) -> PhaseSummary:
        try:
            if not has_incomplete_items(self.config.base_path):
                self._announce("Scanner: No incomplete items found before worker phase.")
                return PhaseSummary(skipped=True)
        except OSError as error:
            logger.warning("Scanner error: %s. Running workers anyway.", error)
        return self.run_workers_phase()

    def _run_verifier(self) -> VerifierResult | None:
        self._announce("=== Starting verification phase ===")
        transcript: Transcript = NullTranscript()
        try:
            transcript = open_transcript(self.config.log_file, "verifier", echo=self._echo)
            return run_verifier(
                VerifierConfig(
                    checklist_dir=self.config.base_path,
                    prompt_path=self.config.verifier_prompt,
                    completion_token=self.config.run_config.completion_token,
                    commit=self.config.commit_verifier,
                ),
                self.build_chain(transcript),
                transcript=transcript,
            )
        except (ToolsExhaustedError, ToolInvocationError, OSError) as error:
            self._error(f"Verifier error: {error}. Exiting.")
            return None
        finally:
            transcript.close()

    def _stop_launching(self, coordinator: StopCoordinator) -> bool:
        return coordinator.should_stop() or self.shutdown.is_set()

    def _wait_warmup(self, coordinator: StopCoordinator, worker_id: int) -> bool:
        """Sleep the stagger delay. Returns ``False`` if the launch was aborted."""

        delay = self.config.warmup_delay_seconds
        self._announce(f"Waiting {delay:g}s before launching instance {worker_id}...")
        deadline = time.monotonic() + delay
        while time.monotonic() < deadline:
            if self._stop_launching(coordinator):
                self._announce(f"Stop signaled during warmup, not launching instance {worker_id}")
                return False
            self._sleep(min(self._poll_interval, max(deadline - time.monotonic(), 0.0)))
        return not self._stop_launching(coordinator)

    def lease_items(self, worker_id: int) -> list[WorkItem]:
        """Lease items for one worker. Lock timeouts are retried, then leasing stops."""

        for attempt in range(1, self.config.lease_attempts + 1):
            try:
                result = checkout(
                    self.config.base_path,
                    self.config.items_per_instance,
                    self.config.filters,
                    worker_id,
                    timeout=self.config.lock_timeout_seconds,
                )
            except LockTimeoutError as error:
                logger.warning(
                    "Checkout for instance %s timed out (attempt %s/%s): %s",
                    worker_id,
                    attempt,
                    self.config.lease_attempts,
                    error,
                )
                continue
            except (ChecklistError, OSError) as error:
                self._announce(
                    f"Warning: Failed to checkout work items for instance {worker_id}: {error}",
                )
                return []
            if result.items:
                self._announce(f"Instance {worker_id} checked out {len(result.items)} work item(s)")
            return result.items

        self._lease_refused = True
        self._error(
            f"Could not acquire the checklist lock for instance {worker_id} "
            f"after {self.config.lease_attempts} attempts; leasing disabled.",
        )
        return []

    def run_workers_phase(self) -> PhaseSummary:
        instances = self.config.instances
        coordinator = StopCoordinator(instances)
        phase = PhaseSummary()
        slots: list[_WorkerSlot] = []

        self._announce(
            f"Starting {instances} parallel LLM instances with "
            f"{self.config.warmup_delay_seconds:g}s warmup delay",
        )
        for worker_id in range(instances):
            if worker_id > 0 and self.config.warmup_delay_seconds > 0:
                if not self._wait_warmup(coordinator, worker_id):
                    break
            if self._stop_launching(coordinator):
                self._announce(f"Stop signaled before launching instance {worker_id}")
                break

            items: list[WorkItem] = []
            if self.config.lease_enabled and not self._lease_refused:
                items = self.lease_items(worker_id)
            try:
                slot = self._launch(worker_id, items, coordinator)
            except OSError as error:
                slot = self._failed_launch(worker_id, items, coordinator, error)
            else:
                self._announce(f"Launched instance {worker_id}")
            slots.append(slot)

        for worker_id in range(len(slots), instances):
            coordinator.mark_completed(worker_id, WorkerResult.shutdown())
        phase.launched = len(slots)

        self._supervise(coordinator)

        for slot in slots:
            if slot.thread is not None:
                slot.thread.join()
            result = slot.result or WorkerResult.error("worker thread exited without a result")
            phase.results[slot.worker_id] = result
            if result.is_error:
                self._announce(f"Instance {slot.worker_id} error: {result.message}")
            else:
                self._announce(f"Instance {slot.worker_id} completed: {result.describe()}")
        return phase

    def _launch(
        self,
        worker_id: int,
        items: list[WorkItem],
        coordinator: StopCoordinator,
    ) -> _WorkerSlot:
        transcript = open_transcript(self.config.log_file, worker_id, echo=self._echo)
        slot = _WorkerSlot(worker_id=worker_id, items=items, transcript=transcript)
        loop = WorkerLoop(
            self.config.run_config,
            self.build_chain(transcript),
            worker_id=worker_id,
            coordinator=coordinator,
            work_items=items,
            transcript=transcript,
        )
        slot.thread = threading.Thread(
            target=self._worker_main,
            args=(slot, loop, coordinator),
            name=f"agentloop-worker-{worker_id}",
            daemon=True,
        )
        slot.thread.start()
        return slot

    def _failed_launch(
        self,
        worker_id: int,
        items: list[WorkItem],
        coordinator: StopCoordinator,
        error: OSError,
    ) -> _WorkerSlot:
        result = WorkerResult.error(f"failed to start: {error}")
        slot = _WorkerSlot(worker_id=worker_id, items=items, transcript=NullTranscript(), result=result)
        logger.error("Instance %s failed to start: %s", worker_id, error)
        self._restore(slot)
        coordinator.mark_completed(worker_id, result)
        return slot

    def _worker_main(
        self,
        slot: _WorkerSlot,
        loop: WorkerLoop,
        coordinator: StopCoordinator,
    ) -> None:
        result = WorkerResult.error("worker exited unexpectedly")
        try:
            result = loop.run()
        except ToolsExhaustedError as error:
            result = WorkerResult.error(str(error))
            self._error(f"Instance {slot.worker_id}: {error}")
        except Exception as error:  # noqa: BLE001
            logger.exception("Instance %s failed", slot.worker_id)
            result = WorkerResult.error(str(error))
        finally:
            if result.is_error:
                self._restore(slot)
            slot.result = result
            coordinator.mark_completed(slot.worker_id, result)
            slot.transcript.close()

    def _restore(self, slot: _WorkerSlot) -> None:
        for item in slot.items:
            try:
                restore_item(
                    item,
                    lock_dir=self.config.base_path,
                    timeout=self.config.lock_timeout_seconds,
                )
            except (ChecklistError, OSError) as error:
                logger.warning(
                    "Failed to restore work item for instance %s: %s",
                    slot.worker_id,
                    error,
                )

    def _supervise(self, coordinator: StopCoordinator) -> None:
        while True:
            if coordinator.should_stop():
                self._announce(
                    "Stop confirmed. Waiting for all instances to finish current iteration...",
                )
                coordinator.wait_for_all_complete(self._stop_settle_timeout)
                return
            if self.shutdown.is_set():
                self._announce("Shutdown requested. Waiting for instances to finish...")
                coordinator.wait_for_all_complete(self._shutdown_settle_timeout)
                return
            if coordinator.all_completed():
                return
            coordinator.wait_for_change(self._poll_interval)
