"""Loop body executed by each worker: prompt, invoke, detect the stop token."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from agentloop.checklist.models import WorkItem
from agentloop.orchestrator.backend.base import ToolOutput
from agentloop.orchestrator.backend.cli_backend import ToolInvocationError
from agentloop.orchestrator.coordinator import StopCoordinator, WorkerResult
from agentloop.orchestrator.fallback import ToolChain, ToolsExhaustedError
from agentloop.orchestrator.prompts import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_CONTROLLER_PROMPT,
    DEFAULT_WORKER_PROMPT,
    build_confirmation_prompt,
    build_intent_prompt,
    build_prompt,
    build_work_items_prompt,
    completion_detected,
    contains_token,
)
from agentloop.orchestrator.transcript import NullTranscript, Transcript

logger = logging.getLogger(__name__)

SLEEP_STEP_SECONDS = 0.1


class RunMode(str, Enum):
    WORKER = "worker"
    CONTROLLER = "controller"


@dataclass(slots=True)
class RunConfig:
    """Settings shared by every worker of one run."""

    checklist: Path
    worker_prompt: str = DEFAULT_WORKER_PROMPT
    controller_prompt: str = DEFAULT_CONTROLLER_PROMPT
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    sleep_seconds: float = 15.0
    mode: RunMode = RunMode.WORKER
    shutdown: threading.Event = field(default_factory=threading.Event)

    @property
    def checklist_ref(self) -> str:
        return str(self.checklist)


def stream_output(transcript: Transcript, label: str, output: ToolOutput) -> None:
    transcript.message(f"\n--- {label.upper()} OUTPUT ---")
    if output.stdout:
        transcript.output(output.stdout)
    if output.stderr:
        transcript.output(output.stderr)
    transcript.message(f"--- END {label.upper()} OUTPUT ---\n")


class WorkerLoop:
    """One worker's turn loop.

    Exits only between turns: on a confirmed stop token, on the shared stop
    flag set by another worker, or on the external shutdown flag. Errors from
    the tool chain propagate to the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        config: RunConfig,
        chain: ToolChain,
        *,
        worker_id: int = 0,
        coordinator: StopCoordinator | None = None,
        work_items: Sequence[WorkItem] = (),
        transcript: Transcript | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.chain = chain
        self.worker_id = worker_id
        self.coordinator = coordinator or StopCoordinator(worker_id + 1)
        self.work_items = list(work_items)
        self.transcript = transcript or NullTranscript()
        self._sleep = sleep
        self.invocations = 0

    def run(self) -> WorkerResult:
        if self.config.mode == RunMode.CONTROLLER:
            return self.run_controller_loop()
        return self.run_worker_loop()

    def _message(self, text: str) -> None:
        logger.debug("worker %s: %s", self.worker_id, text.strip())
        self.transcript.message(text)

    def _exit_reason(self) -> WorkerResult | None:
        if self.config.shutdown.is_set():
            self._message("Shutdown requested. Exiting loop.")
            return WorkerResult.shutdown()
        if self.coordinator.should_stop():
            self._message("Stop signaled by another worker. Exiting loop.")
            return WorkerResult.shutdown()
        return None

    def _invoke(self, prompt: str, label: str) -> str:
        self.invocations += 1
        output = self.chain.invoke(prompt)
        stream_output(self.transcript, label, output)
        return output.stdout

    def _sleep_between_turns(self) -> None:
        seconds = self.config.sleep_seconds
        self._message(f"Sleeping {seconds:g} seconds before next prompt...")
        deadline = time.monotonic() + seconds
        while not (self.config.shutdown.is_set() or self.coordinator.should_stop()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._sleep(min(SLEEP_STEP_SECONDS, remaining))

    def _worker_prompt(self) -> str:
        prompt = build_prompt(
            self.config.checklist_ref,
            self.config.worker_prompt,
            self.config.completion_token,
        )
        return build_work_items_prompt(self.work_items) + prompt

    def run_worker_loop(self) -> WorkerResult:
        token = self.config.completion_token
        iteration = 1
        last_stdout = ""
        saw_token = False

        while True:
            if (reason := self._exit_reason()) is not None:
                return reason
            self.coordinator.mark_iteration_start(self.worker_id)

            if saw_token:
                self._message(f"mode=worker iteration={iteration} turn=confirmation")
                prompt = build_confirmation_prompt(self.config.checklist_ref, token, last_stdout)
                stdout = self._invoke(prompt, "confirmation")
                if contains_token(stdout, token):
                    self._message("Stop token confirmed; exiting.")
                    self.coordinator.signal_stop(self.worker_id)
                    return WorkerResult.stop_confirmed()
                saw_token = False
                last_stdout = stdout
            else:
                self._message(f"mode=worker iteration={iteration} turn=normal")
                stdout = self._invoke(self._worker_prompt(), "worker")
                saw_token = contains_token(stdout, token)
                last_stdout = stdout
                iteration += 1

            self.coordinator.mark_iteration_complete(self.worker_id)
            if self.config.shutdown.is_set():
                continue
            self._sleep_between_turns()

    def run_controller_loop(self) -> WorkerResult:
        """Alternate controller and worker prompts until the controller stops the loop."""

        templates = (
            ("controller", self.config.controller_prompt),
            ("worker", self.config.worker_prompt),
        )
        iteration = 0
        while True:
            if (reason := self._exit_reason()) is not None:
                return reason
            self.coordinator.mark_iteration_start(self.worker_id)

            label, template = templates[iteration % len(templates)]
            prompt = build_prompt(
                self.config.checklist_ref,
                template,
                self.config.completion_token,
            )
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")  # noqa: DTZ005
            self._message(f"\n[{timestamp}] Running {label} prompt...")
            stdout = self._invoke(prompt, label)

            if label == "controller" and completion_detected(stdout, self.config.completion_token):
                if self.verify_completion_intent(stdout):
                    self.coordinator.signal_stop(self.worker_id)
                    return WorkerResult.stop_confirmed()

            iteration += 1
            self.coordinator.mark_iteration_complete(self.worker_id)
            if self.config.shutdown.is_set():
                continue
            self._sleep_between_turns()

    def verify_completion_intent(self, stdout: str) -> bool:
        """Ask the tool, with thinking disabled, whether the token was deliberate."""

        token = self.config.completion_token
        self._message(f"Completion token '{token}' detected. Verifying intent with LLM...")
        self.invocations += 1
        try:
            output = self.chain.invoke_without_thinking(build_intent_prompt(stdout, token))
        except (ToolInvocationError, ToolsExhaustedError) as error:
            logger.warning("Failed to verify completion intent: %s", error)
            self._message(
                f"Warning: Failed to verify completion intent: {error}. Treating as unconfirmed.",
            )
            return False

        if token in output.stdout:
            self._message("LLM confirmed intentional completion. Exiting loop.")
            return True
        self._message("LLM did not confirm intentional completion. Continuing loop.")
        return False
