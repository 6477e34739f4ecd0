"""Thread-safe worker lifecycle tracking with a single monotonic stop flag."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum


class WorkerState(str, Enum):
    RUNNING = "running"
    FINISHING_ITERATION = "finishing_iteration"
    COMPLETED = "completed"


class WorkerOutcome(str, Enum):
    STOP_CONFIRMED = "stop_confirmed"
    SHUTDOWN = "shutdown"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class WorkerResult:
    """How a worker loop ended."""

    outcome: WorkerOutcome
    message: str = ""

    @classmethod
    def stop_confirmed(cls) -> WorkerResult:
        return cls(WorkerOutcome.STOP_CONFIRMED)

    @classmethod
    def shutdown(cls) -> WorkerResult:
        return cls(WorkerOutcome.SHUTDOWN)

    @classmethod
    def error(cls, message: str) -> WorkerResult:
        return cls(WorkerOutcome.ERROR, message)

    @property
    def is_error(self) -> bool:
        return self.outcome == WorkerOutcome.ERROR

    def describe(self) -> str:
        if self.is_error:
            return f"error: {self.message}"
        return self.outcome.value


@dataclass(slots=True, frozen=True)
class WorkerStatus:
    state: WorkerState
    result: WorkerResult | None = None

    @property
    def is_settled(self) -> bool:
        return self.state in (WorkerState.COMPLETED, WorkerState.FINISHING_ITERATION)


_RUNNING = WorkerStatus(WorkerState.RUNNING)
_FINISHING = WorkerStatus(WorkerState.FINISHING_ITERATION)


class StopCoordinator:
    """Shared by the orchestrator and its workers for one phase.

    Each worker writes only its own entry. Once ``signal_stop`` has been
    called the stop flag stays set, and a ``Completed`` entry never changes.
    """

    def __init__(self, worker_count: int) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.worker_count = worker_count
        self._condition = threading.Condition()
        self._stop = threading.Event()
        self._statuses: dict[int, WorkerStatus] = dict.fromkeys(range(worker_count), _RUNNING)

    def _check_id(self, worker_id: int) -> None:
        if worker_id not in self._statuses:
            raise KeyError(f"Unknown worker id: {worker_id}")

    def _set_completed(self, worker_id: int, result: WorkerResult) -> None:
        if self._statuses[worker_id].state != WorkerState.COMPLETED:
            self._statuses[worker_id] = WorkerStatus(WorkerState.COMPLETED, result)
        self._condition.notify_all()

    def signal_stop(self, worker_id: int) -> None:
        with self._condition:
            self._check_id(worker_id)
            self._stop.set()
            self._set_completed(worker_id, WorkerResult.stop_confirmed())

    def should_stop(self) -> bool:
        return self._stop.is_set()

    def mark_iteration_start(self, worker_id: int) -> None:
        with self._condition:
            self._check_id(worker_id)
            if self._statuses[worker_id].state != WorkerState.COMPLETED:
                self._statuses[worker_id] = _RUNNING
                self._condition.notify_all()

    def mark_iteration_complete(self, worker_id: int) -> None:
        with self._condition:
            self._check_id(worker_id)
            if self._statuses[worker_id].state == WorkerState.RUNNING:
                self._statuses[worker_id] = _FINISHING
                self._condition.notify_all()

    def mark_completed(self, worker_id: int, result: WorkerResult) -> None:
        with self._condition:
            self._check_id(worker_id)
            self._set_completed(worker_id, result)

    def is_completed(self, worker_id: int) -> bool:
        with self._condition:
            return self._statuses[worker_id].state == WorkerState.COMPLETED

    def all_completed(self) -> bool:
        with self._condition:
            return all(s.state == WorkerState.COMPLETED for s in self._statuses.values())

    def statuses(self) -> dict[int, WorkerStatus]:
        with self._condition:
            return dict(self._statuses)

    def wait_for_all_complete(self, timeout: float) -> bool:
        """Block until every worker is completed or finishing its iteration.

        Returns ``False`` if ``timeout`` seconds pass first.
        """

        deadline = time.monotonic() + timeout
        with self._condition:
            while True:
                if all(status.is_settled for status in self._statuses.values()):
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)

    def wait_for_change(self, timeout: float) -> None:
        """Sleep until any status changes or ``timeout`` passes."""

        with self._condition:
            self._condition.wait(timeout)
