from __future__ import annotations

import re
import threading
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from agentloop.checklist.lease import acquire_lock
from agentloop.orchestrator.backend.base import ToolOutput, ToolRunRequest
from agentloop.orchestrator.backend.cli_backend import ToolInvocationError
from agentloop.orchestrator.coordinator import WorkerOutcome
from agentloop.orchestrator.parallel import ParallelConfig, ParallelOrchestrator
from agentloop.orchestrator.verifier import VerifierOutcome
from agentloop.orchestrator.worker import RunConfig
from conftest import FakeRunner, write_checklist

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Parallel Workers and Spirals"),
]

TOKEN = "__ALL_TASKS_COMPLETE__"
DONE = ToolOutput(f"Finished. {TOKEN}\n", "")
LEASE = re.compile(r"\[ip:([a-f0-9]{4})\]")


def _config(checklist: Path, **kwargs) -> ParallelConfig:
    kwargs.setdefault("warmup_delay_seconds", 0)
    return ParallelConfig(
        run_config=RunConfig(checklist=checklist, sleep_seconds=0),
        tools="claude",
        base_path=checklist.parent,
        **kwargs,
    )


def _orchestrator(config: ParallelConfig, runner: FakeRunner, **kwargs) -> ParallelOrchestrator:
    return ParallelOrchestrator(config, runner=runner, poll_interval=0.01, **kwargs)


def _verifier_appends(checklist: Path) -> Callable[[ToolRunRequest], ToolOutput]:
    """Worker turns confirm the stop token; each verifier call adds one new item."""

    calls = {"verifier": 0}
    guard = threading.Lock()

    def reply(request: ToolRunRequest) -> ToolOutput:
        if "You are the verifier" not in (request.stdin_text or ""):
            return DONE
        with guard:
            calls["verifier"] += 1
            number = calls["verifier"]
        with checklist.open("a", encoding="utf-8") as handle:
            handle.write(f"- [ ] new {number}\n")
        return ToolOutput("Added an item.\n", "")

    return reply


def test_single_worker_leases_and_stops(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n- [ ] b\n")
    runner = FakeRunner(default=DONE)

    summary = _orchestrator(_config(checklist), runner).run()

    assert not summary.failed
    assert len(summary.phases) == 1
    phase = summary.phases[0]
    assert phase.launched == 1
    assert phase.results[0].outcome == WorkerOutcome.STOP_CONFIRMED
    assert phase.stop_confirmed
    assert len(runner.requests) == 2
    assert runner.prompt(0).startswith("You have been assigned the following work items:")
    assert len(LEASE.findall(checklist.read_text("utf-8"))) == 1


def test_parallel_workers_lease_distinct_items(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "".join(f"- [ ] item {n}\n" for n in range(3)))
    all_started = threading.Event()

    def reply(_: ToolRunRequest) -> ToolOutput:
        if len(runner.requests) >= 3:
            all_started.set()
        all_started.wait(10)
        return DONE

    runner = FakeRunner(default=reply)

    summary = _orchestrator(_config(checklist, instances=3), runner).run()

    phase = summary.phases[0]
    assert phase.launched == 3
    assert sorted(phase.results) == [0, 1, 2]
    assert not any(result.is_error for result in phase.results.values())
    assert phase.stop_confirmed
    lease_ids = LEASE.findall(checklist.read_text("utf-8"))
    assert len(lease_ids) == 3
    assert len(set(lease_ids)) == 3


def test_stop_during_warmup_skips_remaining_launches(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n- [ ] b\n- [ ] c\n")
    runner = FakeRunner(default=DONE)
    lines: list[str] = []
    config = _config(checklist, instances=3, warmup_delay_seconds=10)

    summary = _orchestrator(config, runner, echo=lines.append).run()

    phase = summary.phases[0]
    assert phase.launched == 1
    assert list(phase.results) == [0]
    assert "Stop signaled during warmup, not launching instance 1" in lines
    assert len(LEASE.findall(checklist.read_text("utf-8"))) == 1


def test_failed_worker_restores_its_items(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=ToolInvocationError("claude crashed", transient=True))

    summary = _orchestrator(_config(checklist), runner).run()

    result = summary.phases[0].results[0]
    assert result.is_error
    assert "claude crashed" in result.message
    assert checklist.read_text("utf-8") == "- [ ] a\n"
    assert not summary.failed


def test_worker_that_cannot_start_restores_its_items(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    (tmp_path / "logs").write_text("not a directory\n", "utf-8")
    runner = FakeRunner(default=DONE)
    config = _config(checklist, log_file=tmp_path / "logs" / "agentloop.log")

    summary = _orchestrator(config, runner).run()

    result = summary.phases[0].results[0]
    assert result.is_error
    assert "failed to start" in result.message
    assert summary.failed_workers == 1
    assert runner.requests == []
    assert checklist.read_text("utf-8") == "- [ ] a\n"


def test_verifier_invocation_error_ends_the_run_cleanly(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")

    def reply(request: ToolRunRequest) -> ToolOutput:
        if "You are the verifier" in (request.stdin_text or ""):
            raise ToolInvocationError("claude exited with code 1 and no output", transient=False)
        return DONE

    runner = FakeRunner(default=reply)

    summary = _orchestrator(_config(checklist, verify_enabled=True), runner).run()

    assert summary.failed
    assert summary.errors == ["Verifier error: claude exited with code 1 and no output. Exiting."]
    assert summary.verifier_results == []
    assert summary.phases[0].stop_confirmed


def test_rate_limit_exhaustion_is_unrecoverable(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=ToolOutput("usage limit reached\n", ""))

    summary = _orchestrator(_config(checklist, verify_enabled=True), runner).run()

    assert summary.failed
    assert any("All LLM tools exhausted" in error for error in summary.errors)
    assert summary.verifier_results == []
    assert checklist.read_text("utf-8") == "- [ ] a\n"


@pytest.mark.parametrize("lease_enabled", [True, False])
def test_phase_is_skipped_when_nothing_is_left(tmp_path: Path, lease_enabled: bool) -> None:
    checklist = write_checklist(tmp_path, "- [x] a\n- [V] b\n")
    runner = FakeRunner(default=DONE)

    summary = _orchestrator(_config(checklist, lease_enabled=lease_enabled), runner).run()

    assert summary.phases[0].skipped
    assert runner.requests == []


def test_lock_timeout_disables_leasing_and_fails_the_run(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=DONE)
    config = _config(checklist, lock_timeout_seconds=0.05, lease_attempts=2)

    with acquire_lock(tmp_path):
        summary = _orchestrator(config, runner).run()

    assert summary.failed
    assert "Could not acquire the checklist lock" in summary.errors[0]
    assert summary.phases[0].results[0].outcome == WorkerOutcome.STOP_CONFIRMED
    assert not runner.prompt(0).startswith("You have been assigned")
    assert checklist.read_text("utf-8") == "- [ ] a\n"


def test_spiral_restarts_workers_until_max_spirals(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=_verifier_appends(checklist))
    config = _config(checklist, verify_enabled=True, spiral_enabled=True, max_spirals=2)

    summary = _orchestrator(config, runner).run()

    assert not summary.failed
    assert summary.spirals == 2
    assert len(summary.phases) == 2
    assert [result.new_items for result in summary.verifier_results] == [1, 1]
    assert "- [ ] new 2\n" in checklist.read_text("utf-8")


def test_spiral_disabled_stops_after_first_verification(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=_verifier_appends(checklist))
    lines: list[str] = []
    config = _config(checklist, verify_enabled=True)

    summary = _orchestrator(config, runner, echo=lines.append).run()

    assert summary.spirals == 1
    assert len(summary.phases) == 1
    assert "Spiral mode disabled. Exiting after verification." in lines


def test_verifier_without_new_work_ends_the_run(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=DONE)
    config = _config(checklist, verify_enabled=True, spiral_enabled=True)

    summary = _orchestrator(config, runner).run()

    assert summary.spirals == 0
    assert len(summary.phases) == 1
    assert summary.verifier_results[0].outcome == VerifierOutcome.NO_NEW_WORK


def test_shutdown_before_run_launches_nothing(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=DONE)
    config = _config(checklist)
    config.run_config.shutdown.set()

    summary = _orchestrator(config, runner).run()

    assert summary.phases == []
    assert runner.requests == []


def test_worker_transcripts_are_written_per_instance(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] a\n")
    runner = FakeRunner(default=DONE)
    lines: list[str] = []
    config = _config(checklist, log_file=tmp_path / "logs" / "agentloop.log")

    _orchestrator(config, runner, echo=lines.append).run()

    transcript = (tmp_path / "logs" / "agentloop.log.0").read_text("utf-8")
    assert "mode=worker iteration=1 turn=normal" in transcript
    assert "Using LLM tool: claude" in transcript
    assert "[worker 0] Stop token confirmed; exiting." in lines
