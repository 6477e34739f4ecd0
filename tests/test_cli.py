from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from agentloop.config import Settings
from agentloop.main import agentloop
from agentloop.orchestrator.controllers import (
    LoopCliController,
    RunCommand,
    apply_run_overrides,
)
from conftest import ECHO_TOOL_COMMAND, write_checklist

pytestmark = [
    allure.epic("CLI"),
    allure.feature("agentloop commands"),
]

TOKEN = "__ALL_TASKS_COMPLETE__"


def test_scan_prints_summary_and_items(tmp_path: Path) -> None:
    write_checklist(tmp_path, "- [ ] open task\n- [x] done\n")
    component = write_checklist(tmp_path / "svc", "- [BLOCKED] waiting\n")

    result = CliRunner().invoke(agentloop, ["scan", "--path", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "2 incomplete items across 2 files (2 files scanned)" in result.output
    assert f"Root checklist: {tmp_path / 'AGENTS.md'}" in result.output
    assert f"{component}:" in result.output
    assert "  1: [BLOCKED] waiting" in result.output


def test_checkout_and_restore_round_trip(tmp_path: Path) -> None:
    path = write_checklist(tmp_path, "- [ ] Task one\n  - detail\n- [x] Done task\n")
    runner = CliRunner()

    checkout = runner.invoke(agentloop, ["checkout", "--path", str(tmp_path), "-n", "2"])

    assert checkout.exit_code == 0, checkout.output
    assert "Checked out 1 work item(s):" in checkout.output
    match = re.search(r"\[ip:([a-f0-9]{4})\] Task one \(.*AGENTS\.md:1\)", checkout.output)
    assert match is not None
    assert "  - detail" in checkout.output
    lease_id = match.group(1)

    restore = runner.invoke(agentloop, ["restore", "--path", str(tmp_path), lease_id, "ffff"])

    assert restore.exit_code == 0, restore.output
    assert f"{lease_id}: restored Task one" in restore.output
    assert "ffff: not found" in restore.output
    assert path.read_text("utf-8") == "- [ ] Task one\n  - detail\n- [x] Done task\n"


def test_checkout_filters(tmp_path: Path) -> None:
    write_checklist(tmp_path, "- [x] Needs verification\n- [BLOCKED] Stuck\n")
    runner = CliRunner()

    nothing = runner.invoke(agentloop, ["checkout", "--path", str(tmp_path)])
    unverified = runner.invoke(
        agentloop,
        ["checkout", "--path", str(tmp_path), "--unverified", "--no-incomplete"],
    )

    assert nothing.exit_code == 0
    assert "No matching work items available." in nothing.output
    assert unverified.exit_code == 0
    assert "Needs verification" in unverified.output


def test_run_with_echo_tool_stops_on_confirmed_token(tmp_path: Path, monkeypatch) -> None:
    checklist = write_checklist(tmp_path, "- [ ] build it\n")
    monkeypatch.setenv("AGENTLOOP_CLAUDE_COMMAND", ECHO_TOOL_COMMAND)
    monkeypatch.setenv("AGENTLOOP_ECHO_REPLY", f"All done. {TOKEN}")

    result = CliRunner().invoke(
        agentloop,
        [
            "run",
            str(checklist),
            "--tools",
            "claude",
            "--sleep-seconds",
            "0",
            "--warmup-delay",
            "0",
            "--checklist-base",
            str(tmp_path),
            "--log-file",
            str(tmp_path / "logs" / "run.log"),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Run summary: phases=1 spirals=0 errors=0" in result.output
    assert "Phase 0: launched=1 0=stop_confirmed" in result.output
    assert "[worker 0] Stop token confirmed; exiting." in result.output
    assert (tmp_path / "logs" / "run.log.0").exists()
    assert re.search(r"\[ip:[a-f0-9]{4}\] build it", checklist.read_text("utf-8"))


def test_run_fails_when_every_tool_is_rate_limited(tmp_path: Path, monkeypatch) -> None:
    checklist = write_checklist(tmp_path, "- [ ] build it\n")
    monkeypatch.setenv("AGENTLOOP_CLAUDE_COMMAND", ECHO_TOOL_COMMAND)
    monkeypatch.setenv("AGENTLOOP_ECHO_STDERR", "Error: usage limit reached")
    monkeypatch.setenv("AGENTLOOP_TOOLS", "claude")
    monkeypatch.setenv("AGENTLOOP_SLEEP_SECONDS", "0")

    result = CliRunner().invoke(agentloop, ["run", str(checklist), "--checklist-base", str(tmp_path)])

    assert result.exit_code == 1
    assert "All LLM tools exhausted due to rate limits" in result.output
    assert "Run finished with unrecoverable errors." in result.output
    assert checklist.read_text("utf-8") == "- [ ] build it\n"


def test_run_warns_when_instances_end_with_errors(tmp_path: Path, monkeypatch) -> None:
    checklist = write_checklist(tmp_path, "- [ ] build it\n")
    monkeypatch.setenv("AGENTLOOP_CLAUDE_COMMAND", str(tmp_path / "missing-tool"))

    result = CliRunner().invoke(
        agentloop,
        [
            "run",
            str(checklist),
            "--tools",
            "claude",
            "--sleep-seconds",
            "0",
            "--checklist-base",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Warning: 1 instance(s) ended with errors" in result.output
    assert checklist.read_text("utf-8") == "- [ ] build it\n"


def test_run_reports_configuration_errors(tmp_path: Path) -> None:
    checklist = write_checklist(tmp_path, "- [ ] build it\n")
    runner = CliRunner()

    missing = runner.invoke(agentloop, ["run", str(tmp_path / "nope.md")])
    bad_tool = runner.invoke(agentloop, ["run", str(checklist), "--tools", "chatgpt"])

    assert missing.exit_code == 1
    assert "Checklist not found" in missing.output
    assert bad_tool.exit_code == 1
    assert "Unsupported LLM tool: chatgpt" in bad_tool.output


def test_second_interrupt_within_window_forces_exit() -> None:
    lines: list[str] = []
    codes: list[int] = []
    controller = LoopCliController(echo=lines.append, force_exit=codes.append)

    controller.handle_interrupt(now=100.0)
    assert controller.shutdown.is_set()
    assert codes == []
    assert "Press Ctrl+C again within 5s to force exit" in lines[-1]

    controller.handle_interrupt(now=103.0)
    assert codes == [130]
    assert lines[-1].strip() == "Interrupted again. Force exiting."


def test_interrupts_far_apart_do_not_force_exit() -> None:
    codes: list[int] = []
    controller = LoopCliController(echo=lambda _: None, force_exit=codes.append)

    controller.handle_interrupt(now=100.0)
    controller.handle_interrupt(now=110.0)

    assert codes == []


def test_cli_overrides_take_precedence_over_env(monkeypatch) -> None:
    monkeypatch.setenv("AGENTLOOP_CLAUDE_MODEL", "env-model")
    monkeypatch.setenv("AGENTLOOP_INSTANCES", "3")

    settings = apply_run_overrides(
        Settings.from_env(),
        RunCommand(
            checklist=Path("AGENTS.md"),
            instances=2,
            no_lease=True,
            models={"claude": None, "gemini": "flash"},
        ),
    )

    assert settings.parallel.instances == 2
    assert settings.parallel.lease_enabled is False
    assert settings.tools.models == {"claude": "env-model", "gemini": "flash"}
