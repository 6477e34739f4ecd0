from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from agentloop.orchestrator.backend.base import ToolOutput, ToolRunRequest
from agentloop.orchestrator.fallback import ToolChain
from agentloop.orchestrator.git import GitClient
from agentloop.orchestrator.transcript import MemoryTranscript
from agentloop.orchestrator.verifier import (
    VERIFIER_COMMIT_MESSAGE,
    VerifierConfig,
    VerifierOutcome,
    load_verifier_template,
    run_verifier,
)
from conftest import FakeRunner, write_checklist

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Verifier"),
]


class RecordingGit:
    def __init__(self) -> None:
        self.added: list[Path] = []
        self.commits: list[str] = []

    def add(self, path: Path) -> bool:
        self.added.append(path)
        return True

    def commit(self, message: str) -> bool:
        self.commits.append(message)
        return True


def _reopen_item(path: Path) -> Callable[[ToolRunRequest], ToolOutput]:
    def reply(_: ToolRunRequest) -> ToolOutput:
        path.write_text("- [ ] audited and reopened\n- [x] fine\n", "utf-8")
        return ToolOutput("Reopened one item.\n", "")

    return reply


def _chain(runner: FakeRunner) -> ToolChain:
    return ToolChain.from_names("claude", runner=runner)


def test_verifier_reports_new_work(tmp_path: Path) -> None:
    write_checklist(tmp_path, "# Guide\n")
    component = write_checklist(tmp_path / "svc", "- [x] audited and reopened\n- [x] fine\n")
    runner = FakeRunner(default=_reopen_item(component))
    transcript = MemoryTranscript()

    result = run_verifier(VerifierConfig(checklist_dir=tmp_path), _chain(runner), transcript=transcript)

    assert result.outcome == VerifierOutcome.FOUND_WORK
    assert result.found_work
    assert (result.new_items, result.remaining) == (1, 1)
    assert "Verifier found 1 new work items" in transcript.lines
    prompt = runner.prompt(0)
    assert f"Root architecture guide: @{tmp_path / 'AGENTS.md'}" in prompt
    assert f"@{component}" in prompt


def test_verifier_without_changes_reports_remaining_items(tmp_path: Path) -> None:
    write_checklist(tmp_path, "- [ ] still open\n")
    transcript = MemoryTranscript()

    result = run_verifier(
        VerifierConfig(checklist_dir=tmp_path),
        _chain(FakeRunner()),
        transcript=transcript,
    )

    assert result.outcome == VerifierOutcome.NO_NEW_WORK
    assert result.remaining == 1
    assert "Verifier did not add new items, but 1 incomplete items remain" in transcript.lines


def test_verifier_confirms_completion(tmp_path: Path) -> None:
    write_checklist(tmp_path, "- [V] shipped\n")
    transcript = MemoryTranscript()

    result = run_verifier(
        VerifierConfig(checklist_dir=tmp_path),
        _chain(FakeRunner()),
        transcript=transcript,
    )

    assert not result.found_work
    assert result.remaining == 0
    assert "Verifier confirmed: all work is complete" in transcript.lines


def test_custom_verifier_template(tmp_path: Path) -> None:
    write_checklist(tmp_path, "- [V] shipped\n")
    template = tmp_path / "verify.md"
    template.write_text("Audit {root_agents_md} quietly, never print {completion_token}.", "utf-8")
    runner = FakeRunner()

    run_verifier(
        VerifierConfig(checklist_dir=tmp_path, prompt_path=template, completion_token="DONE"),
        _chain(runner),
    )

    assert runner.prompt(0) == f"Audit @{tmp_path / 'AGENTS.md'} quietly, never print DONE."
    assert load_verifier_template(None).startswith("You are the verifier")


def test_verifier_commits_checklists_when_enabled(tmp_path: Path) -> None:
    root = write_checklist(tmp_path, "- [ ] open\n")
    component = write_checklist(tmp_path / "svc", "- [x] done\n")
    git = RecordingGit()

    run_verifier(
        VerifierConfig(checklist_dir=tmp_path, commit=True),
        _chain(FakeRunner()),
        git=git,
    )

    assert git.added == [root, component]
    assert git.commits == [VERIFIER_COMMIT_MESSAGE]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_client_commits_in_a_real_repository(tmp_path: Path) -> None:
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    subprocess.run(["git", "config", "user.email", "loop@example.com"], cwd=tmp_path, check=True)
    subprocess.run(["git", "config", "user.name", "Loop"], cwd=tmp_path, check=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=tmp_path, check=True)
    checklist = write_checklist(tmp_path, "- [ ] open\n")
    git = GitClient(tmp_path)

    assert git.add(checklist)
    assert git.commit("Verifier: update checklists")
    assert not git.commit("nothing to commit")

    log = subprocess.run(
        ["git", "log", "--format=%s"],
        cwd=tmp_path,
        check=True,
        capture_output=True,
        text=True,
    )
    assert log.stdout.strip() == "Verifier: update checklists"


def test_git_client_reports_missing_executable(tmp_path: Path) -> None:
    git = GitClient(tmp_path, executable="agentloop-no-such-git")

    assert git.add(tmp_path / "AGENTS.md") is False
