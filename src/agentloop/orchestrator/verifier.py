"""Verification phase: one audit call that may add work to the checklists."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from agentloop.checklist.scanner import ScanResult, scan_all_checklists
from agentloop.orchestrator.fallback import ToolChain
from agentloop.orchestrator.git import GitClient
from agentloop.orchestrator.prompts import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_VERIFIER_PROMPT,
    build_verifier_prompt,
)
from agentloop.orchestrator.transcript import NullTranscript, Transcript
from agentloop.orchestrator.worker import stream_output

logger = logging.getLogger(__name__)

VERIFIER_COMMIT_MESSAGE = "Verifier: update checklists"


class VerifierOutcome(str, Enum):
    FOUND_WORK = "found_work"
    NO_NEW_WORK = "no_new_work"


@dataclass(slots=True, frozen=True)
class VerifierResult:
    outcome: VerifierOutcome
    new_items: int = 0
    remaining: int = 0

    @property
    def found_work(self) -> bool:
        return self.outcome == VerifierOutcome.FOUND_WORK


@dataclass(slots=True)
class VerifierConfig:
    checklist_dir: Path
    prompt_path: Path | None = None
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    commit: bool = False


def load_verifier_template(prompt_path: Path | None) -> str:
    if prompt_path is None:
        return DEFAULT_VERIFIER_PROMPT
    return prompt_path.read_text("utf-8")


def run_verifier(
    config: VerifierConfig,
    chain: ToolChain,
    *,
    transcript: Transcript | None = None,
    git: GitClient | None = None,
) -> VerifierResult:
    """Run the audit call and compare incomplete counts before and after it."""

    transcript = transcript or NullTranscript()
    transcript.message("Starting verification phase...")

    before = scan_all_checklists(config.checklist_dir)
    transcript.message(
        f"Before verification: {before.total_incomplete} incomplete items "
        f"across {before.total_files} files",
    )

    prompt = build_verifier_prompt(
        load_verifier_template(config.prompt_path),
        root_checklist=before.root_checklist,
        component_checklists=before.component_checklists,
        completion_token=config.completion_token,
    )
    transcript.message("Running verifier LLM...")
    stream_output(transcript, "verifier", chain.invoke(prompt))

    after = scan_all_checklists(config.checklist_dir)
    transcript.message(
        f"After verification: {after.total_incomplete} incomplete items "
        f"across {after.total_files} files",
    )

    if config.commit:
        _commit_checklists(git or GitClient(config.checklist_dir), after)

    if after.total_incomplete > before.total_incomplete:
        new_items = after.total_incomplete - before.total_incomplete
        transcript.message(f"Verifier found {new_items} new work items")
        return VerifierResult(
            VerifierOutcome.FOUND_WORK,
            new_items=new_items,
            remaining=after.total_incomplete,
        )
    if after.total_incomplete > 0:
        transcript.message(
            f"Verifier did not add new items, but {after.total_incomplete} incomplete items remain",
        )
    else:
        transcript.message("Verifier confirmed: all work is complete")
    return VerifierResult(VerifierOutcome.NO_NEW_WORK, remaining=after.total_incomplete)


def _commit_checklists(git: GitClient, scan: ScanResult) -> None:
    paths = [*([scan.root_checklist] if scan.root_checklist else []), *scan.component_checklists]
    for path in paths:
        git.add(path)
    if not git.commit(VERIFIER_COMMIT_MESSAGE):
        logger.warning("Verifier checklist commit skipped")
