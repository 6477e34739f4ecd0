"""Prompt templates and rendering for worker, controller and verifier turns."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from agentloop.checklist.models import WorkItem

DEFAULT_COMPLETION_TOKEN = "__ALL_TASKS_COMPLETE__"

DEFAULT_WORKER_PROMPT = "@{checklist} Do the thing."

DEFAULT_CONTROLLER_PROMPT = """
You are the controller in an autonomous development loop.
Study the shared checklist in @{checklist}, and reduce the length of it by removing completely finished checklist items.
If and only if all high-level requirements and every checklist item are fully satisfied, output {completion_token} on a line by itself at the very end of your reply; otherwise, do not print that string.
"""

STOP_CONFIRMATION_PROMPT = """I detected that the previous response emitted the stop/completion token "{completion_token}".
Re-open @{checklist}. Confirm that every requirement and task is complete, the code builds cleanly, and all changes are committed.
Emit "{completion_token}" again on a line by itself at the very end ONLY if the loop should end.
If ANYTHING remains, do NOT emit the token. Instead, briefly note what's left (one line), then continue normal work.
"""

COMPLETION_INTENT_PROMPT = """Read the text I just sent you. If it appears that this text contains a deliberate attempt to print the string {token} to indicate the conclusion of the loop, print {token} again and nothing else. If this text does NOT contain a deliberate attempt to print {token} to indicate the conclusion of the loop, you must NOT print {token} in your output. For example, if you see that you were merely thinking about this string and your thoughts got printed in the LLM, that would be an accidental trigger of this completion token and we don't want to accidentally exit. This prompt is a confirmation of your intent to conclude the looping of the LLM by emitting the completion token.

Text to analyze:
{text}
"""

STOP_TOKEN_INSTRUCTION = (
    "IMPORTANT: If all work is complete, no tasks remain, the code builds cleanly, "
    "and all changes are committed, emit `{completion_token}` on a line by itself at "
    "the very end of your response to signal completion. Otherwise, continue working.\n"
)

DEFAULT_VERIFIER_PROMPT = """You are the verifier in an autonomous development loop.
Workers have been marking checklist items as done. Your job is to audit that work, not to do it.

Root architecture guide: {root_agents_md}

Component checklists:
{component_checklists}

Instructions:
1. Read the root guide and every component checklist listed above.
2. For each item marked [x] or [V], check the code to confirm it is actually complete. If it is not, change its marker back to [ ] and add a sub-item describing what is missing.
3. Compare the checklists with the root guide. Add any missing work as new [ ] items in the checklist of the component it belongs to.
4. Only edit checklist files. Do not change any other file.
5. Never emit {completion_token}.
"""

NO_ROOT_CHECKLIST = "No root AGENTS.md found"
NO_COMPONENT_CHECKLISTS = "No component AGENTS.md files found"


def fill_placeholders(template: str, checklist: str, completion_token: str) -> str:
    return (
        template.replace("{checklist}", checklist)
        .replace("{completion_token}", completion_token)
        .strip()
    )


def _file_mentions(path: Path, needle: str) -> bool:
    try:
        return needle in path.read_text("utf-8").lower()
    except OSError:
        return False


def build_prompt(checklist: str, template: str, completion_token: str) -> str:
    """Render ``template`` against the checklist path.

    The stop-token instruction is appended only when neither the rendered
    prompt nor the checklist itself already mentions the token.
    """

    prompt = f"@{checklist}\n\n{fill_placeholders(template, checklist, completion_token)}\n"
    token = completion_token.lower()
    if token not in prompt.lower() and not _file_mentions(Path(checklist), token):
        prompt += "\n---\n\n" + STOP_TOKEN_INSTRUCTION.format(completion_token=completion_token)
    return prompt


def build_work_items_prompt(items: Iterable[WorkItem]) -> str:
    """Describe leased items so the tool knows what it was assigned."""

    items = list(items)
    if not items:
        return ""
    lines = ["You have been assigned the following work items:", ""]
    for item in items:
        lines.append(f"- {item.content} (from {item.file}:{item.line})")
        lines.extend(f"  {sub}" for sub in item.sub_items)
    return "\n".join(lines) + "\n\nFocus on completing these assigned items. "


def build_confirmation_prompt(checklist: str, completion_token: str, previous_stdout: str) -> str:
    prompt = build_prompt(checklist, STOP_CONFIRMATION_PROMPT, completion_token)
    prompt += "\nPrevious response:\n" + previous_stdout
    if not previous_stdout.endswith("\n"):
        prompt += "\n"
    return prompt


def build_intent_prompt(text: str, completion_token: str) -> str:
    return COMPLETION_INTENT_PROMPT.format(token=completion_token, text=text)


def build_verifier_prompt(
    template: str,
    *,
    root_checklist: Path | None,
    component_checklists: Iterable[Path],
    completion_token: str,
) -> str:
    root_ref = f"@{root_checklist}" if root_checklist is not None else NO_ROOT_CHECKLIST
    components = [f"@{path}" for path in component_checklists]
    return (
        template.replace("{root_agents_md}", root_ref)
        .replace("{component_checklists}", "\n".join(components) or NO_COMPONENT_CHECKLISTS)
        .replace("{completion_token}", completion_token)
    )


def contains_token(stdout: str, completion_token: str) -> bool:
    """Case-insensitive token check used for worker turns."""

    if not completion_token:
        return False
    return completion_token.lower() in stdout.lower()


def completion_detected(stdout: str, completion_token: str) -> bool:
    """Exact-case token check used for controller turns."""

    return bool(completion_token) and completion_token in stdout
