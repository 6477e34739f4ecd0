"""CLI entrypoint for agentloop."""

import logging
from pathlib import Path

import rich_click as click

from agentloop import __version__
from agentloop.checklist.lease import LockTimeoutError
from agentloop.checklist.models import ChecklistError, CheckoutFilters
from agentloop.orchestrator.controllers import (
    CheckoutCommand,
    LoopCliController,
    RestoreCommand,
    RunCommand,
    ScanCommand,
)

click.rich_click.USE_MARKDOWN = True
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="agentloop")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="TOML config file (defaults to agentloop.toml when present).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="AGENTLOOP_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Diagnostic log level.",
)
@click.pass_context
def agentloop(ctx: click.Context, config_path: Path | None, log_level: str) -> None:
    """Run CLI LLM agents in a loop against AGENTS.md checklists."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@agentloop.command("run")
@click.argument("checklist", type=click.Path(path_type=Path))
@click.option("--tools", default=None, help="Comma-separated tools to try in order.")
@click.option(
    "--mode",
    type=click.Choice(("worker", "controller"), case_sensitive=False),
    default=None,
    help="Worker-only loop, or controller/worker alternation.",
)
@click.option("--worker-prompt", default=None, help="Worker prompt template.")
@click.option(
    "--worker-prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Read the worker prompt template from a file.",
)
@click.option("--controller-prompt", default=None, help="Controller prompt template.")
@click.option("--completion-token", default=None, help="Completion detection token.")
@click.option(
    "--sleep-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Delay between LLM invocations.",
)
@click.option("--log-file", type=click.Path(path_type=Path), default=None, help="Transcript base path.")
@click.option("--gemini-model", default=None, help="Model for the gemini CLI.")
@click.option("--claude-model", default=None, help="Model for the claude CLI.")
@click.option("--codex-model", default=None, help="Model for the codex CLI.")
@click.option("--instances", type=click.IntRange(min=1), default=None, help="Parallel instances.")
@click.option(
    "--warmup-delay",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between instance launches (0 to disable).",
)
@click.option("--no-lease", is_flag=True, default=False, help="Disable work item checkout.")
@click.option(
    "--checklist-base",
    "base_path",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Base directory searched for AGENTS.md files.",
)
@click.option(
    "--items-per-instance",
    type=click.IntRange(min=1),
    default=None,
    help="Work items leased per instance.",
)
@click.option("--verify/--no-verify", default=None, help="Run the verifier after each phase.")
@click.option(
    "--verifier-prompt",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Custom verifier prompt template.",
)
@click.option("--spiral/--no-spiral", default=None, help="Restart workers when the verifier adds work.")
@click.option("--max-spirals", type=click.IntRange(min=1), default=None, help="Spiral ceiling.")
@click.option(
    "--commit-verifier/--no-commit-verifier",
    default=None,
    help="Commit checklist edits made by the verifier.",
)
@click.pass_context
def run(  # noqa: PLR0913
    ctx: click.Context,
    checklist: Path,
    tools: str | None,
    mode: str | None,
    worker_prompt: str | None,
    worker_prompt_file: Path | None,
    controller_prompt: str | None,
    completion_token: str | None,
    sleep_seconds: float | None,
    log_file: Path | None,
    gemini_model: str | None,
    claude_model: str | None,
    codex_model: str | None,
    instances: int | None,
    warmup_delay: float | None,
    no_lease: bool,
    base_path: Path | None,
    items_per_instance: int | None,
    verify: bool | None,
    verifier_prompt: Path | None,
    spiral: bool | None,
    max_spirals: int | None,
    commit_verifier: bool | None,
) -> None:
    """Run the worker loop, optionally in parallel with verification."""

    if worker_prompt_file is not None:
        worker_prompt = worker_prompt_file.read_text("utf-8")
    controller = LoopCliController(echo=click.echo)
    try:
        result = controller.run(
            RunCommand(
                checklist=checklist,
                config_path=ctx.obj.get("config_path"),
                tools=tools,
                mode=mode,
                worker_prompt=worker_prompt,
                controller_prompt=controller_prompt,
                completion_token=completion_token,
                sleep_seconds=sleep_seconds,
                log_file=log_file,
                instances=instances,
                warmup_delay=warmup_delay,
                no_lease=no_lease,
                base_path=base_path,
                items_per_instance=items_per_instance,
                verify=verify,
                verifier_prompt=verifier_prompt,
                spiral=spiral,
                max_spirals=max_spirals,
                commit_verifier=commit_verifier,
                models={"gemini": gemini_model, "claude": claude_model, "codex": codex_model},
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run finished with unrecoverable errors.")


@agentloop.command("scan")
@click.option(
    "--path",
    "base_path",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Base directory searched for AGENTS.md files.",
)
def scan(base_path: Path) -> None:
    """Count incomplete items across every AGENTS.md file."""

    _emit_lines(LoopCliController().scan(ScanCommand(base_path=base_path)))


@agentloop.command("checkout")
@click.option(
    "--path",
    "base_path",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Base directory searched for AGENTS.md files.",
)
@click.option("-n", "--count", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--worker-id", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--unverified", is_flag=True, default=False, help="Include [x] items.")
@click.option("--blocked", is_flag=True, default=False, help="Include [BLOCKED] items.")
@click.option("--no-incomplete", is_flag=True, default=False, help="Exclude [ ] items.")
def checkout(  # noqa: PLR0913
    base_path: Path,
    count: int,
    worker_id: int,
    unverified: bool,
    blocked: bool,
    no_incomplete: bool,
) -> None:
    """Lease work items by marking them in progress."""

    command = CheckoutCommand(
        base_path=base_path,
        count=count,
        worker_id=worker_id,
        filters=CheckoutFilters(
            incomplete=not no_incomplete,
            unverified=unverified,
            blocked=blocked,
        ),
    )
    try:
        _emit_lines(LoopCliController().checkout(command))
    except LockTimeoutError as error:
        raise click.ClickException(f"{error} (retry later)") from error
    except ChecklistError as error:
        raise click.ClickException(str(error)) from error


@agentloop.command("restore")
@click.option(
    "--path",
    "base_path",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Base directory searched for AGENTS.md files.",
)
@click.argument("lease_ids", nargs=-1, required=True)
def restore(base_path: Path, lease_ids: tuple[str, ...]) -> None:
    """Return leased items to `[ ]` by lease id."""

    try:
        _emit_lines(LoopCliController().restore(RestoreCommand(base_path=base_path, lease_ids=lease_ids)))
    except ChecklistError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agentloop()
