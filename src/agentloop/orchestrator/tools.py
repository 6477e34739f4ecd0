"""Descriptors for the supported LLM command-line tools."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from agentloop.orchestrator.backend.base import ToolRunRequest

SUPPORTED_TOOLS = ("gemini", "codex", "claude")
THINKING_DISABLED_PREFIX = "<thinking_mode>disabled</thinking_mode>\n\n"


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """How to call one tool and how to recognize it being throttled."""

    name: str
    command: tuple[str, ...]
    args: tuple[str, ...]
    model_flag: str
    rate_limit_patterns: tuple[str, ...]
    prompt_as_argument: bool = False
    model: str | None = None
    no_thinking_args: tuple[str, ...] = ()
    no_thinking_prefix: str = ""
    timeout_seconds: float | None = None

    def with_model(self, model: str | None) -> ToolSpec:
        return replace(self, model=model or None)

    def with_command(self, command: tuple[str, ...] | None) -> ToolSpec:
        return replace(self, command=command) if command else self

    def is_rate_limited(self, stdout: str, stderr: str) -> bool:
        combined = f"{stdout}{stderr}".lower()
        return any(pattern in combined for pattern in self.rate_limit_patterns)

    def build_request(self, prompt: str, *, thinking: bool = True) -> ToolRunRequest:
        argv = [*self.command, *self.args]
        if self.model:
            argv.extend([self.model_flag, self.model])
        if not thinking:
            argv.extend(self.no_thinking_args)
            prompt = f"{self.no_thinking_prefix}{prompt}"
        if self.prompt_as_argument:
            argv.append(prompt)
            stdin_text = None
        else:
            stdin_text = prompt
        return ToolRunRequest(
            tool=self.name,
            argv=argv,
            stdin_text=stdin_text,
            timeout_seconds=self.timeout_seconds,
        )


BUILTIN_TOOLS: dict[str, ToolSpec] = {
    "gemini": ToolSpec(
        name="gemini",
        command=("gemini",),
        args=("--yolo",),
        model_flag="-m",
        prompt_as_argument=True,
        rate_limit_patterns=(
            "rate limit",
            "quota exceeded",
            "429",
            "too many requests",
            "resource exhausted",
        ),
    ),
    "codex": ToolSpec(
        name="codex",
        command=("codex",),
        args=("exec",),
        model_flag="-m",
        rate_limit_patterns=(
            "rate limit reached",
            "rate_limit_error",
            "429",
            "too many requests",
        ),
        no_thinking_args=("-c", 'model_reasoning_effort="minimal"'),
    ),
    "claude": ToolSpec(
        name="claude",
        command=("claude",),
        args=("--print", "--dangerously-skip-permissions"),
        model_flag="--model",
        rate_limit_patterns=(
            "usage limit reached",
            "rate limit reached",
            "rate_limit_error",
            "429",
            "limit will reset",
        ),
        no_thinking_prefix=THINKING_DISABLED_PREFIX,
    ),
}


@dataclass(slots=True)
class ToolOverrides:
    """Per-tool model and executable overrides from settings."""

    models: dict[str, str] = field(default_factory=dict)
    commands: dict[str, tuple[str, ...]] = field(default_factory=dict)
    timeout_seconds: float | None = None


def normalize_tool_name(name: str) -> str:
    return name.strip().lower()


def parse_tool_names(raw: str) -> list[str]:
    """Parse a comma-separated tool list. Repeats are kept."""

    names = [normalize_tool_name(part) for part in raw.split(",") if part.strip()]
    if not names:
        raise ValueError("At least one LLM tool must be specified.")
    unknown = [name for name in names if name not in BUILTIN_TOOLS]
    if unknown:
        raise ValueError(
            f"Unsupported LLM tool: {unknown[0]}. Supported: {', '.join(SUPPORTED_TOOLS)}",
        )
    return names


def resolve_tool(name: str, overrides: ToolOverrides | None = None) -> ToolSpec:
    key = normalize_tool_name(name)
    spec = BUILTIN_TOOLS.get(key)
    if spec is None:
        raise ValueError(f"Unsupported LLM tool: {name}. Supported: {', '.join(SUPPORTED_TOOLS)}")
    if overrides is None:
        return spec
    spec = spec.with_model(overrides.models.get(key)).with_command(overrides.commands.get(key))
    if overrides.timeout_seconds is not None:
        spec = replace(spec, timeout_seconds=overrides.timeout_seconds)
    return spec


def resolve_tools(names: list[str], overrides: ToolOverrides | None = None) -> list[ToolSpec]:
    return [resolve_tool(name, overrides) for name in names]
