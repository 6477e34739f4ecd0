"""Runtime configuration for the agent loop.

Values come from ``AGENTLOOP_*`` environment variables, falling back to an
optional ``agentloop.toml`` file and then to built-in defaults. CLI options
are applied on top by ``agentloop.main``.
"""

from __future__ import annotations

import os
import shlex
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentloop.orchestrator.prompts import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_CONTROLLER_PROMPT,
    DEFAULT_WORKER_PROMPT,
)
from agentloop.orchestrator.tools import SUPPORTED_TOOLS, ToolOverrides, parse_tool_names

DEFAULT_CONFIG_FILE = Path("agentloop.toml")
RUN_MODES = ("worker", "controller")


@dataclass(slots=True)
class ToolSettings:
    """Tool chain order, models and rate-limit recovery."""

    names: str = "gemini,codex,claude"
    models: dict[str, str] = field(default_factory=dict)
    commands: dict[str, tuple[str, ...]] = field(default_factory=dict)
    rate_limit_timeout_seconds: float = 300.0
    invocation_timeout_seconds: float | None = None

    def overrides(self) -> ToolOverrides:
        return ToolOverrides(
            models=dict(self.models),
            commands=dict(self.commands),
            timeout_seconds=self.invocation_timeout_seconds,
        )


@dataclass(slots=True)
class LoopSettings:
    """Per-worker turn loop settings."""

    completion_token: str = DEFAULT_COMPLETION_TOKEN
    sleep_seconds: float = 15.0
    mode: str = "worker"
    worker_prompt: str = DEFAULT_WORKER_PROMPT
    controller_prompt: str = DEFAULT_CONTROLLER_PROMPT
    log_file: Path | None = Path("agentloop.log")


@dataclass(slots=True)
class ParallelSettings:
    """Worker fan-out and checklist leasing settings."""

    instances: int = 1
    warmup_delay_seconds: float = 30.0
    lease_enabled: bool = True
    base_path: Path = Path(".")
    items_per_instance: int = 1
    lock_timeout_seconds: float = 30.0
    lease_attempts: int = 3


@dataclass(slots=True)
class VerifierSettings:
    """Verification phase and spiral settings."""

    enabled: bool = False
    prompt_path: Path | None = None
    spiral: bool = False
    max_spirals: int = 5
    commit: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    tools: ToolSettings = field(default_factory=ToolSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    parallel: ParallelSettings = field(default_factory=ParallelSettings)
    verifier: VerifierSettings = field(default_factory=VerifierSettings)

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Settings:
        """Load settings from the environment, layered over the TOML file."""

        source = _Source(load_config_file(config_path))
        log_file = source.get("AGENTLOOP_LOG_FILE", "loop", "log_file", "agentloop.log")
        prompt_path = source.get("AGENTLOOP_VERIFIER_PROMPT", "verifier", "prompt_path", "")
        invocation_timeout = source.get(
            "AGENTLOOP_TOOL_TIMEOUT_SECONDS",
            "tools",
            "invocation_timeout_seconds",
            "",
        )
        return cls(
            tools=ToolSettings(
                names=str(source.get("AGENTLOOP_TOOLS", "tools", "names", "gemini,codex,claude")),
                models=_collect_tool_values(source, "MODEL", "model"),
                commands={
                    name: tuple(shlex.split(command))
                    for name, command in _collect_tool_values(source, "COMMAND", "command").items()
                },
                rate_limit_timeout_seconds=float(
                    source.get(
                        "AGENTLOOP_RATE_LIMIT_TIMEOUT_SECONDS",
                        "tools",
                        "rate_limit_timeout_seconds",
                        300,
                    ),
                ),
                invocation_timeout_seconds=(
                    float(invocation_timeout) if str(invocation_timeout).strip() else None
                ),
            ),
            loop=LoopSettings(
                completion_token=str(
                    source.get(
                        "AGENTLOOP_COMPLETION_TOKEN",
                        "loop",
                        "completion_token",
                        DEFAULT_COMPLETION_TOKEN,
                    ),
                ),
                sleep_seconds=float(source.get("AGENTLOOP_SLEEP_SECONDS", "loop", "sleep_seconds", 15)),
                mode=str(source.get("AGENTLOOP_MODE", "loop", "mode", "worker")).strip().lower(),
                worker_prompt=str(
                    source.get("AGENTLOOP_WORKER_PROMPT", "loop", "worker_prompt", DEFAULT_WORKER_PROMPT),
                ),
                controller_prompt=str(
                    source.get(
                        "AGENTLOOP_CONTROLLER_PROMPT",
                        "loop",
                        "controller_prompt",
                        DEFAULT_CONTROLLER_PROMPT,
                    ),
                ),
                log_file=Path(log_file) if str(log_file).strip() else None,
            ),
            parallel=ParallelSettings(
                instances=int(source.get("AGENTLOOP_INSTANCES", "parallel", "instances", 1)),
                warmup_delay_seconds=float(
                    source.get("AGENTLOOP_WARMUP_DELAY_SECONDS", "parallel", "warmup_delay_seconds", 30),
                ),
                lease_enabled=source.get_bool("AGENTLOOP_LEASE_ENABLED", "parallel", "lease_enabled", True),
                base_path=Path(str(source.get("AGENTLOOP_CHECKLIST_BASE", "parallel", "base_path", "."))),
                items_per_instance=int(
                    source.get("AGENTLOOP_ITEMS_PER_INSTANCE", "parallel", "items_per_instance", 1),
                ),
                lock_timeout_seconds=float(
                    source.get("AGENTLOOP_LOCK_TIMEOUT_SECONDS", "parallel", "lock_timeout_seconds", 30),
                ),
                lease_attempts=int(source.get("AGENTLOOP_LEASE_ATTEMPTS", "parallel", "lease_attempts", 3)),
            ),
            verifier=VerifierSettings(
                enabled=source.get_bool("AGENTLOOP_VERIFY", "verifier", "enabled", False),
                prompt_path=Path(str(prompt_path)) if str(prompt_path).strip() else None,
                spiral=source.get_bool("AGENTLOOP_SPIRAL", "verifier", "spiral", False),
                max_spirals=int(source.get("AGENTLOOP_MAX_SPIRALS", "verifier", "max_spirals", 5)),
                commit=source.get_bool("AGENTLOOP_COMMIT_VERIFIER", "verifier", "commit", False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the run loop cannot use."""

        parse_tool_names(self.tools.names)
        for name in (*self.tools.models, *self.tools.commands):
            if name not in SUPPORTED_TOOLS:
                raise ValueError(f"Unsupported LLM tool in overrides: {name}.")
        if self.tools.rate_limit_timeout_seconds < 0:
            raise ValueError("AGENTLOOP_RATE_LIMIT_TIMEOUT_SECONDS must be >= 0.")
        if self.tools.invocation_timeout_seconds is not None and self.tools.invocation_timeout_seconds <= 0:
            raise ValueError("AGENTLOOP_TOOL_TIMEOUT_SECONDS must be > 0.")
        if not self.loop.completion_token.strip():
            raise ValueError("AGENTLOOP_COMPLETION_TOKEN must not be empty.")
        if self.loop.sleep_seconds < 0:
            raise ValueError("AGENTLOOP_SLEEP_SECONDS must be >= 0.")
        if self.loop.mode not in RUN_MODES:
            raise ValueError(f"AGENTLOOP_MODE must be one of: {', '.join(RUN_MODES)}.")
        if self.parallel.instances < 1:
            raise ValueError("AGENTLOOP_INSTANCES must be >= 1.")
        if self.loop.mode == "controller" and self.parallel.instances != 1:
            raise ValueError("Controller mode runs a single instance; set AGENTLOOP_INSTANCES=1.")
        if self.parallel.warmup_delay_seconds < 0:
            raise ValueError("AGENTLOOP_WARMUP_DELAY_SECONDS must be >= 0.")
        if self.parallel.items_per_instance < 1:
            raise ValueError("AGENTLOOP_ITEMS_PER_INSTANCE must be >= 1.")
        if self.parallel.lock_timeout_seconds <= 0:
            raise ValueError("AGENTLOOP_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.parallel.lease_attempts < 1:
            raise ValueError("AGENTLOOP_LEASE_ATTEMPTS must be >= 1.")
        if self.verifier.max_spirals < 1:
            raise ValueError("AGENTLOOP_MAX_SPIRALS must be >= 1.")


def load_config_file(config_path: Path | None) -> dict[str, Any]:
    """Read the TOML config. A missing default file is not an error."""

    path = config_path or DEFAULT_CONFIG_FILE
    if config_path is None and not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


class _Source:
    """Environment first, then the ``[section] key`` of the TOML file."""

    def __init__(self, file_values: dict[str, Any]) -> None:
        self._file = file_values

    def get(self, env_name: str, section: str, key: str, default: Any) -> Any:
        value = os.getenv(env_name)
        if value is not None:
            return value
        table = self._file.get(section)
        if isinstance(table, dict) and key in table:
            return table[key]
        return default

    def get_bool(self, env_name: str, section: str, key: str, default: bool) -> bool:
        value = os.getenv(env_name)
        if value is not None:
            return _env_bool(env_name, default=default)
        table = self._file.get(section)
        if isinstance(table, dict) and key in table:
            file_value = table[key]
            if not isinstance(file_value, bool):
                raise ValueError(f"Invalid boolean value for [{section}] {key}: {file_value!r}")
            return file_value
        return default


def _collect_tool_values(source: _Source, env_suffix: str, key_suffix: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for name in SUPPORTED_TOOLS:
        value = source.get(f"AGENTLOOP_{name.upper()}_{env_suffix}", "tools", f"{name}_{key_suffix}", "")
        if str(value).strip():
            values[name] = str(value).strip()
    return values


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
