"""Ordered tool chain with rate-limit fallback and timed recovery.

The chain starts on the most preferred tool. A rate-limited or failing tool
hands the same prompt to the next one; tools earlier in the list become
eligible again once their rate-limit timer expires, checked at the start of
every call.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from agentloop.orchestrator.backend.base import ToolOutput, ToolRunner
from agentloop.orchestrator.backend.cli_backend import CliToolRunner, ToolInvocationError
from agentloop.orchestrator.tools import ToolOverrides, ToolSpec, parse_tool_names, resolve_tools
from agentloop.orchestrator.transcript import NullTranscript, Transcript

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_TIMEOUT_SECONDS = 300.0


class ToolsExhaustedError(RuntimeError):
    """Every configured tool is rate-limited."""


class ToolChain:
    """Per-worker fallback chain. Not shared between threads."""

    def __init__(
        self,
        tools: list[ToolSpec],
        *,
        runner: ToolRunner | None = None,
        rate_limit_timeout_seconds: float = DEFAULT_RATE_LIMIT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        transcript: Transcript | None = None,
    ) -> None:
        if not tools:
            raise ValueError("No valid LLM tools specified")
        self.tools = list(tools)
        self.current_index = 0
        self._runner = runner or CliToolRunner()
        self._timeout = rate_limit_timeout_seconds
        self._clock = clock
        self._rate_limited_at: dict[str, float] = {}
        self.transcript: Transcript = transcript or NullTranscript()

    @classmethod
    def from_names(
        cls,
        raw_names: str,
        *,
        overrides: ToolOverrides | None = None,
        **kwargs,
    ) -> ToolChain:
        return cls(resolve_tools(parse_tool_names(raw_names), overrides), **kwargs)

    @property
    def current_tool(self) -> ToolSpec:
        return self.tools[self.current_index]

    def is_rate_limit_expired(self, tool: ToolSpec) -> bool:
        marked_at = self._rate_limited_at.get(tool.name)
        if marked_at is None:
            return True
        return self._clock() - marked_at >= self._timeout

    def _note(self, text: str) -> None:
        logger.info(text)
        self.transcript.message(text)

    def _reset_to_preferred(self) -> None:
        for index in range(self.current_index):
            tool = self.tools[index]
            if self.is_rate_limit_expired(tool):
                self._note(
                    f"Rate limit timeout expired for {tool.name}. Resetting to preferred tool.",
                )
                self.current_index = index
                return

    def _switch_to_next(self) -> ToolSpec | None:
        if self.current_index >= len(self.tools) - 1:
            return None
        self.current_index += 1
        tool = self.current_tool
        self._note(f"Switching to fallback tool: {tool.name}")
        return tool

    def invoke(self, prompt: str) -> ToolOutput:
        """Run ``prompt`` on the first usable tool.

        Raises:
            ToolsExhaustedError: the last tool in the chain was rate-limited.
            ToolInvocationError: the last tool in the chain failed to run.
        """

        return self._invoke(prompt, thinking=True)

    def invoke_without_thinking(self, prompt: str) -> ToolOutput:
        """Same fallback rules, with each tool's low-effort mode switched on."""

        return self._invoke(prompt, thinking=False)

    def _invoke(self, prompt: str, *, thinking: bool) -> ToolOutput:
        self._reset_to_preferred()
        while True:
            tool = self.current_tool
            self._note(f"Using LLM tool: {tool.name}")
            try:
                output = self._runner.run(tool.build_request(prompt, thinking=thinking))
            except ToolInvocationError as error:
                self._note(f"Error invoking {tool.name}: {error}")
                if self._switch_to_next() is None:
                    raise
                continue

            if tool.is_rate_limited(output.stdout, output.stderr):
                self._rate_limited_at[tool.name] = self._clock()
                self._note(
                    f"Rate limit detected for {tool.name}. "
                    f"Temporarily squelching for {self._timeout:g} seconds.",
                )
                if self._switch_to_next() is None:
                    raise ToolsExhaustedError("All LLM tools exhausted due to rate limits")
                continue
            return output
