"""Tool runner implementations."""

from agentloop.orchestrator.backend.base import ToolOutput, ToolRunner, ToolRunRequest
from agentloop.orchestrator.backend.cli_backend import CliToolRunner, ToolInvocationError

__all__ = [
    "CliToolRunner",
    "ToolInvocationError",
    "ToolOutput",
    "ToolRunRequest",
    "ToolRunner",
]
