"""Execution agent backends."""

from taskloop.coordinator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from taskloop.coordinator.backend.cli_backend import AgentRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
]
