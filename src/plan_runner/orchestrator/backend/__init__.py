"""Agent process backend implementations."""

from plan_runner.orchestrator.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from plan_runner.orchestrator.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
]
