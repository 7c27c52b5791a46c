"""Backend interface for external agent processes."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from plan_runner.orchestrator.models import TerminationReason


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one agent process."""

    instructions: str
    instructions_file: Path
    working_directory: Path
    session_name: str
    command_template: str
    stdout_path: Path
    stderr_path: Path
    env: dict[str, str] = field(default_factory=dict)
    graceful_shutdown_seconds: float = 5.0
    poll_interval_seconds: float = 0.1
    # Polled on every sweep; a non-None reason terminates the process.
    termination_check: Callable[[], TerminationReason | None] | None = None
    on_output: Callable[[str, str], None] | None = None
    on_spawn: Callable[[int], None] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    stdout_path: Path
    stderr_path: Path
    duration_seconds: float
    terminated: TerminationReason | None = None
    forced_kill: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run one agent process to completion or termination."""
