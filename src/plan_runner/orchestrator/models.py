"""Domain models for plans, subtasks and their execution state."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from plan_runner.orchestrator.errors import InvalidSubtaskTransitionError


class PlanStatus(str, Enum):
    """Plan lifecycle states."""

    PLANNING = "planning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_PLAN_STATUSES = frozenset(
    {PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELED},
)


class SubtaskStatus(str, Enum):
    """Tagged per-subtask status, the single source of truth for execution state."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why one subtask failed."""

    EXIT_NONZERO = "exit_nonzero"
    HARD_TIMEOUT = "hard_timeout"
    INACTIVITY = "inactivity"
    SPAWN_ERROR = "spawn_error"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    INTERNAL_ERROR = "internal_error"


class TerminationReason(str, Enum):
    """Why a live session was terminated before its process exited on its own."""

    HARD_TIMEOUT = "hard_timeout"
    INACTIVITY = "inactivity"
    PAUSED = "paused"
    CANCELED = "canceled"
    SHUTDOWN = "shutdown"


# Terminations requested by the operator or the host leave the subtask resumable.
INTERRUPTING_TERMINATIONS = frozenset(
    {TerminationReason.PAUSED, TerminationReason.CANCELED, TerminationReason.SHUTDOWN},
)


class PlanOutcome(str, Enum):
    """Machine-readable terminal status of one scheduling run."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    DEADLOCK = "deadlock"
    DEPENDENCY_CYCLE = "dependency_cycle"
    ITERATION_LIMIT = "iteration_limit"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CHECKPOINT_UNREADABLE = "checkpoint_unreadable"
    INTERNAL_ERROR = "internal_error"
    STOPPED = "stopped"


class WorkerKind(str, Enum):
    """Kind of agent worker assigned to a subtask."""

    CODE_GENERATOR = "code_generator"
    TESTER = "tester"
    DOCUMENTATION = "documentation"
    DEPLOYMENT = "deployment"


@dataclass(slots=True, frozen=True)
class Subtask:
    """One independently executable piece of a plan."""

    subtask_id: str
    name: str
    description: str = ""
    subtask_type: str = "development"
    dependencies: tuple[str, ...] = ()
    priority: str = "medium"
    estimated_minutes: int = 0
    high_complexity: bool = False


@dataclass(slots=True)
class Plan:
    """Decomposed unit of work: subtasks plus their dependency edges."""

    plan_id: str
    task_description: str
    subtasks: list[Subtask]
    working_directory: Path
    created_at: datetime
    status: PlanStatus = PlanStatus.PLANNING

    @property
    def estimated_minutes(self) -> int:
        return sum(subtask.estimated_minutes for subtask in self.subtasks)

    @property
    def subtask_ids(self) -> list[str]:
        return [subtask.subtask_id for subtask in self.subtasks]

    def subtask(self, subtask_id: str) -> Subtask:
        for subtask in self.subtasks:
            if subtask.subtask_id == subtask_id:
                return subtask
        raise KeyError(subtask_id)


_ALLOWED_TRANSITIONS: dict[SubtaskStatus, frozenset[SubtaskStatus]] = {
    SubtaskStatus.PENDING: frozenset({SubtaskStatus.RUNNING}),
    SubtaskStatus.RUNNING: frozenset(
        {SubtaskStatus.COMPLETED, SubtaskStatus.FAILED, SubtaskStatus.PENDING},
    ),
    SubtaskStatus.COMPLETED: frozenset(),
    SubtaskStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class ExecutionState:
    """Mutable per-plan progress record.

    Each subtask carries exactly one tagged status, so the completed, failed and
    running sets are derived views and can never overlap. Not-yet-attempted
    subtasks are the ``pending`` ones.
    """

    statuses: dict[str, SubtaskStatus]
    scheduling_passes: int = 0
    _lock: threading.RLock = field(
        default_factory=threading.RLock,
        init=False,
        repr=False,
        compare=False,
    )

    @classmethod
    def for_plan(cls, plan: Plan) -> ExecutionState:
        return cls(statuses=dict.fromkeys(plan.subtask_ids, SubtaskStatus.PENDING))

    @classmethod
    def from_sets(
        cls,
        *,
        subtask_ids: Iterable[str],
        completed: Iterable[str],
        failed: Iterable[str],
        running: Iterable[str],
        scheduling_passes: int = 0,
    ) -> ExecutionState:
        """Rebuild tagged statuses from persisted arrays, rejecting overlaps."""

        statuses = {subtask_id: SubtaskStatus.PENDING for subtask_id in subtask_ids}
        for status, ids in (
            (SubtaskStatus.COMPLETED, completed),
            (SubtaskStatus.FAILED, failed),
            (SubtaskStatus.RUNNING, running),
        ):
            for subtask_id in ids:
                if subtask_id not in statuses:
                    raise ValueError(f"Unknown subtask id in execution state: {subtask_id!r}")
                if statuses[subtask_id] is not SubtaskStatus.PENDING:
                    raise ValueError(
                        f"Subtask {subtask_id!r} appears in more than one status set",
                    )
                statuses[subtask_id] = status
        return cls(statuses=statuses, scheduling_passes=scheduling_passes)

    def status_of(self, subtask_id: str) -> SubtaskStatus:
        with self._lock:
            return self.statuses[subtask_id]

    def ids_with(self, status: SubtaskStatus) -> frozenset[str]:
        with self._lock:
            return frozenset(
                subtask_id for subtask_id, current in self.statuses.items() if current is status
            )

    @property
    def completed(self) -> frozenset[str]:
        return self.ids_with(SubtaskStatus.COMPLETED)

    @property
    def failed(self) -> frozenset[str]:
        return self.ids_with(SubtaskStatus.FAILED)

    @property
    def running(self) -> frozenset[str]:
        return self.ids_with(SubtaskStatus.RUNNING)

    @property
    def pending(self) -> frozenset[str]:
        return self.ids_with(SubtaskStatus.PENDING)

    def transition(self, subtask_id: str, target: SubtaskStatus) -> None:
        with self._lock:
            current = self.statuses[subtask_id]
            if target not in _ALLOWED_TRANSITIONS[current]:
                raise InvalidSubtaskTransitionError(
                    f"Subtask {subtask_id!r} cannot move from {current.value} to {target.value}",
                )
            self.statuses[subtask_id] = target

    def reclassify_running(self) -> list[str]:
        """Move every running subtask back to pending; returns the moved ids."""

        with self._lock:
            moved = sorted(
                subtask_id
                for subtask_id, status in self.statuses.items()
                if status is SubtaskStatus.RUNNING
            )
            for subtask_id in moved:
                self.statuses[subtask_id] = SubtaskStatus.PENDING
            return moved

    def as_sets(self) -> tuple[list[str], list[str], list[str]]:
        """Consistent sorted (completed, failed, running) view taken under one lock."""

        with self._lock:
            completed: list[str] = []
            failed: list[str] = []
            running: list[str] = []
            for subtask_id, status in sorted(self.statuses.items()):
                if status is SubtaskStatus.COMPLETED:
                    completed.append(subtask_id)
                elif status is SubtaskStatus.FAILED:
                    failed.append(subtask_id)
                elif status is SubtaskStatus.RUNNING:
                    running.append(subtask_id)
            return completed, failed, running

    def copy(self) -> ExecutionState:
        with self._lock:
            return ExecutionState(
                statuses=dict(self.statuses),
                scheduling_passes=self.scheduling_passes,
            )

    def increment_passes(self) -> int:
        with self._lock:
            self.scheduling_passes += 1
            return self.scheduling_passes


class SubtaskOutcomeStatus(str, Enum):
    """How one subtask execution resolved."""

    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class SubtaskOutcome:
    """Result of one Process Executor call."""

    subtask_id: str
    status: SubtaskOutcomeStatus
    summary: str
    failure_reason: FailureReason | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlanRunResult:
    """What a scheduling run ended with."""

    plan_id: str
    status: PlanStatus
    outcome: PlanOutcome
    summary: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PlanStatusView:
    """Readable plan view for CLI and callers."""

    plan_id: str
    task_description: str
    status: PlanStatus
    outcome: PlanOutcome | None
    failure_reason: str | None
    summary: str | None
    completed: list[str]
    failed: list[str]
    running: list[str]
    pending: list[str]
    subtask_count: int
    estimated_minutes: int
    created_at: datetime
    updated_at: datetime
    has_checkpoint: bool = False


@dataclass(slots=True)
class PlanRecordView:
    """Archived plan row."""

    plan_id: str
    task_description: str
    working_directory: str
    status: PlanStatus
    outcome: PlanOutcome | None
    failure_reason: str | None
    summary: str | None
    subtask_count: int
    estimated_minutes: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    owner_id: str | None = None
    heartbeat_at: datetime | None = None


@dataclass(slots=True)
class PlanEventView:
    """Archived plan event for the audit trail."""

    event_id: str
    plan_id: str
    subtask_id: str | None
    event_type: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
