"""Exception taxonomy for plan orchestration."""

from __future__ import annotations


class PlanRunnerError(RuntimeError):
    """Base class for orchestration errors."""


class PlanValidationError(PlanRunnerError, ValueError):
    """Plan cannot be created: duplicate ids, unknown dependencies or a cycle."""


class PlanNotFoundError(PlanRunnerError, LookupError):
    """No plan (or checkpoint) exists for the given id."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class InvalidPlanTransitionError(PlanRunnerError):
    """Requested control operation is not allowed in the plan's current status."""


class InvalidSubtaskTransitionError(PlanRunnerError):
    """Subtask status change would break the execution-state invariants."""


class ResourceExhaustedError(PlanRunnerError):
    """Global ceiling on concurrently running sessions was reached."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Concurrent session ceiling reached ({limit} sessions)")
        self.limit = limit


class CheckpointCorruptionError(PlanRunnerError):
    """Persisted checkpoint cannot be read back."""

    def __init__(self, plan_id: str, detail: str) -> None:
        super().__init__(f"Checkpoint unreadable for plan {plan_id}: {detail}")
        self.plan_id = plan_id
        self.detail = detail
