"""Dependency Scheduler: ready-set computation and wave execution."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from plan_runner.orchestrator.errors import PlanValidationError
from plan_runner.orchestrator.models import (
    ExecutionState,
    FailureReason,
    Plan,
    PlanOutcome,
    Subtask,
    SubtaskOutcome,
    SubtaskOutcomeStatus,
    SubtaskStatus,
)
from plan_runner.storage.common import utc_now

logger = logging.getLogger(__name__)

LaunchFn = Callable[[Subtask], SubtaskOutcome]
OutcomeHandler = Callable[[SubtaskOutcome], None]
LaunchHandler = Callable[[Subtask], None]


@dataclass(slots=True)
class WaveResult:
    """Settled results of one concurrent wave."""

    launched: list[str]
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    interrupted: list[str] = field(default_factory=list)
    resource_exhausted: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SchedulingResult:
    """Why the scheduling loop stopped."""

    outcome: PlanOutcome
    summary: str
    passes: int
    details: dict[str, Any] = field(default_factory=dict)


def find_cycle(subtasks: Iterable[Subtask]) -> list[str] | None:
    """Return one dependency cycle as an id path (first id repeated last), if any."""

    graph = {subtask.subtask_id: subtask.dependencies for subtask in subtasks}
    visiting, done = 1, 2
    marks: dict[str, int] = {}

    for root in graph:
        if marks.get(root) == done:
            continue
        path: list[str] = [root]
        iterators = [iter(graph[root])]
        marks[root] = visiting
        while iterators:
            dependency = next(iterators[-1], None)
            if dependency is None:
                marks[path.pop()] = done
                iterators.pop()
                continue
            if dependency not in graph:
                continue
            mark = marks.get(dependency)
            if mark == visiting:
                return [*path[path.index(dependency) :], dependency]
            if mark is None:
                marks[dependency] = visiting
                path.append(dependency)
                iterators.append(iter(graph[dependency]))
    return None


def validate_subtasks(subtasks: list[Subtask]) -> None:
    """Reject plans the scheduler could never finish."""

    seen: set[str] = set()
    for subtask in subtasks:
        if subtask.subtask_id in seen:
            raise PlanValidationError(f"Duplicate subtask id: {subtask.subtask_id!r}")
        seen.add(subtask.subtask_id)

    for subtask in subtasks:
        for dependency in subtask.dependencies:
            if dependency == subtask.subtask_id:
                raise PlanValidationError(f"Subtask {subtask.subtask_id!r} depends on itself")
            if dependency not in seen:
                raise PlanValidationError(
                    f"Subtask {subtask.subtask_id!r} depends on unknown subtask {dependency!r}",
                )

    cycle = find_cycle(subtasks)
    if cycle is not None:
        raise PlanValidationError(f"Dependency cycle: {' -> '.join(cycle)}")


class DependencyScheduler:
    """Runs a plan as successive waves of dependency-ready subtasks."""

    def __init__(
        self,
        *,
        max_passes: int = 10,
        settle_delay_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_passes = max_passes
        self.settle_delay_seconds = settle_delay_seconds
        self._sleep = sleep

    @staticmethod
    def ready_subtasks(plan: Plan, state: ExecutionState) -> list[Subtask]:
        """Pending subtasks whose every dependency is completed, in plan order."""

        completed, failed, running = state.as_sets()
        resolved_or_running = set(completed) | set(failed) | set(running)
        completed_ids = set(completed)
        return [
            subtask
            for subtask in plan.subtasks
            if subtask.subtask_id not in resolved_or_running
            and all(dependency in completed_ids for dependency in subtask.dependencies)
        ]

    def evaluate(self, plan: Plan, state: ExecutionState) -> SchedulingResult | None:
        """Terminal verdict when every subtask is resolved, otherwise None."""

        completed, failed, running = state.as_sets()
        total = len(plan.subtasks)
        if len(completed) == total:
            return SchedulingResult(
                outcome=PlanOutcome.SUCCESS,
                summary=f"All {total} subtasks completed",
                passes=state.scheduling_passes,
            )
        if not running and len(completed) + len(failed) == total:
            return SchedulingResult(
                outcome=PlanOutcome.PARTIAL_SUCCESS,
                summary=(
                    f"{len(completed)} of {total} subtasks completed, "
                    f"{len(failed)} failed: {', '.join(failed)}"
                ),
                passes=state.scheduling_passes,
                details={"completed": completed, "failed": failed},
            )
        return None

    def run(
        self,
        plan: Plan,
        state: ExecutionState,
        *,
        launch: LaunchFn,
        on_launch: LaunchHandler | None = None,
        on_outcome: OutcomeHandler | None = None,
        stop_requested: Callable[[], bool] | None = None,
    ) -> SchedulingResult:
        """Drive waves until the plan resolves, stalls, or a stop is requested.

        The pass ceiling applies to this call; ``state.scheduling_passes`` keeps
        the lifetime total across resumes.
        """

        passes = 0
        while True:
            verdict = self.evaluate(plan, state)
            if verdict is not None:
                return verdict

            if stop_requested is not None and stop_requested():
                return SchedulingResult(
                    outcome=PlanOutcome.STOPPED,
                    summary="Scheduling stopped on request",
                    passes=state.scheduling_passes,
                )

            ready = self.ready_subtasks(plan, state)
            if not ready:
                return self._stalled_result(plan, state)

            if passes >= self.max_passes:
                pending = sorted(state.pending)
                return SchedulingResult(
                    outcome=PlanOutcome.ITERATION_LIMIT,
                    summary=(
                        f"Scheduling pass limit ({self.max_passes}) reached with "
                        f"{len(pending)} subtask(s) unresolved"
                    ),
                    passes=state.scheduling_passes,
                    details={"unresolved": pending, "max_passes": self.max_passes},
                )

            passes += 1
            state.increment_passes()
            wave = self.run_wave(
                plan,
                state,
                ready,
                launch=launch,
                on_launch=on_launch,
                on_outcome=on_outcome,
            )

            if wave.resource_exhausted:
                return SchedulingResult(
                    outcome=PlanOutcome.RESOURCE_EXHAUSTED,
                    summary=(
                        "Concurrent session ceiling reached while launching "
                        f"{', '.join(wave.resource_exhausted)}"
                    ),
                    passes=state.scheduling_passes,
                    details={"rejected": wave.resource_exhausted},
                )

            if self.settle_delay_seconds > 0:
                self._sleep(self.settle_delay_seconds)

    def run_wave(  # noqa: PLR0913
        self,
        plan: Plan,
        state: ExecutionState,
        ready: list[Subtask],
        *,
        launch: LaunchFn,
        on_launch: LaunchHandler | None = None,
        on_outcome: OutcomeHandler | None = None,
    ) -> WaveResult:
        """Launch every ready subtask concurrently and wait for all of them."""

        wave = WaveResult(launched=[subtask.subtask_id for subtask in ready])
        for subtask in ready:
            state.transition(subtask.subtask_id, SubtaskStatus.RUNNING)
        logger.info(
            "Plan %s pass %d: launching %s",
            plan.plan_id,
            state.scheduling_passes,
            ", ".join(wave.launched),
        )
        if on_launch is not None:
            for subtask in ready:
                on_launch(subtask)

        with ThreadPoolExecutor(
            max_workers=len(ready),
            thread_name_prefix=f"plan-{plan.plan_id}",
        ) as pool:
            futures = {pool.submit(launch, subtask): subtask for subtask in ready}
            # Completion order is arbitrary; each outcome is recorded as it arrives.
            for future in as_completed(futures):
                subtask = futures[future]
                try:
                    outcome = future.result()
                except Exception as error:  # noqa: BLE001
                    logger.exception(
                        "Launching subtask %s of plan %s raised",
                        subtask.subtask_id,
                        plan.plan_id,
                    )
                    outcome = SubtaskOutcome(
                        subtask_id=subtask.subtask_id,
                        status=SubtaskOutcomeStatus.FAILED,
                        summary=f"Internal error: {error}",
                        failure_reason=FailureReason.INTERNAL_ERROR,
                        finished_at=utc_now(),
                    )
                self._record(state, wave, outcome)
                if on_outcome is not None:
                    try:
                        on_outcome(outcome)
                    except Exception:  # noqa: BLE001
                        logger.exception(
                            "Outcome handler failed for subtask %s of plan %s",
                            subtask.subtask_id,
                            plan.plan_id,
                        )
        return wave

    @staticmethod
    def _record(state: ExecutionState, wave: WaveResult, outcome: SubtaskOutcome) -> None:
        subtask_id = outcome.subtask_id
        if outcome.status is SubtaskOutcomeStatus.COMPLETED:
            state.transition(subtask_id, SubtaskStatus.COMPLETED)
            wave.completed.append(subtask_id)
        elif outcome.status is SubtaskOutcomeStatus.FAILED:
            state.transition(subtask_id, SubtaskStatus.FAILED)
            wave.failed.append(subtask_id)
            if outcome.failure_reason is FailureReason.RESOURCE_EXHAUSTED:
                wave.resource_exhausted.append(subtask_id)
        else:
            # Interrupted work is not attempted yet; it will be relaunched on resume.
            state.transition(subtask_id, SubtaskStatus.PENDING)
            wave.interrupted.append(subtask_id)

    @staticmethod
    def _stalled_result(plan: Plan, state: ExecutionState) -> SchedulingResult:
        pending = sorted(state.pending)
        failed = state.failed
        pending_subtasks = [subtask for subtask in plan.subtasks if subtask.subtask_id in pending]

        cycle = find_cycle(pending_subtasks)
        if cycle is not None:
            return SchedulingResult(
                outcome=PlanOutcome.DEPENDENCY_CYCLE,
                summary=f"Dependency cycle detected: {' -> '.join(cycle)}",
                passes=state.scheduling_passes,
                details={"cycle": cycle, "unresolved": pending},
            )

        blocked_by: dict[str, list[str]] = {}
        for subtask in pending_subtasks:
            failed_deps = [dep for dep in subtask.dependencies if dep in failed]
            if failed_deps:
                blocked_by[subtask.subtask_id] = failed_deps
        return SchedulingResult(
            outcome=PlanOutcome.DEADLOCK,
            summary=(
                f"Deadlock: {len(pending)} subtask(s) can never become ready "
                f"because dependencies failed ({', '.join(sorted(failed))})"
            ),
            passes=state.scheduling_passes,
            details={"unresolved": pending, "blocked_by": blocked_by},
        )
