"""Controllers for plan-runner CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from plan_runner.config import Settings
from plan_runner.orchestrator.contracts import read_plan_submission
from plan_runner.orchestrator.errors import (
    CheckpointCorruptionError,
    InvalidPlanTransitionError,
    PlanNotFoundError,
    PlanValidationError,
)
from plan_runner.orchestrator.models import PlanOutcome, PlanRunResult, PlanStatusView
from plan_runner.orchestrator.services import PlanOrchestrator
from plan_runner.storage.common import to_iso

logger = logging.getLogger(__name__)

_WAIT_TICK_SECONDS = 0.5


@dataclass(slots=True)
class PlanRunCommand:
    """CLI input for submitting and running a plan file."""

    db_path: Path | None
    plan_file: Path


@dataclass(slots=True)
class PlanTargetCommand:
    """CLI input for commands addressing one plan (resume, cancel, status)."""

    db_path: Path | None
    plan_id: str


@dataclass(slots=True)
class PlanEventsCommand:
    """CLI input for the archived event log of one plan."""

    db_path: Path | None
    plan_id: str
    limit: int


@dataclass(slots=True)
class PlanListCommand:
    """CLI input for listing resumable plans."""

    db_path: Path | None


@dataclass(slots=True)
class PlanMaintenanceCommand:
    """CLI input for retention cleanup."""

    db_path: Path | None


@dataclass(slots=True)
class PlanCommandResult:
    """Printable lines plus whether the command should exit successfully."""

    lines: list[str]
    success: bool = True


class PlanCliController:
    """Coordinates plan execution, control and inspection CLI operations."""

    def run(self, command: PlanRunCommand) -> PlanCommandResult:
        try:
            submission = read_plan_submission(command.plan_file)
        except (OSError, TypeError, ValueError) as error:
            return PlanCommandResult(lines=[f"Invalid plan file: {error}"], success=False)

        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                plan_id = orchestrator.create_plan(
                    submission.task_description,
                    submission.subtasks,
                    submission.working_directory,
                    context=submission.context,
                    plan_id=submission.plan_id,
                )
            except PlanValidationError as error:
                return PlanCommandResult(lines=[f"Plan rejected: {error}"], success=False)
            lines = [
                f"Plan created: plan_id={plan_id} subtasks={len(submission.subtasks)} "
                f"workdir={submission.working_directory}",
            ]
            orchestrator.start_plan(plan_id)
            result = _wait_for_plan(orchestrator, plan_id)

        lines.extend(_result_lines(result))
        return PlanCommandResult(lines=lines, success=result.outcome is PlanOutcome.SUCCESS)

    def resume(self, command: PlanTargetCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                orchestrator.start_resume(command.plan_id)
            except PlanNotFoundError:
                return _not_found(command.plan_id)
            except InvalidPlanTransitionError as error:
                return PlanCommandResult(lines=[str(error)], success=False)
            except CheckpointCorruptionError as error:
                return PlanCommandResult(
                    lines=[f"Plan failed: {command.plan_id}", f"Reason: {error}"],
                    success=False,
                )
            result = _wait_for_plan(orchestrator, command.plan_id)

        lines = [f"Plan resumed: {command.plan_id}", *_result_lines(result)]
        return PlanCommandResult(lines=lines, success=result.outcome is PlanOutcome.SUCCESS)

    def cancel(self, command: PlanTargetCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                orchestrator.cancel_plan(command.plan_id)
            except PlanNotFoundError:
                return _not_found(command.plan_id)
            except InvalidPlanTransitionError as error:
                return PlanCommandResult(lines=[str(error)], success=False)
        return PlanCommandResult(lines=[f"Plan canceled: {command.plan_id}"])

    def status(self, command: PlanTargetCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                view = orchestrator.get_status(command.plan_id)
            except PlanNotFoundError:
                return _not_found(command.plan_id)
        return PlanCommandResult(lines=_status_lines(view))

    def events(self, command: PlanEventsCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            if orchestrator.repository.get_plan(command.plan_id) is None:
                return _not_found(command.plan_id)
            events = orchestrator.repository.list_events(command.plan_id, limit=command.limit)

        lines = [f"Events for {command.plan_id}: {len(events)}"]
        for event in events:
            summary = event.details.get("summary") or event.details.get("trigger") or ""
            lines.append(
                f"- {to_iso(event.created_at)} {event.event_type} "
                f"subtask={event.subtask_id or '-'} {summary}".rstrip(),
            )
        return PlanCommandResult(lines=lines)

    def resumable(self, command: PlanListCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            records = orchestrator.list_resumable()

        lines = [f"Resumable plans: {len(records)}"]
        lines.extend(
            f"- {record.plan_id} status={record.status.value} "
            f"updated={to_iso(record.updated_at)} task={record.task_description[:60]}"
            for record in records
        )
        return PlanCommandResult(lines=lines)

    def maintenance(self, command: PlanMaintenanceCommand) -> PlanCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            report = orchestrator.run_maintenance()
        return PlanCommandResult(
            lines=[
                f"Pruned plans: {len(report.pruned_plans)}",
                f"Reclaimed checkpoints: {len(report.reclaimed_checkpoints)}",
            ],
        )


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[PlanOrchestrator]:
    orchestrator = PlanOrchestrator.from_settings(settings)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


def _wait_for_plan(orchestrator: PlanOrchestrator, plan_id: str) -> PlanRunResult:
    """Wait for the plan loop; Ctrl-C checkpoints the plan and leaves it paused."""

    try:
        result = orchestrator.wait(plan_id, timeout=_WAIT_TICK_SECONDS)
        while result is None:
            result = orchestrator.wait(plan_id, timeout=_WAIT_TICK_SECONDS)
    except KeyboardInterrupt:
        logger.warning("Interrupted, pausing plan %s", plan_id)
        orchestrator.shutdown()
        result = orchestrator.wait(plan_id)
        if result is None:
            raise
    return result


def _result_lines(result: PlanRunResult) -> list[str]:
    return [
        f"Plan {result.plan_id}: status={result.status.value} outcome={result.outcome.value}",
        f"Summary: {result.summary}",
        f"Completed: {_joined(result.completed)}",
        f"Failed: {_joined(result.failed)}",
        f"Pending: {_joined(result.pending)}",
    ]


def _status_lines(view: PlanStatusView) -> list[str]:
    return [
        f"Plan: {view.plan_id}",
        f"Task: {view.task_description}",
        f"Status: {view.status.value}",
        f"Outcome: {view.outcome.value if view.outcome else '-'}",
        f"Failure reason: {view.failure_reason or '-'}",
        f"Summary: {view.summary or '-'}",
        f"Subtasks: {view.subtask_count} (estimated {view.estimated_minutes} min)",
        f"Completed: {_joined(view.completed)}",
        f"Failed: {_joined(view.failed)}",
        f"Running: {_joined(view.running)}",
        f"Pending: {_joined(view.pending)}",
        f"Checkpoint: {'yes' if view.has_checkpoint else 'no'}",
        f"Updated: {to_iso(view.updated_at)}",
    ]


def _not_found(plan_id: str) -> PlanCommandResult:
    return PlanCommandResult(lines=[f"Plan not found: {plan_id}"], success=False)


def _joined(values: list[str]) -> str:
    return ", ".join(values) if values else "-"
