from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from plan_runner.config import Settings
from plan_runner.orchestrator.errors import (
    InvalidPlanTransitionError,
    PlanNotFoundError,
    PlanValidationError,
)
from plan_runner.orchestrator.events import PlanEventType
from plan_runner.orchestrator.models import (
    ExecutionState,
    PlanOutcome,
    PlanStatus,
    Subtask,
    SubtaskStatus,
)
from plan_runner.orchestrator.services import PlanOrchestrator
from plan_runner.storage.common import utc_now

pytestmark = [
    allure.epic("Plan Runtime"),
    allure.feature("Plan Orchestrator"),
]


def _subtask(subtask_id: str, directives: str = "", *dependencies: str) -> Subtask:
    return Subtask(
        subtask_id=subtask_id,
        name=f"Step {subtask_id}",
        description=directives,
        dependencies=dependencies,
    )


def _started_signal(orchestrator: PlanOrchestrator) -> threading.Event:
    started = threading.Event()
    orchestrator.events.subscribe(lambda event: started.set(), [PlanEventType.SUBTASK_STARTED])
    return started


def _event_types(orchestrator: PlanOrchestrator, plan_id: str) -> list[PlanEventType]:
    return [
        event.event_type
        for event in orchestrator.events.history(plan_id)
        if event.event_type
        not in (PlanEventType.SUBTASK_OUTPUT, PlanEventType.CHECKPOINT_CREATED)
    ]


def test_diamond_plan_runs_to_completion(orchestrator: PlanOrchestrator, workspace: Path) -> None:
    plan_id = orchestrator.create_plan(
        "Produce three files",
        [
            _subtask("A", "agent:touch=a.txt"),
            _subtask("B", "agent:touch=b.txt"),
            _subtask("C", "agent:require=a.txt agent:require=b.txt agent:touch=c.txt", "A", "B"),
        ],
        workspace,
    )

    result = orchestrator.run_plan(plan_id)

    assert result.status is PlanStatus.COMPLETED
    assert result.outcome is PlanOutcome.SUCCESS
    assert result.completed == ["A", "B", "C"]
    assert (workspace / "c.txt").is_file()

    types = _event_types(orchestrator, plan_id)
    assert types[0] is PlanEventType.PLAN_STARTED
    assert types[-1] is PlanEventType.PLAN_COMPLETED
    assert types.count(PlanEventType.SUBTASK_COMPLETED) == 3
    started_c = [
        index
        for index, event in enumerate(orchestrator.events.history(plan_id))
        if event.event_type is PlanEventType.SUBTASK_STARTED and event.subtask_id == "C"
    ][0]
    completed_before_c = {
        event.subtask_id
        for event in orchestrator.events.history(plan_id)[:started_c]
        if event.event_type is PlanEventType.SUBTASK_COMPLETED
    }
    assert completed_before_c == {"A", "B"}

    view = orchestrator.get_status(plan_id)
    assert view.status is PlanStatus.COMPLETED
    assert view.outcome is PlanOutcome.SUCCESS
    assert view.has_checkpoint is False
    assert all(
        worker.status is SubtaskStatus.COMPLETED for worker in orchestrator.list_workers(plan_id)
    )
    completed_event = orchestrator.events.history(plan_id, [PlanEventType.PLAN_COMPLETED])[0]
    assert completed_event.details["workspace"]["status"] == "inspected"
    archived = [event.event_type for event in orchestrator.repository.list_events(plan_id)]
    assert "subtask_output" not in archived
    assert archived[-1] == "plan_completed"


def test_status_survives_a_new_process(
    orchestrator: PlanOrchestrator,
    settings: Settings,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan("One file", [_subtask("A", "agent:touch=a.txt")], workspace)
    orchestrator.run_plan(plan_id)

    fresh = PlanOrchestrator.from_settings(settings)
    try:
        view = fresh.get_status(plan_id)
    finally:
        fresh.close()

    assert view.status is PlanStatus.COMPLETED
    assert view.completed == ["A"]
    assert view.pending == []
    with pytest.raises(PlanNotFoundError):
        orchestrator.get_status("plan-unknown")


def test_failed_dependency_fails_plan_with_deadlock(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan(
        "Deadlock",
        [_subtask("A", "agent:exit=2"), _subtask("B", "", "A"), _subtask("C", "agent:touch=c.txt")],
        workspace,
    )

    result = orchestrator.run_plan(plan_id)

    assert result.status is PlanStatus.FAILED
    assert result.outcome is PlanOutcome.DEADLOCK
    assert result.completed == ["C"]
    assert result.failed == ["A"]
    assert result.pending == ["B"]

    record = orchestrator.repository.require_plan(plan_id)
    assert record.failure_reason == "deadlock"
    assert orchestrator.checkpoints.exists(plan_id)

    failed_event = orchestrator.events.history(plan_id, [PlanEventType.PLAN_FAILED])[0]
    assert failed_event.details["reason"] == "deadlock"
    assert failed_event.details["blocked_by"] == {"B": ["A"]}
    subtask_failed = orchestrator.events.history(plan_id, [PlanEventType.SUBTASK_FAILED])[0]
    assert subtask_failed.subtask_id == "A"
    assert subtask_failed.details["reason"] == "exit_nonzero"
    assert subtask_failed.details["exit_code"] == 2


def test_independent_failure_is_partial_success(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan(
        "Partial",
        [_subtask("A", "agent:exit=1"), _subtask("B", "agent:touch=b.txt")],
        workspace,
    )

    result = orchestrator.run_plan(plan_id)

    assert result.status is PlanStatus.COMPLETED
    assert result.outcome is PlanOutcome.PARTIAL_SUCCESS
    assert orchestrator.get_status(plan_id).has_checkpoint is True


@pytest.mark.parametrize(
    ("task", "subtasks", "message"),
    [
        ("  ", [_subtask("A")], "Task description"),
        ("Task", [], "at least one subtask"),
        ("Task", [_subtask("A", "", "B"), _subtask("B", "", "A")], "Dependency cycle"),
        ("Task", [_subtask("A", "", "missing")], "unknown subtask"),
    ],
)
def test_create_plan_rejects_invalid_plans(
    orchestrator: PlanOrchestrator,
    workspace: Path,
    task: str,
    subtasks: list[Subtask],
    message: str,
) -> None:
    with pytest.raises(PlanValidationError, match=message):
        orchestrator.create_plan(task, subtasks, workspace)


def test_create_plan_rejects_bad_or_duplicate_ids(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    orchestrator.create_plan("Task", [_subtask("A")], workspace, plan_id="plan-fixed")

    with pytest.raises(PlanValidationError, match="already exists"):
        orchestrator.create_plan("Task", [_subtask("A")], workspace, plan_id="plan-fixed")
    with pytest.raises(PlanValidationError, match="Invalid plan id"):
        orchestrator.create_plan("Task", [_subtask("A")], workspace, plan_id="../escape")

    view = orchestrator.get_status("plan-fixed")
    assert view.status is PlanStatus.PLANNING
    assert view.pending == ["A"]


def test_run_plan_only_starts_planning_plans(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    with pytest.raises(PlanNotFoundError):
        orchestrator.run_plan("plan-missing")

    plan_id = orchestrator.create_plan("Task", [_subtask("A")], workspace)
    orchestrator.run_plan(plan_id)

    with pytest.raises(InvalidPlanTransitionError):
        orchestrator.run_plan(plan_id)


def test_pause_checkpoints_interrupted_work_and_resume_finishes(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    started = _started_signal(orchestrator)
    plan_id = orchestrator.create_plan(
        "Pause and resume",
        [_subtask("A", "agent:work=3 agent:touch=a.txt"), _subtask("B", "agent:require=a.txt", "A")],
        workspace,
    )

    orchestrator.start_plan(plan_id)
    assert started.wait(10)
    orchestrator.pause_plan(plan_id, timeout=30)

    view = orchestrator.get_status(plan_id)
    assert view.status is PlanStatus.PAUSED
    assert view.has_checkpoint is True
    document = orchestrator.checkpoints.store.read(plan_id)
    assert document is not None
    assert document.running == ["A"]
    assert document.completed == []
    paused = orchestrator.events.history(plan_id, [PlanEventType.PLAN_PAUSED])
    assert paused[0].details["reason"] == "paused"
    assert orchestrator.events.history(plan_id, [PlanEventType.SUBTASK_FAILED]) == []
    with pytest.raises(InvalidPlanTransitionError):
        orchestrator.pause_plan(plan_id)

    result = orchestrator.resume_plan(plan_id)

    assert result.status is PlanStatus.COMPLETED
    assert result.outcome is PlanOutcome.SUCCESS
    resumed = orchestrator.events.history(plan_id, [PlanEventType.PLAN_RESUMED])[0]
    assert resumed.details["relaunched"] == ["A"]
    assert orchestrator.repository.require_plan(plan_id).status is PlanStatus.COMPLETED
    assert not orchestrator.checkpoints.exists(plan_id)


def test_plan_left_running_by_dead_process_resumes_elsewhere(
    orchestrator: PlanOrchestrator,
    settings: Settings,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan(
        "Crash recovery",
        [_subtask("A", "agent:touch=a.txt"), _subtask("B", "agent:require=a.txt", "A")],
        workspace,
    )
    plan = orchestrator.repository.load_plan(plan_id)
    state = ExecutionState.for_plan(plan)
    state.transition("A", SubtaskStatus.RUNNING)
    orchestrator.checkpoints.snapshot(plan, state, {"attempt": 1})
    assert orchestrator.repository.claim(
        plan_id,
        "dead-host:1:gone",
        expected=[PlanStatus.PLANNING],
        now=utc_now() - timedelta(minutes=10),
    )

    survivor = PlanOrchestrator.from_settings(settings)
    try:
        resumable = [record.plan_id for record in survivor.list_resumable()]
        result = survivor.resume_plan(plan_id)
        resumed = survivor.events.history(plan_id, [PlanEventType.PLAN_RESUMED])[0]
    finally:
        survivor.shutdown(timeout=30)
        survivor.close()

    assert resumable == [plan_id]
    assert result.outcome is PlanOutcome.SUCCESS
    assert resumed.details["relaunched"] == ["A"]
    assert (workspace / "a.txt").is_file()


def test_cancel_running_plan_discards_checkpoint(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    started = _started_signal(orchestrator)
    plan_id = orchestrator.create_plan("Cancel", [_subtask("A", "agent:work=30")], workspace)

    orchestrator.start_plan(plan_id)
    assert started.wait(10)
    orchestrator.cancel_plan(plan_id, timeout=30)

    result = orchestrator.wait(plan_id, timeout=5)
    assert result is not None
    assert result.status is PlanStatus.CANCELED
    assert result.outcome is PlanOutcome.STOPPED
    assert not orchestrator.checkpoints.exists(plan_id)
    assert orchestrator.repository.require_plan(plan_id).status is PlanStatus.CANCELED
    types = _event_types(orchestrator, plan_id)
    assert types[-1] is PlanEventType.PLAN_CANCELED
    assert PlanEventType.PLAN_PAUSED not in types

    with pytest.raises(InvalidPlanTransitionError, match="already canceled"):
        orchestrator.cancel_plan(plan_id)
    with pytest.raises(PlanNotFoundError):
        orchestrator.cancel_plan("plan-missing")


def test_cancel_from_another_process_stops_the_owner(
    orchestrator: PlanOrchestrator,
    settings: Settings,
    workspace: Path,
) -> None:
    started = _started_signal(orchestrator)
    plan_id = orchestrator.create_plan(
        "Cancel elsewhere",
        [_subtask("A", "agent:work=3 agent:touch=a.txt"), _subtask("B", "agent:require=a.txt", "A")],
        workspace,
    )
    orchestrator.start_plan(plan_id)
    assert started.wait(10)

    other = PlanOrchestrator.from_settings(settings)
    try:
        other.cancel_plan(plan_id)
    finally:
        other.close()

    result = orchestrator.wait(plan_id, timeout=30)
    assert result is not None
    assert result.status is PlanStatus.CANCELED
    record = orchestrator.repository.require_plan(plan_id)
    assert record.status is PlanStatus.CANCELED
    assert record.owner_id is None
    assert not orchestrator.checkpoints.exists(plan_id)
    launched = orchestrator.events.history(plan_id, [PlanEventType.SUBTASK_STARTED])
    assert [event.details["subtask_id"] for event in launched] == ["A"]
    archived = [event.event_type for event in orchestrator.repository.list_events(plan_id)]
    assert archived.count("plan_canceled") == 1
    assert "plan_completed" not in archived
    assert "plan_paused" not in archived


def test_resume_refuses_plan_with_live_owner(
    orchestrator: PlanOrchestrator,
    settings: Settings,
    workspace: Path,
) -> None:
    started = _started_signal(orchestrator)
    plan_id = orchestrator.create_plan(
        "Owned elsewhere",
        [_subtask("A", "agent:work=2 agent:touch=a.txt"), _subtask("B", "agent:require=a.txt", "A")],
        workspace,
    )
    orchestrator.start_plan(plan_id)
    assert started.wait(10)

    other = PlanOrchestrator.from_settings(settings)
    try:
        assert other.list_resumable() == []
        with pytest.raises(InvalidPlanTransitionError, match="another process"):
            other.resume_plan(plan_id)
        assert other.events.history(plan_id, [PlanEventType.SUBTASK_STARTED]) == []
    finally:
        other.close()

    result = orchestrator.wait(plan_id, timeout=30)
    assert result is not None
    assert result.outcome is PlanOutcome.SUCCESS
    assert orchestrator.repository.require_plan(plan_id).status is PlanStatus.COMPLETED


def test_cancel_plan_that_never_started(orchestrator: PlanOrchestrator, workspace: Path) -> None:
    plan_id = orchestrator.create_plan("Cancel early", [_subtask("A")], workspace)

    orchestrator.cancel_plan(plan_id)

    assert orchestrator.get_status(plan_id).status is PlanStatus.CANCELED
    with pytest.raises(InvalidPlanTransitionError):
        orchestrator.run_plan(plan_id)


def test_shutdown_leaves_running_plans_paused(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    started = _started_signal(orchestrator)
    plan_id = orchestrator.create_plan("Shutdown", [_subtask("A", "agent:work=30")], workspace)

    orchestrator.start_plan(plan_id)
    assert started.wait(10)
    stopped = orchestrator.shutdown(timeout=30)

    assert stopped == [plan_id]
    view = orchestrator.get_status(plan_id)
    assert view.status is PlanStatus.PAUSED
    assert view.has_checkpoint is True
    paused = orchestrator.events.history(plan_id, [PlanEventType.PLAN_PAUSED])[0]
    assert paused.details["reason"] == "shutdown"


def test_unreadable_checkpoint_fails_resume(
    orchestrator: PlanOrchestrator,
    settings: Settings,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan("Corrupt", [_subtask("A")], workspace)
    orchestrator.repository.update_status(plan_id, status=PlanStatus.PAUSED)
    path = orchestrator.checkpoints.store.path_for(plan_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{broken", "utf-8")

    other = PlanOrchestrator.from_settings(settings)
    try:
        result = other.resume_plan(plan_id)
    finally:
        other.close()

    assert result.status is PlanStatus.FAILED
    assert result.outcome is PlanOutcome.CHECKPOINT_UNREADABLE
    record = orchestrator.repository.require_plan(plan_id)
    assert record.status is PlanStatus.FAILED
    assert record.failure_reason == "checkpoint_unreadable"
    assert path.exists()


def test_resume_requires_paused_plan(orchestrator: PlanOrchestrator, workspace: Path) -> None:
    plan_id = orchestrator.create_plan("Not paused", [_subtask("A")], workspace)

    with pytest.raises(InvalidPlanTransitionError):
        orchestrator.resume_plan(plan_id)


def test_maintenance_prunes_old_plans_and_orphans(
    orchestrator: PlanOrchestrator,
    workspace: Path,
) -> None:
    plan_id = orchestrator.create_plan("Old", [_subtask("A")], workspace)
    orchestrator.run_plan(plan_id)
    orphan = orchestrator.checkpoints.store.path_for("plan-ghost")
    orphan.parent.mkdir(parents=True, exist_ok=True)
    orphan.write_text("{}", "utf-8")

    report = orchestrator.run_maintenance(now=utc_now() + timedelta(days=31))

    assert report.pruned_plans == [plan_id]
    assert report.reclaimed_checkpoints == ["plan-ghost"]
    assert not orphan.exists()
    with pytest.raises(PlanNotFoundError):
        orchestrator.get_status(plan_id)
