from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import allure
import pytest

from plan_runner.orchestrator.checkpoints import CheckpointManager, CheckpointStore
from plan_runner.orchestrator.contracts import CheckpointDocument
from plan_runner.orchestrator.errors import CheckpointCorruptionError
from plan_runner.orchestrator.models import ExecutionState, Plan, Subtask, SubtaskStatus
from plan_runner.storage.common import utc_now

pytestmark = [
    allure.epic("Plan Runtime"),
    allure.feature("Checkpoint Manager"),
]


def _plan(tmp_path: Path, plan_id: str = "plan-cp") -> Plan:
    return Plan(
        plan_id=plan_id,
        task_description="Checkpoint test",
        subtasks=[
            Subtask(subtask_id="A", name="Schema"),
            Subtask(subtask_id="B", name="API", dependencies=("A",)),
            Subtask(subtask_id="C", name="Docs"),
        ],
        working_directory=tmp_path,
        created_at=utc_now(),
    )


def _manager(tmp_path: Path, **kwargs) -> CheckpointManager:
    return CheckpointManager(CheckpointStore(tmp_path / "checkpoints"), **kwargs)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_restore_reclassifies_running_subtasks(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    plan = _plan(tmp_path)
    state = ExecutionState.for_plan(plan)
    state.transition("A", SubtaskStatus.RUNNING)
    state.transition("A", SubtaskStatus.COMPLETED)
    state.transition("B", SubtaskStatus.RUNNING)
    state.increment_passes()

    manager.snapshot(plan, state, {"attempt": 1})
    restored = _manager(tmp_path).restore("plan-cp")

    assert restored is not None
    assert restored.reclassified == ["B"]
    assert restored.state.completed == frozenset({"A"})
    assert restored.state.pending == frozenset({"B", "C"})
    assert restored.state.running == frozenset()
    assert restored.state.scheduling_passes == 1
    assert restored.context == {"attempt": 1}
    assert restored.plan.subtask("B").dependencies == ("A",)


def test_checkpoint_file_lists_running_work(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    plan = _plan(tmp_path)
    state = ExecutionState.for_plan(plan)
    state.transition("C", SubtaskStatus.RUNNING)

    manager.snapshot(plan, state, {})
    path = manager.store.path_for("plan-cp")

    payload = json.loads(path.read_text("utf-8"))
    assert payload["executionState"]["runningSubtasks"] == ["C"]
    assert payload["planId"] == "plan-cp"


def test_checkpoint_id_is_stable_across_snapshots(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    state = ExecutionState.for_plan(plan)

    first = _manager(tmp_path).snapshot(plan, state, {})
    state.transition("A", SubtaskStatus.RUNNING)
    second = _manager(tmp_path).snapshot(plan, state, {})

    assert second.checkpoint_id == first.checkpoint_id
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at


def test_snapshot_context_is_isolated_from_later_mutation(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    plan = _plan(tmp_path)
    context = {"notes": ["first"]}

    document = manager.snapshot(plan, ExecutionState.for_plan(plan), context)
    context["notes"].append("second")

    assert document.context == {"notes": ["first"]}


def test_missing_checkpoint_restores_nothing(tmp_path: Path) -> None:
    assert _manager(tmp_path).restore("plan-none") is None


def test_unparseable_checkpoint_raises_corruption(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    path = manager.store.path_for("plan-cp")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", "utf-8")

    with pytest.raises(CheckpointCorruptionError) as error:
        manager.restore("plan-cp")

    assert error.value.plan_id == "plan-cp"
    assert path.exists()


def test_overlapping_sets_raise_corruption(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    plan = _plan(tmp_path)
    now = utc_now()
    manager.store.write(
        CheckpointDocument(
            checkpoint_id="cp",
            plan=plan,
            completed=["A"],
            failed=["A"],
            running=[],
            context={},
            created_at=now,
            updated_at=now,
        ),
    )

    with pytest.raises(CheckpointCorruptionError, match="more than one status set"):
        manager.restore("plan-cp")


def test_checkpoint_under_wrong_name_raises_corruption(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.snapshot(_plan(tmp_path, "plan-real"), ExecutionState.for_plan(_plan(tmp_path)), {})
    manager.store.path_for("plan-real").rename(manager.store.path_for("plan-copy"))

    with pytest.raises(CheckpointCorruptionError, match="belongs to plan"):
        manager.restore("plan-copy")


def test_path_for_rejects_traversal(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Invalid plan id"):
        CheckpointStore(tmp_path).path_for("../escape")


def test_reclaim_orphans_keeps_known_plans(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    for plan_id in ("plan-a", "plan-b"):
        plan = _plan(tmp_path, plan_id)
        manager.snapshot(plan, ExecutionState.for_plan(plan), {})

    reclaimed = manager.reclaim_orphans(["plan-a"])

    assert reclaimed == ["plan-b"]
    assert manager.list_plan_ids() == ["plan-a"]
    assert manager.exists("plan-a")
    assert manager.delete("plan-b") is False


def test_snapshot_listener_receives_trigger(tmp_path: Path) -> None:
    seen: list[tuple[str, str]] = []
    manager = _manager(
        tmp_path,
        on_snapshot=lambda document, trigger: seen.append((document.plan_id, trigger)),
    )
    plan = _plan(tmp_path)

    manager.snapshot(plan, ExecutionState.for_plan(plan), {}, trigger="subtask_resolved")

    assert seen == [("plan-cp", "subtask_resolved")]


def test_autosave_writes_interval_snapshots(tmp_path: Path) -> None:
    triggers: list[str] = []
    manager = _manager(tmp_path, on_snapshot=lambda document, trigger: triggers.append(trigger))
    plan = _plan(tmp_path)
    state = ExecutionState.for_plan(plan)

    handle = manager.autosave(plan.plan_id, lambda: (plan, state, {}), interval_seconds=0.05)
    try:
        assert _wait_for(lambda: bool(triggers))
    finally:
        handle.stop()

    assert manager.exists(plan.plan_id)
    assert set(triggers) == {"interval"}


def test_autosave_skips_when_provider_declines(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    polled = threading.Event()

    def provider():
        polled.set()
        return None

    handle = manager.autosave("plan-cp", provider, interval_seconds=0.05)
    try:
        assert polled.wait(5)
    finally:
        handle.stop()

    assert not manager.exists("plan-cp")


def test_capture_reads_state_under_the_write_lock(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    plan = _plan(tmp_path)
    state = ExecutionState.for_plan(plan)
    state.transition("A", SubtaskStatus.RUNNING)

    def complete_a() -> None:
        state.transition("A", SubtaskStatus.COMPLETED)
        manager.snapshot(plan, state, {}, trigger="subtask_resolved")

    writer = threading.Thread(target=complete_a)

    def provider():
        copied = state.copy()
        writer.start()
        time.sleep(0.2)
        return plan, copied, {}

    assert manager.capture(provider, trigger="interval") is not None
    writer.join(timeout=5)

    restored = manager.restore(plan.plan_id)
    assert restored is not None
    assert restored.state.status_of("A") is SubtaskStatus.COMPLETED
    document = manager.store.read(plan.plan_id)
    assert document is not None
    assert document.completed == ["A"]


def test_capture_returns_none_when_provider_declines(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    assert manager.capture(lambda: None) is None
    assert not manager.exists("plan-cp")
