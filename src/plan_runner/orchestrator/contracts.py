"""JSON contracts for plan submissions and checkpoint documents."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from plan_runner.orchestrator.models import Plan, PlanStatus, Subtask
from plan_runner.storage.common import from_iso, to_iso

CHECKPOINT_CONTRACT_VERSION = 1


@dataclass(slots=True)
class PlanSubmission:
    """Plan input as accepted from files or the submission interface."""

    task_description: str
    subtasks: list[Subtask]
    working_directory: Path
    context: dict[str, Any] = field(default_factory=dict)
    plan_id: str | None = None


@dataclass(slots=True)
class CheckpointDocument:
    """Durable snapshot of one plan's progress."""

    checkpoint_id: str
    plan: Plan
    completed: list[str]
    failed: list[str]
    running: list[str]
    context: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    scheduling_passes: int = 0

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True),
        "utf-8",
    )
    os.replace(tmp_path, path)


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def subtask_to_payload(subtask: Subtask) -> dict[str, Any]:
    return {
        "id": subtask.subtask_id,
        "name": subtask.name,
        "description": subtask.description,
        "type": subtask.subtask_type,
        "dependencies": list(subtask.dependencies),
        "priority": subtask.priority,
        "estimatedMinutes": subtask.estimated_minutes,
        "highComplexity": subtask.high_complexity,
    }


def subtask_from_payload(raw: Any) -> Subtask:
    """Deserialize and validate one subtask entry."""

    if not isinstance(raw, dict):
        raise TypeError("subtask entry must be an object")
    subtask_id = raw.get("id")
    name = raw.get("name", subtask_id)
    description = raw.get("description", "")
    subtask_type = raw.get("type", "development")
    dependencies = raw.get("dependencies", [])
    priority = raw.get("priority", "medium")
    estimated_minutes = raw.get("estimatedMinutes", 0)
    high_complexity = raw.get("highComplexity", raw.get("complexity") == "high")

    if not isinstance(subtask_id, str) or not subtask_id.strip():
        raise ValueError("subtask.id must be a non-empty string")
    if not isinstance(name, str):
        raise TypeError("subtask.name must be a string")
    if not isinstance(description, str):
        raise TypeError("subtask.description must be a string")
    if not isinstance(subtask_type, str) or not subtask_type.strip():
        raise ValueError("subtask.type must be a non-empty string")
    if not isinstance(dependencies, list) or not all(
        isinstance(item, str) for item in dependencies
    ):
        raise TypeError("subtask.dependencies must be an array of strings")
    if not isinstance(priority, str):
        raise TypeError("subtask.priority must be a string")
    if isinstance(estimated_minutes, bool) or not isinstance(estimated_minutes, int):
        raise TypeError("subtask.estimatedMinutes must be an integer")
    if estimated_minutes < 0:
        raise ValueError("subtask.estimatedMinutes must be >= 0")
    if not isinstance(high_complexity, bool):
        raise TypeError("subtask.highComplexity must be a boolean")

    return Subtask(
        subtask_id=subtask_id.strip(),
        name=name,
        description=description,
        subtask_type=subtask_type.strip().lower(),
        dependencies=tuple(dependencies),
        priority=priority,
        estimated_minutes=estimated_minutes,
        high_complexity=high_complexity,
    )


def plan_to_payload(plan: Plan) -> dict[str, Any]:
    return {
        "id": plan.plan_id,
        "task": plan.task_description,
        "workingDirectory": str(plan.working_directory),
        "status": plan.status.value,
        "estimatedMinutes": plan.estimated_minutes,
        "createdAt": to_iso(plan.created_at),
        "subtasks": [subtask_to_payload(subtask) for subtask in plan.subtasks],
    }


def plan_from_payload(raw: Any) -> Plan:
    """Deserialize and validate a stored plan document."""

    if not isinstance(raw, dict):
        raise TypeError("plan must be an object")
    plan_id = raw.get("id")
    task = raw.get("task")
    working_directory = raw.get("workingDirectory")
    status = raw.get("status", PlanStatus.PLANNING.value)
    created_at = raw.get("createdAt")
    raw_subtasks = raw.get("subtasks")

    if not isinstance(plan_id, str) or not plan_id.strip():
        raise ValueError("plan.id must be a non-empty string")
    if not isinstance(task, str):
        raise TypeError("plan.task must be a string")
    if not isinstance(working_directory, str) or not working_directory.strip():
        raise ValueError("plan.workingDirectory must be a non-empty string")
    if not isinstance(created_at, str):
        raise TypeError("plan.createdAt must be an ISO timestamp string")
    if not isinstance(raw_subtasks, list):
        raise TypeError("plan.subtasks must be an array")

    return Plan(
        plan_id=plan_id,
        task_description=task,
        subtasks=[subtask_from_payload(item) for item in raw_subtasks],
        working_directory=Path(working_directory),
        created_at=from_iso(created_at),
        status=PlanStatus(status),
    )


def read_plan_submission(path: Path) -> PlanSubmission:
    """Read a plan submission file (task, workingDirectory, subtasks, context)."""

    raw = load_json(path)
    task = raw.get("task")
    working_directory = raw.get("workingDirectory")
    raw_subtasks = raw.get("subtasks")
    context = raw.get("context", {})
    plan_id = raw.get("id")

    if not isinstance(task, str) or not task.strip():
        raise ValueError("plan_submission.task must be a non-empty string")
    if not isinstance(raw_subtasks, list):
        raise TypeError("plan_submission.subtasks must be an array")
    if not isinstance(context, dict):
        raise TypeError("plan_submission.context must be an object")
    if plan_id is not None and (not isinstance(plan_id, str) or not plan_id.strip()):
        raise ValueError("plan_submission.id must be a non-empty string when provided")
    if working_directory is None:
        resolved_directory = path.resolve().parent
    elif isinstance(working_directory, str) and working_directory.strip():
        resolved_directory = Path(working_directory)
        if not resolved_directory.is_absolute():
            resolved_directory = (path.resolve().parent / resolved_directory).resolve()
    else:
        raise ValueError("plan_submission.workingDirectory must be a non-empty string")

    return PlanSubmission(
        task_description=task,
        subtasks=[subtask_from_payload(item) for item in raw_subtasks],
        working_directory=resolved_directory,
        context=context,
        plan_id=plan_id,
    )


def checkpoint_to_payload(document: CheckpointDocument) -> dict[str, Any]:
    """Encode a checkpoint; status sets are persisted as sorted arrays."""

    return {
        "contractVersion": CHECKPOINT_CONTRACT_VERSION,
        "id": document.checkpoint_id,
        "planId": document.plan_id,
        "plan": plan_to_payload(document.plan),
        "executionState": {
            "completedSubtasks": sorted(document.completed),
            "failedSubtasks": sorted(document.failed),
            "runningSubtasks": sorted(document.running),
            "schedulingPasses": document.scheduling_passes,
        },
        "context": document.context,
        "createdAt": to_iso(document.created_at),
        "updatedAt": to_iso(document.updated_at),
    }


def checkpoint_from_payload(raw: dict[str, Any]) -> CheckpointDocument:
    """Decode and validate a checkpoint document."""

    checkpoint_id = raw.get("id")
    plan_id = raw.get("planId")
    state = raw.get("executionState")
    context = raw.get("context", {})
    created_at = raw.get("createdAt")
    updated_at = raw.get("updatedAt")

    if not isinstance(checkpoint_id, str) or not checkpoint_id.strip():
        raise ValueError("checkpoint.id must be a non-empty string")
    if not isinstance(plan_id, str) or not plan_id.strip():
        raise ValueError("checkpoint.planId must be a non-empty string")
    if not isinstance(state, dict):
        raise TypeError("checkpoint.executionState must be an object")
    if not isinstance(context, dict):
        raise TypeError("checkpoint.context must be an object")
    if not isinstance(created_at, str) or not isinstance(updated_at, str):
        raise TypeError("checkpoint.createdAt/updatedAt must be ISO timestamp strings")

    plan = plan_from_payload(raw.get("plan"))
    if plan.plan_id != plan_id:
        raise ValueError(
            f"checkpoint.planId {plan_id!r} does not match embedded plan id {plan.plan_id!r}",
        )

    sets: dict[str, list[str]] = {}
    for key in ("completedSubtasks", "failedSubtasks", "runningSubtasks"):
        values = state.get(key, [])
        if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
            raise TypeError(f"checkpoint.executionState.{key} must be an array of strings")
        sets[key] = values
    passes = state.get("schedulingPasses", 0)
    if isinstance(passes, bool) or not isinstance(passes, int) or passes < 0:
        raise ValueError("checkpoint.executionState.schedulingPasses must be an integer >= 0")

    return CheckpointDocument(
        checkpoint_id=checkpoint_id,
        plan=plan,
        completed=sets["completedSubtasks"],
        failed=sets["failedSubtasks"],
        running=sets["runningSubtasks"],
        context=context,
        created_at=from_iso(created_at),
        updated_at=from_iso(updated_at),
        scheduling_passes=passes,
    )
