"""Observable per-subtask worker status."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime

from plan_runner.orchestrator.instructions import worker_kind_for
from plan_runner.orchestrator.models import (
    Plan,
    SubtaskOutcome,
    SubtaskOutcomeStatus,
    SubtaskStatus,
    WorkerKind,
)
from plan_runner.storage.common import utc_now


@dataclass(slots=True)
class WorkerRecord:
    """Live view of the worker assigned to one subtask."""

    plan_id: str
    subtask_id: str
    name: str
    kind: WorkerKind
    status: SubtaskStatus = SubtaskStatus.PENDING
    session_name: str | None = None
    pid: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message: str = ""


class SubtaskRegistry:
    """Tracks workers by plan; callers receive copies, never live records."""

    def __init__(self) -> None:
        self._workers: dict[str, dict[str, WorkerRecord]] = {}
        self._lock = threading.Lock()

    def register_plan(
        self,
        plan: Plan,
        *,
        statuses: dict[str, SubtaskStatus] | None = None,
    ) -> None:
        records = {
            subtask.subtask_id: WorkerRecord(
                plan_id=plan.plan_id,
                subtask_id=subtask.subtask_id,
                name=subtask.name,
                kind=worker_kind_for(subtask),
                status=(statuses or {}).get(subtask.subtask_id, SubtaskStatus.PENDING),
            )
            for subtask in plan.subtasks
        }
        with self._lock:
            self._workers[plan.plan_id] = records

    def mark_running(self, plan_id: str, subtask_id: str, *, session_name: str) -> None:
        with self._lock:
            record = self._record(plan_id, subtask_id)
            if record is None:
                return
            record.status = SubtaskStatus.RUNNING
            record.session_name = session_name
            record.pid = None
            record.started_at = utc_now()
            record.finished_at = None
            record.message = "running"

    def attach_pid(self, plan_id: str, subtask_id: str, pid: int) -> None:
        with self._lock:
            record = self._record(plan_id, subtask_id)
            if record is not None:
                record.pid = pid

    def mark_finished(self, plan_id: str, outcome: SubtaskOutcome) -> None:
        with self._lock:
            record = self._record(plan_id, outcome.subtask_id)
            if record is None:
                return
            if outcome.status is SubtaskOutcomeStatus.COMPLETED:
                record.status = SubtaskStatus.COMPLETED
            elif outcome.status is SubtaskOutcomeStatus.FAILED:
                record.status = SubtaskStatus.FAILED
            else:
                record.status = SubtaskStatus.PENDING
            record.finished_at = outcome.finished_at or utc_now()
            record.message = outcome.summary

    def list_workers(self, plan_id: str) -> list[WorkerRecord]:
        with self._lock:
            records = self._workers.get(plan_id, {})
            return [replace(record) for record in records.values()]

    def forget_plan(self, plan_id: str) -> None:
        with self._lock:
            self._workers.pop(plan_id, None)

    def _record(self, plan_id: str, subtask_id: str) -> WorkerRecord | None:
        return self._workers.get(plan_id, {}).get(subtask_id)
