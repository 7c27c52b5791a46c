"""Plan Orchestrator: plan lifecycle, control operations and event wiring."""

from __future__ import annotations

import logging
import os
import re
import socket
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from plan_runner.config import Settings
from plan_runner.orchestrator.backend import AgentBackend
from plan_runner.orchestrator.checkpoints import (
    CheckpointManager,
    CheckpointStore,
    SnapshotListener,
)
from plan_runner.orchestrator.contracts import CheckpointDocument
from plan_runner.orchestrator.errors import (
    CheckpointCorruptionError,
    InvalidPlanTransitionError,
    PlanNotFoundError,
    PlanValidationError,
)
from plan_runner.orchestrator.events import EventBus, PlanEvent, PlanEventType
from plan_runner.orchestrator.executor import OutputListener, PlanContext, ProcessExecutor
from plan_runner.orchestrator.instructions import worker_kind_for
from plan_runner.orchestrator.models import (
    TERMINAL_PLAN_STATUSES,
    ExecutionState,
    Plan,
    PlanOutcome,
    PlanRecordView,
    PlanRunResult,
    PlanStatus,
    PlanStatusView,
    Subtask,
    SubtaskOutcome,
    SubtaskOutcomeStatus,
    SubtaskStatus,
    TerminationReason,
)
from plan_runner.orchestrator.output import OutputLine
from plan_runner.orchestrator.registry import SubtaskRegistry, WorkerRecord
from plan_runner.orchestrator.repository import PlanRepository
from plan_runner.orchestrator.scheduler import (
    DependencyScheduler,
    SchedulingResult,
    validate_subtasks,
)
from plan_runner.orchestrator.sessions import SessionLimiter, SessionTable
from plan_runner.orchestrator.validation import inspect_workspace
from plan_runner.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

_PLAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_EVENT_SCAN_LIMIT = 10_000


@dataclass(slots=True)
class _PlanRuntime:
    """In-process state of one plan between creation and its terminal status."""

    plan: Plan
    state: ExecutionState
    context: dict[str, Any]
    sessions: SessionTable
    status: PlanStatus
    stop_reason: TerminationReason | None = None
    thread: threading.Thread | None = None
    result: PlanRunResult | None = None
    interrupted: set[str] = field(default_factory=set)
    lease_lost: bool = False
    done: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)


class _LeaseKeeper:
    """Heartbeat thread for the plan row this process owns.

    Stops and calls ``on_lost`` once a heartbeat no longer matches the row,
    i.e. another process canceled the plan or took it over.
    """

    def __init__(
        self,
        *,
        plan_id: str,
        beat: Callable[[], bool],
        on_lost: Callable[[], None],
        interval_seconds: float,
    ) -> None:
        self.plan_id = plan_id
        self.interval_seconds = interval_seconds
        self._beat = beat
        self._on_lost = on_lost
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"lease-{plan_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                held = self._beat()
            except SQLAlchemyError:
                logger.exception("Heartbeat failed for plan %s", self.plan_id)
                continue
            if not held:
                self._on_lost()
                return


@dataclass(slots=True)
class MaintenanceReport:
    """What one maintenance pass removed."""

    pruned_plans: list[str] = field(default_factory=list)
    reclaimed_checkpoints: list[str] = field(default_factory=list)


class PlanOrchestrator:
    """Façade that owns plans for their lifetime.

    Each running plan gets one coordinating loop (the caller's thread for
    ``run_plan``/``resume_plan``, a background thread for ``start_plan``/``start_resume``)
    and its own session table. Plans share only the global session limiter.

    A running plan's row carries this instance's ``owner_id`` and a heartbeat.
    Other processes sharing the archive may cancel it, which the owner notices on
    its next heartbeat, but may only resume it once the heartbeat has gone stale.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: PlanRepository,
        checkpoints: CheckpointManager,
        scheduler: DependencyScheduler,
        executor: ProcessExecutor,
        events: EventBus,
        registry: SubtaskRegistry,
        retention_days: int = 30,
        heartbeat_interval_seconds: float = 5.0,
        lease_timeout_seconds: float = 60.0,
    ) -> None:
        self.repository = repository
        self.checkpoints = checkpoints
        self.scheduler = scheduler
        self.executor = executor
        self.events = events
        self.registry = registry
        self.retention_days = retention_days
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.lease_timeout_seconds = lease_timeout_seconds
        self.owner_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._runtimes: dict[str, _PlanRuntime] = {}
        self._lock = threading.Lock()
        self._unsubscribe = events.subscribe(
            self._archive_event,
            [item for item in PlanEventType if item is not PlanEventType.SUBTASK_OUTPUT],
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: AgentBackend | None = None,
    ) -> PlanOrchestrator:
        """Wire every component from settings and migrate the archive schema."""

        settings.validate()
        events = EventBus()
        registry = SubtaskRegistry()
        repository = PlanRepository(settings.db_path)
        repository.init_schema()
        checkpoints = CheckpointManager(
            CheckpointStore(settings.checkpoints.checkpoint_dir),
            interval_seconds=settings.checkpoints.interval_seconds,
            on_snapshot=_checkpoint_listener(events),
        )
        executor = ProcessExecutor.from_settings(
            settings.executor,
            limiter=SessionLimiter(settings.executor.max_concurrent_sessions),
            registry=registry,
            backend=backend,
            output_listener=_output_listener(events),
        )
        scheduler = DependencyScheduler(
            max_passes=settings.scheduler.max_passes,
            settle_delay_seconds=settings.scheduler.settle_delay_seconds,
        )
        return cls(
            repository=repository,
            checkpoints=checkpoints,
            scheduler=scheduler,
            executor=executor,
            events=events,
            registry=registry,
            retention_days=settings.checkpoints.retention_days,
            heartbeat_interval_seconds=settings.scheduler.heartbeat_interval_seconds,
            lease_timeout_seconds=settings.scheduler.lease_timeout_seconds,
        )

    def close(self) -> None:
        self._unsubscribe()
        self.repository.close()

    def create_plan(
        self,
        task_description: str,
        subtasks: Iterable[Subtask],
        working_directory: Path,
        *,
        context: dict[str, Any] | None = None,
        plan_id: str | None = None,
    ) -> str:
        """Validate and register a plan in ``planning`` status; returns its id."""

        subtask_list = list(subtasks)
        if not task_description.strip():
            raise PlanValidationError("Task description must be a non-empty string")
        if not subtask_list:
            raise PlanValidationError("Plan must contain at least one subtask")
        validate_subtasks(subtask_list)

        plan_id = plan_id or f"plan-{uuid.uuid4().hex[:12]}"
        if not _PLAN_ID_RE.match(plan_id):
            raise PlanValidationError(f"Invalid plan id: {plan_id!r}")
        if self.repository.get_plan(plan_id) is not None or self.checkpoints.exists(plan_id):
            raise PlanValidationError(f"Plan already exists: {plan_id}")

        working_directory = working_directory.expanduser().resolve()
        working_directory.mkdir(parents=True, exist_ok=True)
        plan = Plan(
            plan_id=plan_id,
            task_description=task_description,
            subtasks=subtask_list,
            working_directory=working_directory,
            created_at=utc_now(),
        )
        self.repository.create_plan(plan)
        runtime = _PlanRuntime(
            plan=plan,
            state=ExecutionState.for_plan(plan),
            context=dict(context or {}),
            sessions=SessionTable(plan_id),
            status=PlanStatus.PLANNING,
        )
        with self._lock:
            self._runtimes[plan_id] = runtime
        self.registry.register_plan(plan)
        logger.info(
            "Created plan %s with %d subtasks in %s",
            plan_id,
            len(subtask_list),
            working_directory,
        )
        return plan_id

    def run_plan(self, plan_id: str) -> PlanRunResult:
        """Drive a planning plan to its terminal (or paused) status in this thread."""

        runtime = self._begin_run(plan_id)
        runtime.thread = threading.current_thread()
        return self._drive(runtime)

    def start_plan(self, plan_id: str) -> None:
        self._spawn(self._begin_run(plan_id))

    def pause_plan(
        self,
        plan_id: str,
        *,
        wait: bool = True,
        timeout: float | None = None,
    ) -> None:
        """Checkpoint, then terminate live sessions; no further waves are launched."""

        runtime = self._live_runtime(plan_id)
        with runtime.lock:
            if runtime.status is not PlanStatus.RUNNING or runtime.stop_reason is not None:
                raise InvalidPlanTransitionError(
                    f"Plan {plan_id} is {runtime.status.value}; only running plans can be paused",
                )
            runtime.stop_reason = TerminationReason.PAUSED
        logger.info("Pausing plan %s", plan_id)
        self._snapshot(runtime, trigger="pause")
        runtime.sessions.terminate_all(TerminationReason.PAUSED)
        if wait:
            self._await(runtime, timeout)

    def resume_plan(self, plan_id: str) -> PlanRunResult:
        """Restore from the latest checkpoint and schedule in this thread.

        An unreadable checkpoint fails the plan with ``checkpoint_unreadable``
        instead of starting over.
        """

        try:
            runtime = self._prepare_resume(plan_id)
        except CheckpointCorruptionError as error:
            return self._fail_unreadable(plan_id, error)
        runtime.thread = threading.current_thread()
        return self._drive(runtime)

    def start_resume(self, plan_id: str) -> None:
        try:
            runtime = self._prepare_resume(plan_id)
        except CheckpointCorruptionError as error:
            self._fail_unreadable(plan_id, error)
            raise
        self._spawn(runtime)

    def cancel_plan(self, plan_id: str, *, timeout: float | None = None) -> None:
        """Terminate every session and tombstone the plan; never checkpoints.

        A plan running in another process is tombstoned here; its owner stops the
        sessions when its next heartbeat finds the row canceled.
        """

        runtime = self._owned_runtime(plan_id)

        if runtime is not None and runtime.status is PlanStatus.RUNNING:
            with runtime.lock:
                runtime.stop_reason = TerminationReason.CANCELED
            logger.info("Canceling running plan %s", plan_id)
            runtime.sessions.terminate_all(TerminationReason.CANCELED)
            self._await(runtime, timeout)
            return

        record = self.repository.get_plan(plan_id)
        status = runtime.status if runtime is not None else None
        if status is None and record is not None:
            status = record.status
        if status is None and not self.checkpoints.exists(plan_id):
            raise PlanNotFoundError(plan_id)
        if status is not None and status in TERMINAL_PLAN_STATUSES:
            raise InvalidPlanTransitionError(f"Plan {plan_id} is already {status.value}")

        summary = "Plan canceled by operator"
        if record is not None and not self.repository.update_status(
            plan_id,
            status=PlanStatus.CANCELED,
            expected=[record.status],
            outcome=PlanOutcome.STOPPED,
            summary=summary,
        ):
            current = self.repository.require_plan(plan_id).status
            raise InvalidPlanTransitionError(
                f"Plan {plan_id} moved to {current.value} while canceling",
            )
        if record is not None and record.status is PlanStatus.RUNNING:
            logger.info("Canceled plan %s owned by %s", plan_id, record.owner_id)
        self.checkpoints.delete(plan_id)
        if runtime is not None:
            with runtime.lock:
                runtime.status = PlanStatus.CANCELED
                runtime.result = PlanRunResult(
                    plan_id=plan_id,
                    status=PlanStatus.CANCELED,
                    outcome=PlanOutcome.STOPPED,
                    summary=summary,
                    pending=sorted(runtime.state.pending),
                )
            runtime.plan.status = PlanStatus.CANCELED
            runtime.done.set()
        self.events.emit(
            PlanEventType.PLAN_CANCELED,
            plan_id,
            previous_status=status.value if status is not None else None,
            summary=summary,
        )

    def shutdown(self, *, timeout: float | None = None) -> list[str]:
        """Emergency stop: checkpoint and terminate every running plan; they end paused."""

        with self._lock:
            runtimes = [
                item
                for item in self._runtimes.values()
                if item.status is PlanStatus.RUNNING and not item.lease_lost
            ]
        for runtime in runtimes:
            with runtime.lock:
                if runtime.stop_reason is None:
                    runtime.stop_reason = TerminationReason.SHUTDOWN
            self._snapshot(runtime, trigger="shutdown")
            runtime.sessions.terminate_all(TerminationReason.SHUTDOWN)
        for runtime in runtimes:
            self._await(runtime, timeout)
        if runtimes:
            logger.warning("Shut down %d running plan(s)", len(runtimes))
        return sorted(runtime.plan.plan_id for runtime in runtimes)

    def wait(self, plan_id: str, timeout: float | None = None) -> PlanRunResult | None:
        """Block until the plan's loop exits; None when the timeout elapsed first."""

        with self._lock:
            runtime = self._runtimes.get(plan_id)
        if runtime is None:
            raise PlanNotFoundError(plan_id)
        if not runtime.done.wait(timeout):
            return None
        return runtime.result

    def get_status(self, plan_id: str) -> PlanStatusView:
        runtime = self._owned_runtime(plan_id)
        record = self.repository.get_plan(plan_id)

        if runtime is not None:
            plan = runtime.plan
            status = runtime.status
            completed, failed, running = runtime.state.as_sets()
        elif record is not None:
            plan = self.repository.load_plan(plan_id)
            status = record.status
            completed, failed, running = self._archived_sets(plan_id)
        else:
            raise PlanNotFoundError(plan_id)

        resolved = set(completed) | set(failed) | set(running)
        return PlanStatusView(
            plan_id=plan_id,
            task_description=plan.task_description,
            status=status,
            outcome=record.outcome if record is not None else None,
            failure_reason=record.failure_reason if record is not None else None,
            summary=record.summary if record is not None else None,
            completed=completed,
            failed=failed,
            running=running,
            pending=[item for item in plan.subtask_ids if item not in resolved],
            subtask_count=len(plan.subtasks),
            estimated_minutes=plan.estimated_minutes,
            created_at=record.created_at if record is not None else plan.created_at,
            updated_at=record.updated_at if record is not None else utc_now(),
            has_checkpoint=self.checkpoints.exists(plan_id),
        )

    def list_workers(self, plan_id: str) -> list[WorkerRecord]:
        return self.registry.list_workers(plan_id)

    def list_resumable(self) -> list[PlanRecordView]:
        """Paused plans, and plans whose owner stopped heartbeating, that have a checkpoint."""

        records = self.repository.list_plans(
            statuses=[PlanStatus.PAUSED, PlanStatus.RUNNING],
            limit=1_000,
        )
        return [
            record
            for record in records
            if not self._lease_is_live(record) and self.checkpoints.exists(record.plan_id)
        ]

    def run_maintenance(self, *, now: datetime | None = None) -> MaintenanceReport:
        """Prune finished plans past retention and reclaim orphaned checkpoints."""

        cutoff = (now or utc_now()) - timedelta(days=self.retention_days)
        pruned = self.repository.prune_finished(older_than=cutoff)
        for plan_id in pruned:
            self.checkpoints.delete(plan_id)
            self.registry.forget_plan(plan_id)
            with self._lock:
                self._runtimes.pop(plan_id, None)

        known = set(self.repository.list_plan_ids())
        with self._lock:
            known.update(self._runtimes)
        reclaimed = self.checkpoints.reclaim_orphans(known)
        if pruned or reclaimed:
            logger.info(
                "Maintenance pruned %d plan(s) and reclaimed %d checkpoint(s)",
                len(pruned),
                len(reclaimed),
            )
        return MaintenanceReport(pruned_plans=pruned, reclaimed_checkpoints=reclaimed)

    def _begin_run(self, plan_id: str) -> _PlanRuntime:
        with self._lock:
            runtime = self._runtimes.get(plan_id)
            if runtime is None:
                record = self.repository.require_plan(plan_id)
                if record.status is not PlanStatus.PLANNING:
                    raise InvalidPlanTransitionError(
                        f"Plan {plan_id} is {record.status.value}; use resume for paused plans",
                    )
                plan = self.repository.load_plan(plan_id)
                runtime = _PlanRuntime(
                    plan=plan,
                    state=ExecutionState.for_plan(plan),
                    context={},
                    sessions=SessionTable(plan_id),
                    status=PlanStatus.PLANNING,
                )
                self._runtimes[plan_id] = runtime
                self.registry.register_plan(plan)
            if runtime.status is not PlanStatus.PLANNING:
                raise InvalidPlanTransitionError(
                    f"Plan {plan_id} is {runtime.status.value}; only planning plans can be started",
                )
            runtime.status = PlanStatus.RUNNING

        if not self.repository.claim(plan_id, self.owner_id, expected=[PlanStatus.PLANNING]):
            runtime.status = PlanStatus.PLANNING
            raise InvalidPlanTransitionError(f"Plan {plan_id} left planning status concurrently")
        plan = runtime.plan
        plan.status = PlanStatus.RUNNING
        logger.info("Starting plan %s", plan_id)
        self.events.emit(
            PlanEventType.PLAN_STARTED,
            plan_id,
            subtask_count=len(plan.subtasks),
            estimated_minutes=plan.estimated_minutes,
            working_directory=str(plan.working_directory),
        )
        return runtime

    def _prepare_resume(self, plan_id: str) -> _PlanRuntime:
        with self._lock:
            current = self._runtimes.get(plan_id)
            if current is not None and current.lease_lost:
                current = None
            if current is not None and current.status is not PlanStatus.PAUSED:
                raise InvalidPlanTransitionError(
                    f"Plan {plan_id} is {current.status.value}; only paused plans can be resumed",
                )
            record = self.repository.get_plan(plan_id)
            if record is not None:
                if record.status not in (PlanStatus.PAUSED, PlanStatus.RUNNING):
                    raise InvalidPlanTransitionError(
                        f"Plan {plan_id} is {record.status.value}; "
                        "only paused plans can be resumed",
                    )
                if self._lease_is_live(record):
                    raise InvalidPlanTransitionError(
                        f"Plan {plan_id} is running in another process ({record.owner_id})",
                    )
            restored = self.checkpoints.restore(plan_id)
            if restored is None:
                raise PlanNotFoundError(plan_id)
            plan = restored.plan
            if record is None:
                plan.status = PlanStatus.PAUSED
                self.repository.create_plan(plan)
            # A running row is only claimable once its heartbeat went stale.
            if not self.repository.claim(
                plan_id,
                self.owner_id,
                expected=[PlanStatus.PAUSED, PlanStatus.RUNNING],
                stale_before=utc_now() - timedelta(seconds=self.lease_timeout_seconds),
            ):
                raise InvalidPlanTransitionError(
                    f"Plan {plan_id} was claimed by another process while resuming",
                )
            plan.status = PlanStatus.RUNNING
            runtime = _PlanRuntime(
                plan=plan,
                state=restored.state,
                context=restored.context,
                sessions=SessionTable(plan_id),
                status=PlanStatus.RUNNING,
            )
            self._runtimes[plan_id] = runtime

        self.registry.register_plan(plan, statuses=dict(restored.state.statuses))
        completed, failed, _ = restored.state.as_sets()
        logger.info(
            "Resuming plan %s from checkpoint %s (%d completed, %d failed, %d relaunched)",
            plan_id,
            restored.checkpoint_id,
            len(completed),
            len(failed),
            len(restored.reclassified),
        )
        self.events.emit(
            PlanEventType.PLAN_RESUMED,
            plan_id,
            checkpoint_id=restored.checkpoint_id,
            checkpointed_at=to_iso(restored.checkpointed_at),
            completed=completed,
            failed=failed,
            relaunched=restored.reclassified,
        )
        return runtime

    def _fail_unreadable(self, plan_id: str, error: CheckpointCorruptionError) -> PlanRunResult:
        outcome = PlanOutcome.CHECKPOINT_UNREADABLE
        summary = f"Checkpoint unreadable: {error.detail}"
        logger.error("Plan %s cannot resume: %s", plan_id, error)
        if self.repository.get_plan(plan_id) is not None:
            self.repository.update_status(
                plan_id,
                status=PlanStatus.FAILED,
                outcome=outcome,
                failure_reason=outcome.value,
                summary=summary,
            )
        result = PlanRunResult(
            plan_id=plan_id,
            status=PlanStatus.FAILED,
            outcome=outcome,
            summary=summary,
        )
        with self._lock:
            runtime = self._runtimes.get(plan_id)
        if runtime is not None:
            with runtime.lock:
                runtime.status = PlanStatus.FAILED
                runtime.result = result
        self.events.emit(
            PlanEventType.PLAN_FAILED,
            plan_id,
            reason=outcome.value,
            summary=summary,
        )
        return result

    def _spawn(self, runtime: _PlanRuntime) -> None:
        thread = threading.Thread(
            target=self._drive,
            args=(runtime,),
            name=f"plan-{runtime.plan.plan_id}",
            daemon=True,
        )
        runtime.thread = thread
        thread.start()

    def _drive(self, runtime: _PlanRuntime) -> PlanRunResult:
        plan = runtime.plan
        plan_context = PlanContext(
            plan_id=plan.plan_id,
            task_description=plan.task_description,
            working_directory=plan.working_directory,
            sessions=runtime.sessions,
        )
        autosave = None
        lease = _LeaseKeeper(
            plan_id=plan.plan_id,
            beat=lambda: self.repository.heartbeat(plan.plan_id, self.owner_id),
            on_lost=lambda: self._on_lease_lost(runtime),
            interval_seconds=self.heartbeat_interval_seconds,
        )
        lease.start()
        try:
            self._snapshot(runtime, trigger="start")
            autosave = self.checkpoints.autosave(
                plan.plan_id,
                lambda: self._autosave_snapshot(runtime),
            )
            result = self.scheduler.run(
                plan,
                runtime.state,
                launch=lambda subtask: self.executor.execute(subtask, plan_context),
                on_launch=lambda subtask: self._on_launch(runtime, subtask),
                on_outcome=lambda outcome: self._on_outcome(runtime, outcome),
                stop_requested=lambda: runtime.stop_reason is not None,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Scheduling loop for plan %s crashed", plan.plan_id)
            result = SchedulingResult(
                outcome=PlanOutcome.INTERNAL_ERROR,
                summary=f"Internal error: {error}",
                passes=runtime.state.scheduling_passes,
            )
        finally:
            if autosave is not None:
                autosave.stop()
            lease.stop()
        return self._finalize(runtime, result)

    def _finalize(self, runtime: _PlanRuntime, result: SchedulingResult) -> PlanRunResult:
        """Map the scheduling verdict to exactly one plan status and one terminal event.

        The status write is guarded by this process's lease; losing it means the
        row already carries someone else's verdict, which is kept as is.
        """

        plan = runtime.plan
        plan_id = plan.plan_id
        if runtime.lease_lost or not self.repository.heartbeat(plan_id, self.owner_id):
            with runtime.lock:
                runtime.lease_lost = True
            return self._detach(runtime, result)
        outcome = result.outcome
        summary = result.summary
        record_outcome: PlanOutcome | None = outcome
        failure_reason: str | None = None
        event_type: PlanEventType
        details: dict[str, Any] = {"passes": result.passes, **result.details}

        if outcome is PlanOutcome.STOPPED and runtime.stop_reason is TerminationReason.CANCELED:
            status = PlanStatus.CANCELED
            summary = "Plan canceled by operator"
            event_type = PlanEventType.PLAN_CANCELED
            self.checkpoints.delete(plan_id)
        elif outcome is PlanOutcome.STOPPED:
            reason = runtime.stop_reason or TerminationReason.PAUSED
            status = PlanStatus.PAUSED
            record_outcome = None
            completed_count = len(runtime.state.completed)
            summary = (
                f"Plan paused ({reason.value}) with {completed_count} of "
                f"{len(plan.subtasks)} subtasks completed"
            )
            event_type = PlanEventType.PLAN_PAUSED
            details["reason"] = reason.value
            self._snapshot(runtime, trigger=reason.value)
        elif outcome is PlanOutcome.SUCCESS:
            status = PlanStatus.COMPLETED
            event_type = PlanEventType.PLAN_COMPLETED
            details["workspace"] = inspect_workspace(plan.working_directory).to_details()
            self.checkpoints.delete(plan_id)
        elif outcome is PlanOutcome.PARTIAL_SUCCESS:
            status = PlanStatus.COMPLETED
            event_type = PlanEventType.PLAN_COMPLETED
            self._snapshot(runtime, trigger="final")
        else:
            status = PlanStatus.FAILED
            failure_reason = outcome.value
            event_type = PlanEventType.PLAN_FAILED
            details["reason"] = outcome.value
            self._snapshot(runtime, trigger="final")

        if not self.repository.update_status(
            plan_id,
            status=status,
            expected=[PlanStatus.RUNNING],
            owner_id=self.owner_id,
            outcome=record_outcome,
            failure_reason=failure_reason,
            summary=summary,
        ):
            with runtime.lock:
                runtime.lease_lost = True
            return self._detach(runtime, result)
        completed, failed, _ = runtime.state.as_sets()
        run_result = PlanRunResult(
            plan_id=plan_id,
            status=status,
            outcome=outcome,
            summary=summary,
            completed=completed,
            failed=failed,
            pending=sorted(runtime.state.pending),
        )
        with runtime.lock:
            runtime.status = status
            runtime.result = run_result
        plan.status = status

        log = logger.warning if status is PlanStatus.FAILED else logger.info
        log("Plan %s finished as %s (%s): %s", plan_id, status.value, outcome.value, summary)
        self.events.emit(
            event_type,
            plan_id,
            outcome=outcome.value,
            summary=summary,
            **details,
        )
        runtime.done.set()
        return run_result

    def _on_launch(self, runtime: _PlanRuntime, subtask: Subtask) -> None:
        self.events.emit(
            PlanEventType.SUBTASK_STARTED,
            runtime.plan.plan_id,
            subtask_id=subtask.subtask_id,
            name=subtask.name,
            worker_kind=worker_kind_for(subtask).value,
            dependencies=list(subtask.dependencies),
        )

    def _on_outcome(self, runtime: _PlanRuntime, outcome: SubtaskOutcome) -> None:
        plan_id = runtime.plan.plan_id
        self.registry.mark_finished(plan_id, outcome)
        if outcome.status is SubtaskOutcomeStatus.INTERRUPTED:
            with runtime.lock:
                runtime.interrupted.add(outcome.subtask_id)
            return

        if outcome.status is SubtaskOutcomeStatus.COMPLETED:
            self.events.emit(
                PlanEventType.SUBTASK_COMPLETED,
                plan_id,
                subtask_id=outcome.subtask_id,
                summary=outcome.summary,
                exit_code=outcome.exit_code,
                duration_seconds=round(outcome.duration_seconds, 3),
            )
        else:
            self.events.emit(
                PlanEventType.SUBTASK_FAILED,
                plan_id,
                subtask_id=outcome.subtask_id,
                reason=outcome.failure_reason.value if outcome.failure_reason else None,
                summary=outcome.summary,
                exit_code=outcome.exit_code,
                duration_seconds=round(outcome.duration_seconds, 3),
                details=outcome.details,
            )
        if runtime.stop_reason is not TerminationReason.CANCELED:
            self._snapshot(runtime, trigger="subtask_resolved")

    def _checkpoint_state(self, runtime: _PlanRuntime) -> ExecutionState:
        """Live state with interrupted work recorded as running, as it was when stopped."""

        state = runtime.state.copy()
        with runtime.lock:
            interrupted = sorted(runtime.interrupted)
        for subtask_id in interrupted:
            if state.status_of(subtask_id) is SubtaskStatus.PENDING:
                state.transition(subtask_id, SubtaskStatus.RUNNING)
        return state

    def _autosave_snapshot(
        self,
        runtime: _PlanRuntime,
    ) -> tuple[Plan, ExecutionState, dict[str, Any]] | None:
        if runtime.lease_lost or runtime.stop_reason is TerminationReason.CANCELED:
            return None
        return runtime.plan, self._checkpoint_state(runtime), runtime.context

    def _snapshot(self, runtime: _PlanRuntime, *, trigger: str) -> None:
        # State is copied under the checkpoint lock, so concurrent writers keep order.
        try:
            self.checkpoints.capture(lambda: self._autosave_snapshot(runtime), trigger=trigger)
        except OSError:
            logger.exception(
                "Checkpoint (%s) failed for plan %s",
                trigger,
                runtime.plan.plan_id,
            )

    def _owned_runtime(self, plan_id: str) -> _PlanRuntime | None:
        """The in-process runtime, unless another process has since taken the plan."""

        with self._lock:
            runtime = self._runtimes.get(plan_id)
        if runtime is None or runtime.lease_lost:
            return None
        return runtime

    def _lease_is_live(self, record: PlanRecordView) -> bool:
        if record.status is not PlanStatus.RUNNING or record.heartbeat_at is None:
            return False
        age = utc_now() - record.heartbeat_at
        return age < timedelta(seconds=self.lease_timeout_seconds)

    def _on_lease_lost(self, runtime: _PlanRuntime) -> None:
        plan_id = runtime.plan.plan_id
        record = self.repository.get_plan(plan_id)
        canceled = record is None or record.status is PlanStatus.CANCELED
        with runtime.lock:
            runtime.lease_lost = True
            if runtime.stop_reason is None:
                runtime.stop_reason = (
                    TerminationReason.CANCELED if canceled else TerminationReason.SHUTDOWN
                )
            reason = runtime.stop_reason
        logger.warning(
            "Plan %s is no longer owned here (record: %s); stopping its sessions",
            plan_id,
            record.status.value if record is not None else "deleted",
        )
        runtime.sessions.terminate_all(reason)

    def _detach(self, runtime: _PlanRuntime, result: SchedulingResult) -> PlanRunResult:
        """End a loop whose plan row was changed elsewhere, without writing a verdict."""

        plan_id = runtime.plan.plan_id
        record = self.repository.get_plan(plan_id)
        status = record.status if record is not None else PlanStatus.CANCELED
        if status is PlanStatus.CANCELED:
            # The owner may have checkpointed after the canceling process deleted the file.
            self.checkpoints.delete(plan_id)
        completed, failed, _ = runtime.state.as_sets()
        run_result = PlanRunResult(
            plan_id=plan_id,
            status=status,
            outcome=(record.outcome if record is not None else None) or PlanOutcome.STOPPED,
            summary=(record.summary if record is not None else None) or result.summary,
            completed=completed,
            failed=failed,
            pending=sorted(runtime.state.pending),
        )
        with runtime.lock:
            runtime.status = status
            runtime.result = run_result
        runtime.plan.status = status
        logger.warning(
            "Plan %s loop stopped after losing ownership; record is %s",
            plan_id,
            status.value,
        )
        runtime.done.set()
        return run_result

    def _live_runtime(self, plan_id: str) -> _PlanRuntime:
        runtime = self._owned_runtime(plan_id)
        if runtime is None:
            self.repository.require_plan(plan_id)
            raise InvalidPlanTransitionError(f"Plan {plan_id} is not running in this process")
        return runtime

    def _await(self, runtime: _PlanRuntime, timeout: float | None) -> None:
        # The coordinating thread itself cannot wait for its own loop to exit.
        if runtime.thread is threading.current_thread():
            return
        if not runtime.done.wait(timeout):
            logger.warning(
                "Plan %s did not settle within %ss",
                runtime.plan.plan_id,
                timeout,
            )

    def _archived_sets(self, plan_id: str) -> tuple[list[str], list[str], list[str]]:
        """Progress of a plan not loaded in this process: checkpoint first, then event log."""

        try:
            document = self.checkpoints.store.read(plan_id)
        except CheckpointCorruptionError:
            logger.warning("Checkpoint for plan %s is unreadable; using the event log", plan_id)
            document = None
        if document is not None:
            return list(document.completed), list(document.failed), list(document.running)

        completed: set[str] = set()
        failed: set[str] = set()
        for event in self.repository.list_events(plan_id, limit=_EVENT_SCAN_LIMIT):
            if event.subtask_id is None:
                continue
            if event.event_type == PlanEventType.SUBTASK_COMPLETED.value:
                completed.add(event.subtask_id)
            elif event.event_type == PlanEventType.SUBTASK_FAILED.value:
                failed.add(event.subtask_id)
        return sorted(completed), sorted(failed - completed), []

    def _archive_event(self, event: PlanEvent) -> None:
        self.repository.add_event(event)


def _checkpoint_listener(events: EventBus) -> SnapshotListener:
    def _on_snapshot(document: CheckpointDocument, trigger: str) -> None:
        events.emit(
            PlanEventType.CHECKPOINT_CREATED,
            document.plan_id,
            checkpoint_id=document.checkpoint_id,
            trigger=trigger,
            completed=len(document.completed),
            failed=len(document.failed),
            running=len(document.running),
        )

    return _on_snapshot


def _output_listener(events: EventBus) -> OutputListener:
    def _on_line(plan_id: str, subtask_id: str, line: OutputLine) -> None:
        events.emit(
            PlanEventType.SUBTASK_OUTPUT,
            plan_id,
            subtask_id=subtask_id,
            stream=line.stream,
            category=line.category.value,
            text=line.text,
        )

    return _on_line
