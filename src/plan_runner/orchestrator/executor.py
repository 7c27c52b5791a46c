"""Process Executor: one external agent process per subtask execution."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from plan_runner.config import ExecutorSettings
from plan_runner.orchestrator.backend import (
    AgentBackend,
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    CliAgentBackend,
)
from plan_runner.orchestrator.errors import ResourceExhaustedError
from plan_runner.orchestrator.failure_classifier import classify_exit_failure
from plan_runner.orchestrator.instructions import (
    build_instructions,
    is_high_complexity,
    worker_kind_for,
)
from plan_runner.orchestrator.models import (
    INTERRUPTING_TERMINATIONS,
    FailureReason,
    Subtask,
    SubtaskOutcome,
    SubtaskOutcomeStatus,
    TerminationReason,
)
from plan_runner.orchestrator.output import LineSplitter, OutputLine, categorize_line
from plan_runner.orchestrator.registry import SubtaskRegistry
from plan_runner.orchestrator.sessions import Session, SessionLimiter, SessionTable
from plan_runner.orchestrator.workdir import SubtaskWorkdirManager
from plan_runner.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

_LOG_TAIL_BYTES = 4_000

OutputListener = Callable[[str, str, OutputLine], None]


@dataclass(slots=True)
class PlanContext:
    """What the executor needs to know about the plan a subtask belongs to."""

    plan_id: str
    task_description: str
    working_directory: Path
    sessions: SessionTable
    env: dict[str, str] = field(default_factory=dict)


class ProcessExecutor:
    """Runs subtasks as agent processes under the session ceiling and both timers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: AgentBackend,
        limiter: SessionLimiter,
        workdirs: SubtaskWorkdirManager,
        command_template: str,
        hard_timeout_seconds: float = 960.0,
        extended_hard_timeout_seconds: float = 1_800.0,
        inactivity_timeout_seconds: float = 300.0,
        graceful_shutdown_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
        registry: SubtaskRegistry | None = None,
        output_listener: OutputListener | None = None,
    ) -> None:
        self.backend = backend
        self.limiter = limiter
        self.workdirs = workdirs
        self.command_template = command_template
        self.hard_timeout_seconds = hard_timeout_seconds
        self.extended_hard_timeout_seconds = extended_hard_timeout_seconds
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.registry = registry
        self.output_listener = output_listener

    @classmethod
    def from_settings(
        cls,
        settings: ExecutorSettings,
        *,
        limiter: SessionLimiter,
        registry: SubtaskRegistry | None = None,
        backend: AgentBackend | None = None,
        output_listener: OutputListener | None = None,
    ) -> ProcessExecutor:
        return cls(
            backend=backend or CliAgentBackend(),
            limiter=limiter,
            workdirs=SubtaskWorkdirManager(settings.run_dir),
            command_template=settings.command_template,
            hard_timeout_seconds=settings.hard_timeout_seconds,
            extended_hard_timeout_seconds=settings.extended_hard_timeout_seconds,
            inactivity_timeout_seconds=settings.inactivity_timeout_seconds,
            graceful_shutdown_seconds=settings.graceful_shutdown_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            registry=registry,
            output_listener=output_listener,
        )

    def hard_timeout_for(self, subtask: Subtask) -> float:
        if is_high_complexity(subtask):
            return self.extended_hard_timeout_seconds
        return self.hard_timeout_seconds

    def execute(self, subtask: Subtask, plan_context: PlanContext) -> SubtaskOutcome:
        """Spawn one agent process for the subtask and wait for it to resolve."""

        started_at = utc_now()
        try:
            with self.limiter.slot():
                return self._run_session(subtask, plan_context, started_at)
        except ResourceExhaustedError as error:
            logger.warning(
                "Refusing to launch subtask %s of plan %s: %s",
                subtask.subtask_id,
                plan_context.plan_id,
                error,
            )
            return SubtaskOutcome(
                subtask_id=subtask.subtask_id,
                status=SubtaskOutcomeStatus.FAILED,
                summary=str(error),
                failure_reason=FailureReason.RESOURCE_EXHAUSTED,
                started_at=started_at,
                finished_at=utc_now(),
                details={"session_limit": error.limit},
            )

    def _run_session(
        self,
        subtask: Subtask,
        plan_context: PlanContext,
        started_at: datetime,
    ) -> SubtaskOutcome:
        plan_id = plan_context.plan_id
        session_name = f"{plan_id}-{subtask.subtask_id}-{uuid.uuid4().hex[:8]}"
        kind = worker_kind_for(subtask)
        hard_timeout = self.hard_timeout_for(subtask)
        instructions = build_instructions(
            task_description=plan_context.task_description,
            subtask=subtask,
            working_directory=plan_context.working_directory,
        )
        materialized = self.workdirs.materialize(
            plan_id=plan_id,
            subtask_id=subtask.subtask_id,
            session_name=session_name,
            instructions=instructions,
            meta={
                "plan_id": plan_id,
                "subtask_id": subtask.subtask_id,
                "session": session_name,
                "worker_kind": kind.value,
                "hard_timeout_seconds": hard_timeout,
                "inactivity_timeout_seconds": self.inactivity_timeout_seconds,
                "started_at": to_iso(started_at),
            },
        )

        session = plan_context.sessions.open(
            subtask.subtask_id,
            session_name=session_name,
            hard_timeout_seconds=hard_timeout,
            inactivity_timeout_seconds=self.inactivity_timeout_seconds,
        )
        if self.registry is not None:
            self.registry.mark_running(plan_id, subtask.subtask_id, session_name=session_name)

        splitters = {"stdout": LineSplitter(), "stderr": LineSplitter()}

        def _on_output(stream: str, text: str) -> None:
            session.touch()
            for line in splitters[stream].feed(text):
                self._emit_line(plan_id, subtask.subtask_id, stream, line)

        def _on_spawn(pid: int) -> None:
            session.attach(pid)
            if self.registry is not None:
                self.registry.attach_pid(plan_id, subtask.subtask_id, pid)

        env = dict(plan_context.env)
        env["PLAN_RUNNER_PLAN_ID"] = plan_id
        env["PLAN_RUNNER_SUBTASK_ID"] = subtask.subtask_id
        env["PLAN_RUNNER_WORKER_KIND"] = kind.value

        logger.info(
            "Launching subtask %s of plan %s (kind=%s, hard_timeout=%.0fs)",
            subtask.subtask_id,
            plan_id,
            kind.value,
            hard_timeout,
        )
        try:
            result = self.backend.run(
                BackendRunRequest(
                    instructions=instructions,
                    instructions_file=materialized.instructions_path,
                    working_directory=plan_context.working_directory,
                    session_name=session_name,
                    command_template=self.command_template,
                    stdout_path=materialized.stdout_path,
                    stderr_path=materialized.stderr_path,
                    env=env,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    poll_interval_seconds=self.poll_interval_seconds,
                    termination_check=session.check,
                    on_output=_on_output,
                    on_spawn=_on_spawn,
                ),
            )
        except BackendRunError as error:
            logger.warning(
                "Agent for subtask %s of plan %s failed to start: %s",
                subtask.subtask_id,
                plan_id,
                error,
            )
            outcome = SubtaskOutcome(
                subtask_id=subtask.subtask_id,
                status=SubtaskOutcomeStatus.FAILED,
                summary=str(error),
                failure_reason=FailureReason.SPAWN_ERROR,
                started_at=started_at,
                finished_at=utc_now(),
                details={"session": session_name, "transient": error.transient},
            )
        else:
            for stream, splitter in splitters.items():
                for line in splitter.flush():
                    self._emit_line(plan_id, subtask.subtask_id, stream, line)
            outcome = self._outcome_from_result(
                subtask=subtask,
                session=session,
                result=result,
                started_at=started_at,
            )
        finally:
            plan_context.sessions.close(subtask.subtask_id)

        logger.info(
            "Subtask %s of plan %s resolved: %s (%s)",
            subtask.subtask_id,
            plan_id,
            outcome.status.value,
            outcome.summary,
        )
        return outcome

    def _outcome_from_result(
        self,
        *,
        subtask: Subtask,
        session: Session,
        result: BackendRunResult,
        started_at: datetime,
    ) -> SubtaskOutcome:
        details: dict[str, object] = {
            "session": session.session_name,
            "pid": session.pid,
            "exit_code": result.exit_code,
            "forced_kill": result.forced_kill,
            "stdout_path": str(result.stdout_path),
            "stderr_path": str(result.stderr_path),
        }
        outcome = SubtaskOutcome(
            subtask_id=subtask.subtask_id,
            status=SubtaskOutcomeStatus.COMPLETED,
            summary=f"Completed in {result.duration_seconds:.1f}s",
            exit_code=result.exit_code,
            started_at=started_at,
            finished_at=utc_now(),
            duration_seconds=result.duration_seconds,
            details=details,
        )

        reason = result.terminated
        if reason in INTERRUPTING_TERMINATIONS:
            outcome.status = SubtaskOutcomeStatus.INTERRUPTED
            outcome.summary = f"Interrupted ({reason.value}) after {result.duration_seconds:.1f}s"
        elif reason is TerminationReason.HARD_TIMEOUT:
            outcome.status = SubtaskOutcomeStatus.FAILED
            outcome.failure_reason = FailureReason.HARD_TIMEOUT
            outcome.summary = (
                f"Hard timeout: still running after {session.hard_timeout_seconds:.0f}s"
            )
        elif reason is TerminationReason.INACTIVITY:
            outcome.status = SubtaskOutcomeStatus.FAILED
            outcome.failure_reason = FailureReason.INACTIVITY
            outcome.summary = (
                f"Inactivity: no output for {session.inactivity_timeout_seconds:.0f}s"
            )
        elif result.exit_code != 0:
            stderr_tail = _read_tail(result.stderr_path)
            classification = classify_exit_failure(
                stdout=_read_tail(result.stdout_path),
                stderr=stderr_tail,
            )
            details.update(classification.to_event_details(exit_code=result.exit_code))
            last_line = stderr_tail.strip().splitlines()[-1:] or [""]
            outcome.status = SubtaskOutcomeStatus.FAILED
            outcome.failure_reason = FailureReason.EXIT_NONZERO
            outcome.summary = f"Agent exited with status {result.exit_code}"
            if last_line[0]:
                outcome.summary = f"{outcome.summary}: {last_line[0][:200]}"
        return outcome

    def _emit_line(self, plan_id: str, subtask_id: str, stream: str, raw: str) -> None:
        line = categorize_line(raw, stream=stream)
        if not line.text:
            return
        logger.debug("[%s/%s %s] %s", plan_id, subtask_id, stream, line.text)
        if line.important and self.output_listener is not None:
            self.output_listener(plan_id, subtask_id, line)


def _read_tail(path: Path, max_bytes: int = _LOG_TAIL_BYTES) -> str:
    try:
        with path.open("rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - max_bytes))
            return handle.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
