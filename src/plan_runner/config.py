"""Runtime configuration for plan execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = "goose run --text {instructions} --name {session}"


@dataclass(slots=True)
class ExecutorSettings:
    """External agent process settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    hard_timeout_seconds: float = 960.0
    extended_hard_timeout_seconds: float = 1_800.0
    inactivity_timeout_seconds: float = 300.0
    graceful_shutdown_seconds: float = 5.0
    poll_interval_seconds: float = 0.1
    max_concurrent_sessions: int = 100
    run_dir: Path = Path(".plan_runner/runs")


@dataclass(slots=True)
class SchedulerSettings:
    """Wave scheduling settings."""

    max_passes: int = 10
    settle_delay_seconds: float = 0.1
    heartbeat_interval_seconds: float = 5.0
    lease_timeout_seconds: float = 60.0


@dataclass(slots=True)
class CheckpointSettings:
    """Checkpoint persistence and retention settings."""

    checkpoint_dir: Path = Path(".plan_runner/checkpoints")
    interval_seconds: float = 30.0
    retention_days: int = 30


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".plan_runner.db")
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PLAN_RUNNER_DB_PATH", ".plan_runner.db")),
            executor=ExecutorSettings(
                command_template=os.getenv(
                    "PLAN_RUNNER_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                hard_timeout_seconds=float(
                    os.getenv("PLAN_RUNNER_HARD_TIMEOUT_SECONDS", "960"),
                ),
                extended_hard_timeout_seconds=float(
                    os.getenv("PLAN_RUNNER_EXTENDED_HARD_TIMEOUT_SECONDS", "1800"),
                ),
                inactivity_timeout_seconds=float(
                    os.getenv("PLAN_RUNNER_INACTIVITY_TIMEOUT_SECONDS", "300"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("PLAN_RUNNER_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                poll_interval_seconds=float(
                    os.getenv("PLAN_RUNNER_POLL_INTERVAL_SECONDS", "0.1"),
                ),
                max_concurrent_sessions=int(
                    os.getenv("PLAN_RUNNER_MAX_CONCURRENT_SESSIONS", "100"),
                ),
                run_dir=Path(os.getenv("PLAN_RUNNER_RUN_DIR", ".plan_runner/runs")),
            ),
            scheduler=SchedulerSettings(
                max_passes=int(os.getenv("PLAN_RUNNER_MAX_SCHEDULING_PASSES", "10")),
                settle_delay_seconds=float(
                    os.getenv("PLAN_RUNNER_WAVE_SETTLE_DELAY_SECONDS", "0.1"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("PLAN_RUNNER_HEARTBEAT_INTERVAL_SECONDS", "5"),
                ),
                lease_timeout_seconds=float(
                    os.getenv("PLAN_RUNNER_LEASE_TIMEOUT_SECONDS", "60"),
                ),
            ),
            checkpoints=CheckpointSettings(
                checkpoint_dir=Path(
                    os.getenv("PLAN_RUNNER_CHECKPOINT_DIR", ".plan_runner/checkpoints"),
                ),
                interval_seconds=float(
                    os.getenv("PLAN_RUNNER_CHECKPOINT_INTERVAL_SECONDS", "30"),
                ),
                retention_days=int(os.getenv("PLAN_RUNNER_RETENTION_DAYS", "30")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot honor."""

        executor = self.executor
        if "{instructions" not in executor.command_template:
            raise ValueError(
                "PLAN_RUNNER_AGENT_COMMAND_TEMPLATE must include {instructions} "
                "or {instructions_file}.",
            )
        if executor.hard_timeout_seconds <= 0:
            raise ValueError("PLAN_RUNNER_HARD_TIMEOUT_SECONDS must be > 0.")
        if executor.extended_hard_timeout_seconds < executor.hard_timeout_seconds:
            raise ValueError(
                "PLAN_RUNNER_EXTENDED_HARD_TIMEOUT_SECONDS must be >= "
                "PLAN_RUNNER_HARD_TIMEOUT_SECONDS.",
            )
        if executor.inactivity_timeout_seconds <= 0:
            raise ValueError("PLAN_RUNNER_INACTIVITY_TIMEOUT_SECONDS must be > 0.")
        if executor.graceful_shutdown_seconds < 0:
            raise ValueError("PLAN_RUNNER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if executor.poll_interval_seconds <= 0:
            raise ValueError("PLAN_RUNNER_POLL_INTERVAL_SECONDS must be > 0.")
        if executor.max_concurrent_sessions <= 0:
            raise ValueError("PLAN_RUNNER_MAX_CONCURRENT_SESSIONS must be a positive integer.")
        if self.scheduler.max_passes <= 0:
            raise ValueError("PLAN_RUNNER_MAX_SCHEDULING_PASSES must be a positive integer.")
        if self.scheduler.settle_delay_seconds < 0:
            raise ValueError("PLAN_RUNNER_WAVE_SETTLE_DELAY_SECONDS must be >= 0.")
        if self.scheduler.heartbeat_interval_seconds <= 0:
            raise ValueError("PLAN_RUNNER_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.lease_timeout_seconds <= self.scheduler.heartbeat_interval_seconds:
            raise ValueError(
                "PLAN_RUNNER_LEASE_TIMEOUT_SECONDS must be greater than "
                "PLAN_RUNNER_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.checkpoints.interval_seconds <= 0:
            raise ValueError("PLAN_RUNNER_CHECKPOINT_INTERVAL_SECONDS must be > 0.")
        if self.checkpoints.retention_days < 0:
            raise ValueError("PLAN_RUNNER_RETENTION_DAYS must be >= 0.")
