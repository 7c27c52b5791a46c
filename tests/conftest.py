"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from plan_runner.config import CheckpointSettings, ExecutorSettings, SchedulerSettings, Settings
from plan_runner.orchestrator.services import PlanOrchestrator

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m plan_runner.orchestrator.backend.echo_agent "
    "--instructions-file {instructions_file} --session {session}"
)


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast timers and tmp_path storage, driving the local echo agent."""

    return Settings(
        db_path=tmp_path / "plan_runner.db",
        executor=ExecutorSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            hard_timeout_seconds=60.0,
            extended_hard_timeout_seconds=120.0,
            inactivity_timeout_seconds=30.0,
            graceful_shutdown_seconds=1.0,
            poll_interval_seconds=0.05,
            max_concurrent_sessions=10,
            run_dir=tmp_path / "runs",
        ),
        scheduler=SchedulerSettings(
            max_passes=10,
            settle_delay_seconds=0.0,
            heartbeat_interval_seconds=0.1,
            lease_timeout_seconds=30.0,
        ),
        checkpoints=CheckpointSettings(
            checkpoint_dir=tmp_path / "checkpoints",
            interval_seconds=30.0,
            retention_days=30,
        ),
    )


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture()
def orchestrator(settings: Settings) -> Iterator[PlanOrchestrator]:
    instance = PlanOrchestrator.from_settings(settings)
    try:
        yield instance
    finally:
        instance.shutdown(timeout=30)
        instance.close()
