from __future__ import annotations

import allure
import pytest

from plan_runner.orchestrator.errors import ResourceExhaustedError
from plan_runner.orchestrator.models import TerminationReason
from plan_runner.orchestrator.sessions import Session, SessionLimiter, SessionTable

pytestmark = [
    allure.epic("Plan Runtime"),
    allure.feature("Agent Sessions"),
]


def _session(*, hard: float = 60.0, inactivity: float = 30.0) -> Session:
    return Session(
        plan_id="plan-s",
        subtask_id="A",
        session_name="plan-s-A",
        hard_timeout_seconds=hard,
        inactivity_timeout_seconds=inactivity,
        started_monotonic=100.0,
        last_activity_monotonic=100.0,
    )


def test_check_applies_inactivity_before_hard_deadline() -> None:
    session = _session()

    assert session.check(now=110.0) is None
    assert session.check(now=131.0) is TerminationReason.INACTIVITY


def test_output_activity_resets_inactivity_but_not_hard_deadline() -> None:
    session = _session(hard=60.0, inactivity=30.0)

    session.touch(now=125.0)
    assert session.check(now=150.0) is None
    session.touch(now=155.0)
    assert session.check(now=161.0) is TerminationReason.HARD_TIMEOUT


def test_first_termination_reason_wins() -> None:
    session = _session()

    assert session.request_termination(TerminationReason.PAUSED) is True
    assert session.request_termination(TerminationReason.CANCELED) is False
    assert session.check(now=1_000.0) is TerminationReason.PAUSED


def test_session_table_rejects_second_live_session_for_subtask() -> None:
    table = SessionTable("plan-s")
    table.open("A", session_name="s1", hard_timeout_seconds=10, inactivity_timeout_seconds=5)

    with pytest.raises(RuntimeError, match="already has a live session"):
        table.open("A", session_name="s2", hard_timeout_seconds=10, inactivity_timeout_seconds=5)

    table.close("A")
    table.open("A", session_name="s3", hard_timeout_seconds=10, inactivity_timeout_seconds=5)
    assert len(table) == 1


def test_terminate_all_latches_for_sessions_opened_afterwards() -> None:
    table = SessionTable("plan-s")
    first = table.open("A", session_name="a", hard_timeout_seconds=10, inactivity_timeout_seconds=5)

    affected = table.terminate_all(TerminationReason.PAUSED)
    late = table.open("B", session_name="b", hard_timeout_seconds=10, inactivity_timeout_seconds=5)

    assert affected == ["A"]
    assert first.termination is TerminationReason.PAUSED
    assert late.termination is TerminationReason.PAUSED
    assert table.stop_reason is TerminationReason.PAUSED
    assert table.terminate_all(TerminationReason.CANCELED) == []


def test_limiter_enforces_ceiling() -> None:
    limiter = SessionLimiter(1)

    with limiter.slot():
        assert limiter.in_use == 1
        with pytest.raises(ResourceExhaustedError), limiter.slot():
            pass
    assert limiter.in_use == 0
    with pytest.raises(RuntimeError, match="released more slots"):
        limiter.release()


def test_limiter_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError, match="positive"):
        SessionLimiter(0)
