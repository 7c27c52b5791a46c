"""Live agent sessions: per-plan session table and the global session ceiling."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from plan_runner.orchestrator.errors import ResourceExhaustedError
from plan_runner.orchestrator.models import TerminationReason
from plan_runner.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Session:
    """Binding between one subtask and its running agent process.

    Both deadlines are evaluated by ``check()``, which the backend calls from its
    poll loop, so timeouts and operator termination share one path.
    """

    plan_id: str
    subtask_id: str
    session_name: str
    hard_timeout_seconds: float
    inactivity_timeout_seconds: float
    started_at: datetime = field(default_factory=utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    last_activity_monotonic: float = field(default_factory=time.monotonic)
    pid: int | None = None
    termination: TerminationReason | None = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock,
        init=False,
        repr=False,
        compare=False,
    )

    def touch(self, now: float | None = None) -> None:
        with self._lock:
            self.last_activity_monotonic = time.monotonic() if now is None else now

    def attach(self, pid: int) -> None:
        with self._lock:
            self.pid = pid

    def request_termination(self, reason: TerminationReason) -> bool:
        """Record why the session must stop; the first recorded reason wins."""

        with self._lock:
            if self.termination is not None:
                return False
            self.termination = reason
            return True

    def check(self, now: float | None = None) -> TerminationReason | None:
        current = time.monotonic() if now is None else now
        with self._lock:
            if self.termination is None:
                if current - self.started_monotonic >= self.hard_timeout_seconds:
                    self.termination = TerminationReason.HARD_TIMEOUT
                elif current - self.last_activity_monotonic >= self.inactivity_timeout_seconds:
                    self.termination = TerminationReason.INACTIVITY
            return self.termination


class SessionTable:
    """Sessions of one plan, keyed by subtask id."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        self._sessions: dict[str, Session] = {}
        self._stop_reason: TerminationReason | None = None
        self._lock = threading.Lock()

    def open(
        self,
        subtask_id: str,
        *,
        session_name: str,
        hard_timeout_seconds: float,
        inactivity_timeout_seconds: float,
    ) -> Session:
        session = Session(
            plan_id=self.plan_id,
            subtask_id=subtask_id,
            session_name=session_name,
            hard_timeout_seconds=hard_timeout_seconds,
            inactivity_timeout_seconds=inactivity_timeout_seconds,
        )
        with self._lock:
            if subtask_id in self._sessions:
                raise RuntimeError(
                    f"Subtask {subtask_id} of plan {self.plan_id} already has a live session",
                )
            self._sessions[subtask_id] = session
            # Launches racing a plan-wide stop are terminated on their first sweep.
            if self._stop_reason is not None:
                session.request_termination(self._stop_reason)
        return session

    def close(self, subtask_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(subtask_id, None)

    def get(self, subtask_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(subtask_id)

    def active(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def terminate_all(self, reason: TerminationReason) -> list[str]:
        """Ask every live session to stop; returns affected subtask ids."""

        with self._lock:
            if self._stop_reason is None:
                self._stop_reason = reason
            sessions = list(self._sessions.values())
        affected = [
            session.subtask_id for session in sessions if session.request_termination(reason)
        ]
        if affected:
            logger.info(
                "Requested termination of %d session(s) for plan %s: %s",
                len(affected),
                self.plan_id,
                reason.value,
            )
        return sorted(affected)

    @property
    def stop_reason(self) -> TerminationReason | None:
        with self._lock:
            return self._stop_reason

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionLimiter:
    """Global ceiling on concurrently running sessions across all plans."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("Session limit must be a positive integer.")
        self.limit = limit
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_use >= self.limit:
                return False
            self._in_use += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_use <= 0:
                raise RuntimeError("SessionLimiter released more slots than acquired")
            self._in_use -= 1

    @contextmanager
    def slot(self) -> Iterator[None]:
        if not self.try_acquire():
            raise ResourceExhaustedError(self.limit)
        try:
            yield
        finally:
            self.release()
