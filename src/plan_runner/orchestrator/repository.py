"""Plan archive and event log backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import Update, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from plan_runner.orchestrator.contracts import plan_from_payload, plan_to_payload
from plan_runner.orchestrator.errors import PlanNotFoundError
from plan_runner.orchestrator.events import PlanEvent
from plan_runner.orchestrator.models import (
    TERMINAL_PLAN_STATUSES,
    Plan,
    PlanEventView,
    PlanOutcome,
    PlanRecordView,
    PlanStatus,
)
from plan_runner.storage.alembic_runner import upgrade_head
from plan_runner.storage.common import as_utc, sqlite_engine, to_db_datetime, utc_now
from plan_runner.storage.sqlmodel_models import PlanEventRecord, PlanRecord


class PlanRepository:
    """Durable plan records, status transitions and event history."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = sqlite_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create_plan(self, plan: Plan) -> PlanRecordView:
        now = utc_now()
        with Session(self.engine) as session:
            row = PlanRecord(
                plan_id=plan.plan_id,
                task_description=plan.task_description,
                working_directory=str(plan.working_directory),
                status=plan.status.value,
                subtask_count=len(plan.subtasks),
                estimated_minutes=plan.estimated_minutes,
                plan_json=json.dumps(plan_to_payload(plan), ensure_ascii=False, sort_keys=True),
                created_at=to_db_datetime(plan.created_at),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_plan_view(row)

    def get_plan(self, plan_id: str) -> PlanRecordView | None:
        with Session(self.engine) as session:
            row = session.get(PlanRecord, plan_id)
            return _to_plan_view(row) if row is not None else None

    def require_plan(self, plan_id: str) -> PlanRecordView:
        view = self.get_plan(plan_id)
        if view is None:
            raise PlanNotFoundError(plan_id)
        return view

    def load_plan(self, plan_id: str) -> Plan:
        """Rebuild the submitted plan from its archived document."""

        with Session(self.engine) as session:
            row = session.get(PlanRecord, plan_id)
            if row is None:
                raise PlanNotFoundError(plan_id)
            plan = plan_from_payload(json.loads(row.plan_json))
            plan.status = PlanStatus(row.status)
            return plan

    def update_status(  # noqa: PLR0913
        self,
        plan_id: str,
        *,
        status: PlanStatus,
        expected: Iterable[PlanStatus] | None = None,
        owner_id: str | None = None,
        outcome: PlanOutcome | None = None,
        failure_reason: str | None = None,
        summary: str | None = None,
    ) -> bool:
        """Move a plan to ``status``; returns False when a guard did not match.

        ``expected`` guards on the current status and ``owner_id`` on the lease
        holder. Leaving ``running`` releases the lease.
        """

        now = utc_now()
        values: dict[str, object] = {
            "status": status.value,
            "updated_at": to_db_datetime(now),
            "outcome": outcome.value if outcome is not None else None,
            "failure_reason": failure_reason,
            "summary": summary,
            "finished_at": to_db_datetime(now) if status in TERMINAL_PLAN_STATUSES else None,
        }
        if status is not PlanStatus.RUNNING:
            values["owner_id"] = None
            values["heartbeat_at"] = None
        statement = sa_update(PlanRecord).where(col(PlanRecord.plan_id) == plan_id)
        if expected is not None:
            statement = statement.where(
                col(PlanRecord.status).in_([item.value for item in expected]),
            )
        if owner_id is not None:
            statement = statement.where(col(PlanRecord.owner_id) == owner_id)
        return self._apply(statement.values(**values))

    def claim(
        self,
        plan_id: str,
        owner_id: str,
        *,
        expected: Iterable[PlanStatus],
        stale_before: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Atomically move a plan to ``running`` under ``owner_id``.

        A plan already ``running`` is only taken over when its lease has no
        heartbeat or the last heartbeat is older than ``stale_before``.
        """

        now = now or utc_now()
        statuses = [item.value for item in expected]
        statement = sa_update(PlanRecord).where(
            col(PlanRecord.plan_id) == plan_id,
            col(PlanRecord.status).in_(statuses),
        )
        if PlanStatus.RUNNING.value in statuses:
            abandoned = col(PlanRecord.heartbeat_at).is_(None)
            if stale_before is not None:
                abandoned = or_(
                    abandoned,
                    col(PlanRecord.heartbeat_at) < to_db_datetime(stale_before),
                )
            statement = statement.where(
                or_(col(PlanRecord.status) != PlanStatus.RUNNING.value, abandoned),
            )
        return self._apply(
            statement.values(
                status=PlanStatus.RUNNING.value,
                owner_id=owner_id,
                heartbeat_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
                outcome=None,
                failure_reason=None,
                summary=None,
                finished_at=None,
            ),
        )

    def heartbeat(self, plan_id: str, owner_id: str, *, now: datetime | None = None) -> bool:
        """Refresh the lease; False once the plan left ``running`` or changed owner."""

        statement = (
            sa_update(PlanRecord)
            .where(
                col(PlanRecord.plan_id) == plan_id,
                col(PlanRecord.status) == PlanStatus.RUNNING.value,
                col(PlanRecord.owner_id) == owner_id,
            )
            .values(heartbeat_at=to_db_datetime(now or utc_now()))
        )
        return self._apply(statement)

    def _apply(self, statement: Update) -> bool:
        with Session(self.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_plans(
        self,
        *,
        statuses: Iterable[PlanStatus] | None = None,
        limit: int = 50,
    ) -> list[PlanRecordView]:
        statement = select(PlanRecord)
        if statuses is not None:
            statement = statement.where(
                col(PlanRecord.status).in_([status.value for status in statuses]),
            )
        statement = statement.order_by(col(PlanRecord.updated_at).desc()).limit(max(1, limit))
        with Session(self.engine) as session:
            return [_to_plan_view(row) for row in session.exec(statement).all()]

    def list_plan_ids(self) -> list[str]:
        with Session(self.engine) as session:
            return list(session.exec(select(PlanRecord.plan_id)).all())

    def add_event(self, event: PlanEvent) -> None:
        with Session(self.engine) as session:
            session.add(
                PlanEventRecord(
                    event_id=event.event_id,
                    plan_id=event.plan_id,
                    subtask_id=event.subtask_id,
                    event_type=event.event_type.value,
                    details_json=json.dumps(
                        event.details,
                        ensure_ascii=False,
                        sort_keys=True,
                        default=str,
                    )
                    if event.details
                    else None,
                    created_at=to_db_datetime(event.created_at),
                ),
            )
            session.commit()

    def list_events(self, plan_id: str, *, limit: int = 200) -> list[PlanEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PlanEventRecord)
                .where(PlanEventRecord.plan_id == plan_id)
                .order_by(col(PlanEventRecord.event_pk).asc())
                .limit(max(1, limit)),
            ).all()
            return [
                PlanEventView(
                    event_id=row.event_id,
                    plan_id=row.plan_id,
                    subtask_id=row.subtask_id,
                    event_type=row.event_type,
                    created_at=as_utc(row.created_at),
                    details=json.loads(row.details_json) if row.details_json else {},
                )
                for row in rows
            ]

    def prune_finished(self, *, older_than: datetime) -> list[str]:
        """Delete terminal plans (and their events) finished before the cutoff."""

        cutoff = to_db_datetime(older_than)
        with Session(self.engine) as session:
            plan_ids = list(
                session.exec(
                    select(PlanRecord.plan_id).where(
                        col(PlanRecord.status).in_(
                            [status.value for status in TERMINAL_PLAN_STATUSES],
                        ),
                        col(PlanRecord.finished_at).is_not(None),
                        col(PlanRecord.finished_at) < cutoff,
                    ),
                ).all(),
            )
            if not plan_ids:
                return []
            session.exec(  # type: ignore[call-overload]
                sa_delete(PlanEventRecord).where(col(PlanEventRecord.plan_id).in_(plan_ids)),
            )
            session.exec(  # type: ignore[call-overload]
                sa_delete(PlanRecord).where(col(PlanRecord.plan_id).in_(plan_ids)),
            )
            session.commit()
            return sorted(plan_ids)


def _to_plan_view(row: PlanRecord) -> PlanRecordView:
    return PlanRecordView(
        plan_id=row.plan_id,
        task_description=row.task_description,
        working_directory=row.working_directory,
        status=PlanStatus(row.status),
        outcome=PlanOutcome(row.outcome) if row.outcome is not None else None,
        failure_reason=row.failure_reason,
        summary=row.summary,
        subtask_count=row.subtask_count,
        estimated_minutes=row.estimated_minutes,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        finished_at=as_utc(row.finished_at) if row.finished_at is not None else None,
        owner_id=row.owner_id,
        heartbeat_at=as_utc(row.heartbeat_at) if row.heartbeat_at is not None else None,
    )
