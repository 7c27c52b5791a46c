"""SQLModel ORM tables for the plan archive."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlmodel import Field, SQLModel


class PlanRecord(SQLModel, table=True):
    __tablename__ = "plans"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_plans_status_updated", "status", "updated_at"),)

    plan_id: str = Field(primary_key=True)
    task_description: str = Field(sa_column=Column(Text, nullable=False))
    working_directory: str
    status: str
    outcome: str | None = None
    failure_reason: str | None = None
    summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    subtask_count: int = 0
    estimated_minutes: int = 0
    plan_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    owner_id: str | None = None
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class PlanEventRecord(SQLModel, table=True):
    __tablename__ = "plan_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_plan_events_plan_created", "plan_id", "created_at"),)

    event_pk: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True)
    plan_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("plans.plan_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    subtask_id: str | None = None
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
