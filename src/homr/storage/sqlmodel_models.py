"""SQLModel ORM tables for HOMR storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Outcome(SQLModel, table=True):
    __tablename__ = "outcomes"  # type: ignore[bad-override]

    outcome_id: str = Field(primary_key=True)
    name: str
    status: str = Field(index=True)
    intent_json: str | None = Field(default=None, sa_column=Column(Text))
    design_approach: str | None = Field(default=None, sa_column=Column(Text))
    homr_enabled: bool = Field(default=True)
    auto_resolve_mode: str = Field(default="manual")
    auto_resolve_threshold: float = Field(default=0.8)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "outcome_id", "status", "priority"),)

    task_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = Field(default=100)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    depends_on_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    phase: str = Field(default="execution")
    decomposed_from_task_id: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Worker(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HomrContext(SQLModel, table=True):
    __tablename__ = "homr_context"  # type: ignore[bad-override]

    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    tasks_observed: int = Field(default=0)
    discoveries_extracted: int = Field(default=0)
    escalations_created: int = Field(default=0)
    steering_actions: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HomrContextEntry(SQLModel, table=True):
    __tablename__ = "homr_context_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_homr_context_entries_kind", "outcome_id", "kind", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    entry_id: str = Field(unique=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str
    schema_version: int = Field(default=1)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HomrObservation(SQLModel, table=True):
    __tablename__ = "homr_observations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_homr_observations_outcome", "outcome_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(index=True)
    on_track: bool
    alignment_score: int
    quality: str
    drift_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    discoveries_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    issues_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    has_ambiguity: bool = Field(default=False)
    ambiguity_json: str | None = Field(default=None, sa_column=Column(Text))
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HomrEscalation(SQLModel, table=True):
    __tablename__ = "homr_escalations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_homr_escalations_outcome_status", "outcome_id", "status"),)

    escalation_id: str = Field(primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    trigger_type: str = Field(index=True)
    trigger_task_id: str | None = None
    trigger_evidence_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    question_text: str = Field(sa_column=Column(Text, nullable=False))
    question_context: str = Field(default="", sa_column=Column(Text, nullable=False))
    question_options_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    affected_tasks_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    answer_option: str | None = None
    answer_context: str | None = Field(default=None, sa_column=Column(Text))
    answered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    incorporated_into_outcome_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HomrActivity(SQLModel, table=True):
    __tablename__ = "homr_activity_log"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_homr_activity_outcome_time", "outcome_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    outcome_id: str = Field(
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    type: str = Field(index=True)
    event: str = Field(index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    outcome_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("outcomes.outcome_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    job_type: str = Field(default="improvement_analysis")
    status: str = Field(index=True)
    progress_message: str | None = None
    lookback_days: int = Field(default=30)
    max_proposals: int = Field(default=5)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
