"""Initial HOMR schema: outcomes, tasks, workers, supervision state, analysis jobs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:  # noqa: PLR0915
    op.create_table(
        "outcomes",
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("intent_json", sa.Text(), nullable=True),
        sa.Column("design_approach", sa.Text(), nullable=True),
        sa.Column("homr_enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("auto_resolve_mode", sa.String(), nullable=False, server_default="manual"),
        sa.Column("auto_resolve_threshold", sa.Float(), nullable=False, server_default="0.8"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("outcome_id"),
    )
    op.create_index("ix_outcomes_status", "outcomes", ["status"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("depends_on_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("phase", sa.String(), nullable=False, server_default="execution"),
        sa.Column("decomposed_from_task_id", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_outcome_id", "tasks", ["outcome_id"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index(
        "ix_tasks_decomposed_from_task_id",
        "tasks",
        ["decomposed_from_task_id"],
        unique=False,
    )
    op.create_index("idx_tasks_queue", "tasks", ["outcome_id", "status", "priority"], unique=False)

    op.create_table(
        "workers",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_workers_outcome_id", "workers", ["outcome_id"], unique=False)
    op.create_index("ix_workers_status", "workers", ["status"], unique=False)

    op.create_table(
        "homr_context",
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("tasks_observed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discoveries_extracted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalations_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("steering_actions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("outcome_id"),
    )

    op.create_table(
        "homr_context_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entry_id"),
    )
    op.create_index(
        "ix_homr_context_entries_outcome_id",
        "homr_context_entries",
        ["outcome_id"],
        unique=False,
    )
    op.create_index(
        "idx_homr_context_entries_kind",
        "homr_context_entries",
        ["outcome_id", "kind", "id"],
        unique=False,
    )

    op.create_table(
        "homr_observations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("on_track", sa.Boolean(), nullable=False),
        sa.Column("alignment_score", sa.Integer(), nullable=False),
        sa.Column("quality", sa.String(), nullable=False),
        sa.Column("drift_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("discoveries_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("issues_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("has_ambiguity", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("ambiguity_json", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_homr_observations_outcome_id",
        "homr_observations",
        ["outcome_id"],
        unique=False,
    )
    op.create_index("ix_homr_observations_task_id", "homr_observations", ["task_id"], unique=False)
    op.create_index(
        "idx_homr_observations_outcome",
        "homr_observations",
        ["outcome_id", "id"],
        unique=False,
    )

    op.create_table(
        "homr_escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("trigger_task_id", sa.String(), nullable=True),
        sa.Column("trigger_evidence_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("question_context", sa.Text(), nullable=False, server_default=""),
        sa.Column("question_options_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("affected_tasks_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("answer_option", sa.String(), nullable=True),
        sa.Column("answer_context", sa.Text(), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("incorporated_into_outcome_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index(
        "ix_homr_escalations_outcome_id",
        "homr_escalations",
        ["outcome_id"],
        unique=False,
    )
    op.create_index("ix_homr_escalations_status", "homr_escalations", ["status"], unique=False)
    op.create_index(
        "ix_homr_escalations_trigger_type",
        "homr_escalations",
        ["trigger_type"],
        unique=False,
    )
    op.create_index(
        "ix_homr_escalations_incorporated_into_outcome_id",
        "homr_escalations",
        ["incorporated_into_outcome_id"],
        unique=False,
    )
    op.create_index(
        "idx_homr_escalations_outcome_status",
        "homr_escalations",
        ["outcome_id", "status"],
        unique=False,
    )

    op.create_table(
        "homr_activity_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_homr_activity_log_outcome_id",
        "homr_activity_log",
        ["outcome_id"],
        unique=False,
    )
    op.create_index("ix_homr_activity_log_type", "homr_activity_log", ["type"], unique=False)
    op.create_index("ix_homr_activity_log_event", "homr_activity_log", ["event"], unique=False)
    op.create_index(
        "idx_homr_activity_outcome_time",
        "homr_activity_log",
        ["outcome_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "analysis_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("outcome_id", sa.String(), nullable=True),
        sa.Column("job_type", sa.String(), nullable=False, server_default="improvement_analysis"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_message", sa.String(), nullable=True),
        sa.Column("lookback_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("max_proposals", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["outcome_id"], ["outcomes.outcome_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_analysis_jobs_outcome_id", "analysis_jobs", ["outcome_id"], unique=False)
    op.create_index("ix_analysis_jobs_status", "analysis_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_analysis_jobs_status", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_outcome_id", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
    op.drop_index("idx_homr_activity_outcome_time", table_name="homr_activity_log")
    op.drop_index("ix_homr_activity_log_event", table_name="homr_activity_log")
    op.drop_index("ix_homr_activity_log_type", table_name="homr_activity_log")
    op.drop_index("ix_homr_activity_log_outcome_id", table_name="homr_activity_log")
    op.drop_table("homr_activity_log")
    op.drop_index("idx_homr_escalations_outcome_status", table_name="homr_escalations")
    op.drop_index(
        "ix_homr_escalations_incorporated_into_outcome_id",
        table_name="homr_escalations",
    )
    op.drop_index("ix_homr_escalations_trigger_type", table_name="homr_escalations")
    op.drop_index("ix_homr_escalations_status", table_name="homr_escalations")
    op.drop_index("ix_homr_escalations_outcome_id", table_name="homr_escalations")
    op.drop_table("homr_escalations")
    op.drop_index("idx_homr_observations_outcome", table_name="homr_observations")
    op.drop_index("ix_homr_observations_task_id", table_name="homr_observations")
    op.drop_index("ix_homr_observations_outcome_id", table_name="homr_observations")
    op.drop_table("homr_observations")
    op.drop_index("idx_homr_context_entries_kind", table_name="homr_context_entries")
    op.drop_index("ix_homr_context_entries_outcome_id", table_name="homr_context_entries")
    op.drop_table("homr_context_entries")
    op.drop_table("homr_context")
    op.drop_index("ix_workers_status", table_name="workers")
    op.drop_index("ix_workers_outcome_id", table_name="workers")
    op.drop_table("workers")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_index("ix_tasks_decomposed_from_task_id", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_outcome_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_outcomes_status", table_name="outcomes")
    op.drop_table("outcomes")
