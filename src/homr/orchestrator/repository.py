"""Persistence facade for outcomes, tasks and HOMR supervision state."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from homr.orchestrator.contracts import (
    ambiguity_from_payload,
    ambiguity_to_payload,
    discovery_from_payload,
    discovery_to_payload,
    drift_from_payload,
    drift_to_payload,
    dump_json,
    intent_from_payload,
    intent_to_payload,
    issue_from_payload,
    issue_to_payload,
    load_json_list,
    load_json_object,
    option_from_payload,
    option_to_payload,
)
from homr.orchestrator.models import (
    ACTIVITY_TYPE_BY_EVENT,
    ActivityEvent,
    ActivityType,
    ActivityView,
    AnalysisJobStatus,
    AnalysisJobView,
    AutoResolveMode,
    ContextEntryKind,
    ContextStats,
    EscalationCreate,
    EscalationStatus,
    EscalationView,
    Observation,
    OutcomeCreate,
    OutcomeNotFoundError,
    OutcomeStatus,
    OutcomeView,
    Quality,
    TaskCreate,
    TaskNotFoundError,
    TaskStatus,
    TaskView,
    WorkerStatus,
    WorkerView,
)
from homr.storage.database import migrate, open_engine, to_aware_utc, to_naive_utc, utc_now
from homr.storage.sqlmodel_models import (
    AnalysisJob,
    HomrActivity,
    HomrContext,
    HomrContextEntry,
    HomrEscalation,
    HomrObservation,
    Outcome,
    Task,
    Worker,
)

logger = logging.getLogger(__name__)

_CONTEXT_STATS = frozenset(
    {"tasks_observed", "discoveries_extracted", "escalations_created", "steering_actions"},
)


class HomrRepository:
    """Supervision persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = open_engine(db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        migrate(self.db_path)

    # Outcomes

    def create_outcome(self, payload: OutcomeCreate) -> OutcomeView:
        """Create an outcome together with its empty context store."""

        now = utc_now()
        outcome_id = payload.outcome_id or _new_id("out")
        with Session(self.engine) as session:
            row = Outcome(
                outcome_id=outcome_id,
                name=payload.name,
                status=OutcomeStatus.ACTIVE.value,
                intent_json=dump_json(intent_to_payload(payload.intent))
                if payload.intent is not None
                else None,
                design_approach=payload.design_approach,
                homr_enabled=payload.homr_enabled,
                auto_resolve_mode=AutoResolveMode.MANUAL.value,
                auto_resolve_threshold=0.8,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # homr_context references outcomes; no relationship orders the inserts
            session.flush()
            session.add(HomrContext(outcome_id=outcome_id, created_at=now, updated_at=now))
            session.commit()
            session.refresh(row)
            return _to_outcome_view(row)

    def get_outcome(self, outcome_id: str) -> OutcomeView | None:
        with Session(self.engine) as session:
            row = session.get(Outcome, outcome_id)
            return _to_outcome_view(row) if row is not None else None

    def require_outcome(self, outcome_id: str) -> OutcomeView:
        outcome = self.get_outcome(outcome_id)
        if outcome is None:
            raise OutcomeNotFoundError(f"Outcome not found: {outcome_id}")
        return outcome

    def list_outcomes(self, *, status: OutcomeStatus | None = None) -> list[OutcomeView]:
        with Session(self.engine) as session:
            query = select(Outcome)
            if status is not None:
                query = query.where(Outcome.status == status.value)
            rows = session.exec(query.order_by(col(Outcome.created_at).asc())).all()
            return [_to_outcome_view(row) for row in rows]

    def is_homr_enabled(self, outcome_id: str) -> bool:
        outcome = self.get_outcome(outcome_id)
        return outcome is not None and outcome.homr_enabled

    def set_outcome_homr_enabled(self, outcome_id: str, *, enabled: bool) -> bool:
        return self._update_outcome(outcome_id, homr_enabled=enabled)

    def set_outcome_status(self, outcome_id: str, status: OutcomeStatus) -> bool:
        return self._update_outcome(outcome_id, status=status.value)

    def update_auto_resolve_config(
        self,
        outcome_id: str,
        *,
        mode: AutoResolveMode,
        threshold: float,
    ) -> bool:
        """Persist auto-resolve mode and confidence threshold for an outcome."""

        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Confidence threshold must be within [0.0, 1.0]: {threshold}")
        return self._update_outcome(
            outcome_id,
            auto_resolve_mode=mode.value,
            auto_resolve_threshold=threshold,
        )

    def _update_outcome(self, outcome_id: str, **values: Any) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Outcome)
                .where(col(Outcome.outcome_id) == outcome_id)
                .values(**values, updated_at=to_naive_utc(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        task_id = payload.task_id or _new_id("task")
        depends_on = _normalize_dependencies(payload.depends_on, task_id=task_id)
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(Outcome, payload.outcome_id) is None:
                raise OutcomeNotFoundError(f"Outcome not found: {payload.outcome_id}")
            row = Task(
                task_id=task_id,
                outcome_id=payload.outcome_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                priority=payload.priority,
                attempts=0,
                max_attempts=payload.max_attempts,
                depends_on_json=dump_json(depends_on),
                phase=payload.phase,
                decomposed_from_task_id=payload.decomposed_from_task_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def list_tasks(
        self,
        outcome_id: str,
        *,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskView]:
        """List outcome tasks in scheduling order (priority, then creation)."""

        with Session(self.engine) as session:
            query = select(Task).where(Task.outcome_id == outcome_id)
            if statuses is not None:
                query = query.where(col(Task.status).in_([status.value for status in statuses]))
            rows = session.exec(
                query.order_by(col(Task.priority).asc(), col(Task.created_at).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_pending_tasks(self, outcome_id: str) -> list[TaskView]:
        return self.list_tasks(outcome_id, statuses=[TaskStatus.PENDING])

    def list_subtasks(self, parent_task_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.decomposed_from_task_id == parent_task_id)
                .order_by(col(Task.priority).asc(), col(Task.created_at).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def update_task_description(self, task_id: str, description: str) -> bool:
        return self._update_task(task_id, description=description)

    def update_task_priority(self, task_id: str, priority: int) -> bool:
        return self._update_task(task_id, priority=priority)

    def update_task_max_attempts(self, task_id: str, max_attempts: int) -> bool:
        return self._update_task(task_id, max_attempts=max_attempts)

    def set_task_dependencies(self, task_id: str, depends_on: Sequence[str]) -> bool:
        """Replace a task's dependency list; callers validate acyclicity first."""

        normalized = _normalize_dependencies(depends_on, task_id=task_id)
        return self._update_task(task_id, depends_on_json=dump_json(normalized))

    def mark_task_completed(self, task_id: str, *, description: str | None = None) -> bool:
        values: dict[str, Any] = {"status": TaskStatus.COMPLETED.value}
        if description is not None:
            values["description"] = description
        return self._update_task(task_id, **values)

    def mark_task_failed(self, task_id: str, *, description: str | None = None) -> bool:
        values: dict[str, Any] = {"status": TaskStatus.FAILED.value}
        if description is not None:
            values["description"] = description
        return self._update_task(task_id, **values)

    def record_task_failure(self, task_id: str) -> TaskView:
        """Return a failed attempt to the queue, or fail it once the retry budget is spent."""

        task = self.require_task(task_id)
        if task.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
            raise ValueError(f"Task {task_id} is already {task.status.value}")
        status = TaskStatus.PENDING if task.attempts < task.max_attempts else TaskStatus.FAILED
        self._update_task(task_id, status=status.value, worker_id=None)
        return self.require_task(task_id)

    def _update_task(self, task_id: str, **values: Any) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(**values, updated_at=to_naive_utc(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def claim_next_task(self, outcome_id: str, *, worker_id: str) -> TaskView | None:
        """Atomically claim one pending, unpaused task whose dependencies are all completed."""

        while True:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(Task)
                    .where(
                        Task.outcome_id == outcome_id,
                        Task.status == TaskStatus.PENDING.value,
                    )
                    .order_by(col(Task.priority).asc(), col(Task.created_at).asc()),
                ).all()
                completed = set(
                    session.exec(
                        select(Task.task_id).where(
                            Task.outcome_id == outcome_id,
                            Task.status == TaskStatus.COMPLETED.value,
                        ),
                    ).all(),
                )
                candidate = next(
                    (
                        row
                        for row in rows
                        if not _to_task_view(row).is_paused
                        and all(dep in completed for dep in load_json_list(row.depends_on_json))
                    ),
                    None,
                )
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == candidate.task_id,
                        col(Task.status) == TaskStatus.PENDING.value,
                        col(Task.description) == candidate.description,
                    )
                    .values(
                        status=TaskStatus.CLAIMED.value,
                        attempts=candidate.attempts + 1,
                        worker_id=worker_id,
                        updated_at=to_naive_utc(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(Task, candidate.task_id)
                if claimed is None:
                    continue
                session.refresh(claimed)
                return _to_task_view(claimed)

    def delete_task(self, task_id: str) -> None:
        """Delete a task that no pending task depends on and prune dangling edges."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            others = session.exec(
                select(Task).where(Task.outcome_id == row.outcome_id, Task.task_id != task_id),
            ).all()
            blocking = sorted(
                other.task_id
                for other in others
                if other.status == TaskStatus.PENDING.value
                and task_id in load_json_list(other.depends_on_json)
            )
            if blocking:
                raise ValueError(
                    f"Task {task_id} is still a dependency of pending task(s): "
                    f"{', '.join(blocking)}",
                )
            now = to_naive_utc(utc_now())
            for other in others:
                deps = load_json_list(other.depends_on_json)
                if task_id in deps:
                    other.depends_on_json = dump_json([dep for dep in deps if dep != task_id])
                    other.updated_at = now
                    session.add(other)
            session.delete(row)
            session.commit()

    # Workers

    def register_worker(self, outcome_id: str, *, worker_id: str | None = None) -> WorkerView:
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(Outcome, outcome_id) is None:
                raise OutcomeNotFoundError(f"Outcome not found: {outcome_id}")
            row = Worker(
                worker_id=worker_id or _new_id("worker"),
                outcome_id=outcome_id,
                status=WorkerStatus.RUNNING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def get_worker(self, worker_id: str) -> WorkerView | None:
        with Session(self.engine) as session:
            row = session.get(Worker, worker_id)
            return _to_worker_view(row) if row is not None else None

    def list_workers(self, outcome_id: str) -> list[WorkerView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Worker)
                .where(Worker.outcome_id == outcome_id)
                .order_by(col(Worker.created_at).asc()),
            ).all()
            return [_to_worker_view(row) for row in rows]

    def get_active_workers_by_outcome(self, outcome_id: str) -> list[WorkerView]:
        return [
            worker
            for worker in self.list_workers(outcome_id)
            if worker.status == WorkerStatus.RUNNING
        ]

    def pause_worker(self, worker_id: str) -> bool:
        return self._transition_worker(
            worker_id,
            from_status=WorkerStatus.RUNNING,
            to_status=WorkerStatus.PAUSED,
        )

    def resume_worker(self, worker_id: str) -> bool:
        return self._transition_worker(
            worker_id,
            from_status=WorkerStatus.PAUSED,
            to_status=WorkerStatus.RUNNING,
        )

    def stop_worker(self, worker_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Worker)
                .where(
                    col(Worker.worker_id) == worker_id,
                    col(Worker.status) != WorkerStatus.STOPPED.value,
                )
                .values(
                    status=WorkerStatus.STOPPED.value,
                    updated_at=to_naive_utc(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _transition_worker(
        self,
        worker_id: str,
        *,
        from_status: WorkerStatus,
        to_status: WorkerStatus,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Worker)
                .where(
                    col(Worker.worker_id) == worker_id,
                    col(Worker.status) == from_status.value,
                )
                .values(status=to_status.value, updated_at=to_naive_utc(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Context store

    def get_context_stats(self, outcome_id: str) -> ContextStats:
        with Session(self.engine) as session:
            row = session.get(HomrContext, outcome_id)
            if row is None:
                return ContextStats()
            return ContextStats(
                tasks_observed=row.tasks_observed,
                discoveries_extracted=row.discoveries_extracted,
                escalations_created=row.escalations_created,
                steering_actions=row.steering_actions,
            )

    def increment_context_stat(self, outcome_id: str, stat: str, *, by: int = 1) -> None:
        """Bump one of the monotonic context counters."""

        with Session(self.engine) as session:
            self._increment_stat(session=session, outcome_id=outcome_id, stat=stat, by=by)
            session.commit()

    def append_context_entry(
        self,
        outcome_id: str,
        kind: ContextEntryKind,
        payload: dict[str, Any],
        *,
        entry_id: str | None = None,
        schema_version: int = 1,
        count_stat: str | None = None,
    ) -> str:
        """Append one typed entry to the outcome's context log."""

        resolved_id = entry_id or _new_id(kind.value[:3])
        with Session(self.engine) as session:
            session.add(
                HomrContextEntry(
                    entry_id=resolved_id,
                    outcome_id=outcome_id,
                    kind=kind.value,
                    schema_version=schema_version,
                    payload_json=dump_json(payload),
                    created_at=utc_now(),
                ),
            )
            if count_stat is not None:
                self._increment_stat(session=session, outcome_id=outcome_id, stat=count_stat, by=1)
            session.commit()
        return resolved_id

    def list_context_entries(
        self,
        outcome_id: str,
        kind: ContextEntryKind,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Return (entry_id, payload) pairs in append order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(HomrContextEntry)
                .where(
                    HomrContextEntry.outcome_id == outcome_id,
                    HomrContextEntry.kind == kind.value,
                )
                .order_by(col(HomrContextEntry.id).asc()),
            ).all()
            entries: list[tuple[str, dict[str, Any]]] = []
            for row in rows:
                payload = load_json_object(row.payload_json)
                if payload is not None:
                    entries.append((row.entry_id, payload))
            return entries

    def count_context_entries(self, outcome_id: str, kind: ContextEntryKind) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(HomrContextEntry)
                .where(
                    HomrContextEntry.outcome_id == outcome_id,
                    HomrContextEntry.kind == kind.value,
                ),
            ).one()

    def update_context_entry(self, entry_id: str, payload: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HomrContextEntry)
                .where(col(HomrContextEntry.entry_id) == entry_id)
                .values(payload_json=dump_json(payload)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def truncate_context_entries(
        self,
        outcome_id: str,
        kind: ContextEntryKind,
        *,
        drop_entry_ids: Sequence[str],
        summary_payload: dict[str, Any] | None,
    ) -> None:
        """Drop entries and append their summary in one transaction."""

        with Session(self.engine) as session:
            if drop_entry_ids:
                session.exec(
                    sa_delete(HomrContextEntry).where(
                        col(HomrContextEntry.outcome_id) == outcome_id,
                        col(HomrContextEntry.entry_id).in_(list(drop_entry_ids)),
                    ),
                )
            if summary_payload is not None:
                session.add(
                    HomrContextEntry(
                        entry_id=_new_id(kind.value[:3]),
                        outcome_id=outcome_id,
                        kind=kind.value,
                        payload_json=dump_json(summary_payload),
                        created_at=utc_now(),
                    ),
                )
            session.commit()

    def _increment_stat(self, *, session: Session, outcome_id: str, stat: str, by: int) -> None:
        if stat not in _CONTEXT_STATS:
            raise ValueError(f"Unknown context counter: {stat}")
        now = utc_now()
        counter = getattr(HomrContext, stat)
        result = session.exec(
            sa_update(HomrContext)
            .where(col(HomrContext.outcome_id) == outcome_id)
            .values({stat: counter + by, "updated_at": to_naive_utc(now)}),
        )
        if result.rowcount == 0:
            session.add(
                HomrContext(outcome_id=outcome_id, created_at=now, updated_at=now, **{stat: by}),
            )

    # Observations

    def create_observation(self, observation: Observation) -> Observation:
        """Persist an immutable observation and count it."""

        now = utc_now()
        with Session(self.engine) as session:
            row = HomrObservation(
                outcome_id=observation.outcome_id,
                task_id=observation.task_id,
                on_track=observation.on_track,
                alignment_score=observation.alignment_score,
                quality=observation.quality.value,
                drift_json=dump_json([drift_to_payload(item) for item in observation.drift]),
                discoveries_json=dump_json(
                    [discovery_to_payload(item) for item in observation.discoveries],
                ),
                issues_json=dump_json([issue_to_payload(item) for item in observation.issues]),
                has_ambiguity=observation.ambiguity is not None,
                ambiguity_json=dump_json(ambiguity_to_payload(observation.ambiguity))
                if observation.ambiguity is not None
                else None,
                summary=observation.summary,
                created_at=now,
            )
            session.add(row)
            self._increment_stat(
                session=session,
                outcome_id=observation.outcome_id,
                stat="tasks_observed",
                by=1,
            )
            session.commit()
            session.refresh(row)
            return _to_observation(row)

    def get_recent_observations(
        self,
        outcome_id: str,
        *,
        limit: int = 5,
        exclude_id: int | None = None,
    ) -> list[Observation]:
        """Return most recent observations first."""

        with Session(self.engine) as session:
            query = select(HomrObservation).where(HomrObservation.outcome_id == outcome_id)
            if exclude_id is not None:
                query = query.where(HomrObservation.id != exclude_id)
            rows = session.exec(query.order_by(col(HomrObservation.id).desc()).limit(limit)).all()
            return [_to_observation(row) for row in rows]

    # Escalations

    def create_escalation(self, payload: EscalationCreate) -> EscalationView:
        """Persist a pending escalation and count it."""

        now = utc_now()
        with Session(self.engine) as session:
            row = HomrEscalation(
                escalation_id=_new_id("esc"),
                outcome_id=payload.outcome_id,
                status=EscalationStatus.PENDING.value,
                trigger_type=payload.trigger_type,
                trigger_task_id=payload.trigger_task_id,
                trigger_evidence_json=dump_json(list(payload.trigger_evidence)),
                question_text=payload.question_text,
                question_context=payload.question_context,
                question_options_json=dump_json(
                    [option_to_payload(option) for option in payload.options],
                ),
                affected_tasks_json=dump_json(list(payload.affected_tasks)),
                created_at=now,
            )
            session.add(row)
            self._increment_stat(
                session=session,
                outcome_id=payload.outcome_id,
                stat="escalations_created",
                by=1,
            )
            session.commit()
            session.refresh(row)
            return _to_escalation_view(row)

    def get_escalation(self, escalation_id: str) -> EscalationView | None:
        with Session(self.engine) as session:
            row = session.get(HomrEscalation, escalation_id)
            return _to_escalation_view(row) if row is not None else None

    def list_escalations(
        self,
        *,
        outcome_id: str | None = None,
        status: EscalationStatus | None = None,
        limit: int | None = None,
    ) -> list[EscalationView]:
        with Session(self.engine) as session:
            query = select(HomrEscalation)
            if outcome_id is not None:
                query = query.where(HomrEscalation.outcome_id == outcome_id)
            if status is not None:
                query = query.where(HomrEscalation.status == status.value)
            query = query.order_by(col(HomrEscalation.created_at).desc())
            if limit is not None:
                query = query.limit(limit)
            return [_to_escalation_view(row) for row in session.exec(query).all()]

    def list_pending_escalations(self, outcome_id: str | None = None) -> list[EscalationView]:
        """Pending escalations for one outcome, or across every active outcome."""

        with Session(self.engine) as session:
            query = select(HomrEscalation).where(
                HomrEscalation.status == EscalationStatus.PENDING.value,
            )
            if outcome_id is not None:
                query = query.where(HomrEscalation.outcome_id == outcome_id)
            else:
                active_ids = select(Outcome.outcome_id).where(
                    Outcome.status == OutcomeStatus.ACTIVE.value,
                )
                query = query.where(col(HomrEscalation.outcome_id).in_(active_ids))
            rows = session.exec(query.order_by(col(HomrEscalation.created_at).asc())).all()
            return [_to_escalation_view(row) for row in rows]

    def count_pending_escalations(self, outcome_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(HomrEscalation)
                .where(
                    HomrEscalation.outcome_id == outcome_id,
                    HomrEscalation.status == EscalationStatus.PENDING.value,
                ),
            ).one()

    def answer_escalation(
        self,
        escalation_id: str,
        *,
        option_id: str,
        additional_context: str | None,
    ) -> bool:
        """Move a pending escalation to answered."""

        return self._close_escalation(
            escalation_id,
            status=EscalationStatus.ANSWERED,
            answer_option=option_id,
            answer_context=additional_context,
        )

    def dismiss_escalation(self, escalation_id: str, *, reason: str | None = None) -> bool:
        """Move a pending escalation to dismissed."""

        return self._close_escalation(
            escalation_id,
            status=EscalationStatus.DISMISSED,
            answer_option=None,
            answer_context=reason,
        )

    def _close_escalation(
        self,
        escalation_id: str,
        *,
        status: EscalationStatus,
        answer_option: str | None,
        answer_context: str | None,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HomrEscalation)
                .where(
                    col(HomrEscalation.escalation_id) == escalation_id,
                    col(HomrEscalation.status) == EscalationStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    answer_option=answer_option,
                    answer_context=answer_context,
                    answered_at=to_naive_utc(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_unincorporated_escalations(
        self,
        *,
        since: datetime,
        outcome_id: str | None = None,
        statuses: Sequence[EscalationStatus] = (
            EscalationStatus.ANSWERED,
            EscalationStatus.PENDING,
        ),
        limit: int = 100,
    ) -> list[EscalationView]:
        """Escalations not yet folded into an improvement outcome, newest first."""

        with Session(self.engine) as session:
            query = select(HomrEscalation).where(
                col(HomrEscalation.created_at) > to_naive_utc(since),
                col(HomrEscalation.status).in_([status.value for status in statuses]),
                col(HomrEscalation.incorporated_into_outcome_id).is_(None),
            )
            if outcome_id is not None:
                query = query.where(HomrEscalation.outcome_id == outcome_id)
            rows = session.exec(
                query.order_by(col(HomrEscalation.created_at).desc()).limit(limit),
            ).all()
            return [_to_escalation_view(row) for row in rows]

    def mark_escalations_incorporated(
        self,
        escalation_ids: Sequence[str],
        *,
        outcome_id: str,
    ) -> int:
        """Exclude escalations from future clustering."""

        if not escalation_ids:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(HomrEscalation)
                .where(col(HomrEscalation.escalation_id).in_(list(escalation_ids)))
                .values(incorporated_into_outcome_id=outcome_id),
            )
            session.commit()
            return int(result.rowcount or 0)

    # Activity

    def log_activity(
        self,
        outcome_id: str,
        *,
        event: ActivityEvent,
        summary: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one structured activity event."""

        with Session(self.engine) as session:
            session.add(
                HomrActivity(
                    outcome_id=outcome_id,
                    type=ACTIVITY_TYPE_BY_EVENT[event].value,
                    event=event.value,
                    details_json=dump_json(details) if details else None,
                    summary=summary,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_activity(
        self,
        outcome_id: str,
        *,
        types: Iterable[ActivityType] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActivityView]:
        """Newest-first activity page, optionally filtered by category."""

        with Session(self.engine) as session:
            query = select(HomrActivity).where(HomrActivity.outcome_id == outcome_id)
            type_values = [activity_type.value for activity_type in types or ()]
            if type_values:
                query = query.where(col(HomrActivity.type).in_(type_values))
            rows = session.exec(
                query.order_by(col(HomrActivity.id).desc()).offset(offset).limit(limit),
            ).all()
            return [_to_activity_view(row) for row in rows]

    # Analysis jobs

    def create_analysis_job(
        self,
        *,
        outcome_id: str | None,
        lookback_days: int,
        max_proposals: int,
        progress_message: str,
    ) -> AnalysisJobView:
        with Session(self.engine) as session:
            row = AnalysisJob(
                job_id=_new_id("job"),
                outcome_id=outcome_id,
                status=AnalysisJobStatus.PENDING.value,
                progress_message=progress_message,
                lookback_days=lookback_days,
                max_proposals=max_proposals,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_analysis_job_view(row)

    def start_analysis_job(self, job_id: str, *, progress_message: str) -> bool:
        now = to_naive_utc(utc_now())
        return self._transition_job(
            job_id,
            from_statuses=(AnalysisJobStatus.PENDING,),
            status=AnalysisJobStatus.RUNNING.value,
            progress_message=progress_message,
            started_at=now,
        )

    def update_analysis_job_progress(self, job_id: str, *, progress_message: str) -> bool:
        return self._transition_job(
            job_id,
            from_statuses=(AnalysisJobStatus.RUNNING,),
            progress_message=progress_message,
        )

    def complete_analysis_job(self, job_id: str, *, result: dict[str, Any]) -> bool:
        return self._transition_job(
            job_id,
            from_statuses=(AnalysisJobStatus.RUNNING,),
            status=AnalysisJobStatus.COMPLETED.value,
            progress_message="Analysis complete",
            result_json=dump_json(result),
            completed_at=to_naive_utc(utc_now()),
        )

    def fail_analysis_job(self, job_id: str, *, error: str) -> bool:
        return self._transition_job(
            job_id,
            from_statuses=(AnalysisJobStatus.PENDING, AnalysisJobStatus.RUNNING),
            status=AnalysisJobStatus.FAILED.value,
            progress_message="Analysis failed",
            error=error,
            completed_at=to_naive_utc(utc_now()),
        )

    def _transition_job(
        self,
        job_id: str,
        *,
        from_statuses: Sequence[AnalysisJobStatus],
        **values: Any,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.job_id) == job_id,
                    col(AnalysisJob.status).in_([status.value for status in from_statuses]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_analysis_job(self, job_id: str) -> AnalysisJobView | None:
        with Session(self.engine) as session:
            row = session.get(AnalysisJob, job_id)
            return _to_analysis_job_view(row) if row is not None else None

    def list_active_analysis_jobs(self) -> list[AnalysisJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisJob)
                .where(
                    col(AnalysisJob.status).in_(
                        [AnalysisJobStatus.PENDING.value, AnalysisJobStatus.RUNNING.value],
                    ),
                )
                .order_by(col(AnalysisJob.created_at).desc()),
            ).all()
            return [_to_analysis_job_view(row) for row in rows]

    def list_recent_analysis_jobs(self, *, limit: int = 10) -> list[AnalysisJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisJob).order_by(col(AnalysisJob.created_at).desc()).limit(limit),
            ).all()
            return [_to_analysis_job_view(row) for row in rows]

    def mark_stale_analysis_jobs_failed(self, *, error: str) -> int:
        """Fail pending/running jobs left behind by a process that is gone."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    col(AnalysisJob.status).in_(
                        [AnalysisJobStatus.PENDING.value, AnalysisJobStatus.RUNNING.value],
                    ),
                )
                .values(
                    status=AnalysisJobStatus.FAILED.value,
                    progress_message="Analysis failed",
                    error=error,
                    completed_at=to_naive_utc(utc_now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


def _normalize_dependencies(depends_on: Iterable[str], *, task_id: str) -> list[str]:
    normalized: list[str] = []
    for dependency in depends_on:
        if dependency == task_id:
            raise ValueError("A task cannot depend on itself")
        if dependency not in normalized:
            normalized.append(dependency)
    return normalized


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_aware_utc(value) if value is not None else None


def _to_outcome_view(row: Outcome) -> OutcomeView:
    intent_raw = load_json_object(row.intent_json)
    return OutcomeView(
        outcome_id=row.outcome_id,
        name=row.name,
        status=OutcomeStatus(row.status),
        intent=intent_from_payload(intent_raw) if intent_raw is not None else None,
        design_approach=row.design_approach,
        homr_enabled=bool(row.homr_enabled),
        auto_resolve_mode=AutoResolveMode(row.auto_resolve_mode),
        auto_resolve_threshold=float(row.auto_resolve_threshold),
        created_at=to_aware_utc(row.created_at),
        updated_at=to_aware_utc(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        outcome_id=row.outcome_id,
        title=row.title,
        description=row.description or "",
        status=TaskStatus(row.status),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        depends_on=[str(dep) for dep in load_json_list(row.depends_on_json)],
        phase=row.phase,
        decomposed_from_task_id=row.decomposed_from_task_id,
        worker_id=row.worker_id,
        created_at=to_aware_utc(row.created_at),
        updated_at=to_aware_utc(row.updated_at),
    )


def _to_worker_view(row: Worker) -> WorkerView:
    return WorkerView(
        worker_id=row.worker_id,
        outcome_id=row.outcome_id,
        status=WorkerStatus(row.status),
        created_at=to_aware_utc(row.created_at),
        updated_at=to_aware_utc(row.updated_at),
    )


def _to_observation(row: HomrObservation) -> Observation:
    ambiguity_raw = load_json_object(row.ambiguity_json)
    return Observation(
        task_id=row.task_id,
        outcome_id=row.outcome_id,
        on_track=bool(row.on_track),
        alignment_score=row.alignment_score,
        quality=Quality(row.quality),
        drift=[
            drift_from_payload(item)
            for item in load_json_list(row.drift_json)
            if isinstance(item, dict)
        ],
        discoveries=[
            discovery_from_payload(item)
            for item in load_json_list(row.discoveries_json)
            if isinstance(item, dict)
        ],
        issues=[
            issue_from_payload(item)
            for item in load_json_list(row.issues_json)
            if isinstance(item, dict)
        ],
        ambiguity=ambiguity_from_payload(ambiguity_raw) if ambiguity_raw is not None else None,
        summary=row.summary,
        observation_id=row.id,
        created_at=to_aware_utc(row.created_at),
    )


def _to_escalation_view(row: HomrEscalation) -> EscalationView:
    return EscalationView(
        escalation_id=row.escalation_id,
        outcome_id=row.outcome_id,
        status=EscalationStatus(row.status),
        trigger_type=row.trigger_type,
        trigger_task_id=row.trigger_task_id,
        trigger_evidence=[str(item) for item in load_json_list(row.trigger_evidence_json)],
        question_text=row.question_text,
        question_context=row.question_context,
        options=[
            option_from_payload(item, index=index)
            for index, item in enumerate(load_json_list(row.question_options_json))
            if isinstance(item, dict)
        ],
        affected_tasks=[str(item) for item in load_json_list(row.affected_tasks_json)],
        answer_option=row.answer_option,
        answer_context=row.answer_context,
        answered_at=_optional_aware(row.answered_at),
        incorporated_into_outcome_id=row.incorporated_into_outcome_id,
        created_at=to_aware_utc(row.created_at),
    )


def _to_activity_view(row: HomrActivity) -> ActivityView:
    return ActivityView(
        activity_id=row.id or 0,
        outcome_id=row.outcome_id,
        type=ActivityType(row.type),
        event=ActivityEvent(row.event),
        summary=row.summary,
        created_at=to_aware_utc(row.created_at),
        details=load_json_object(row.details_json) or {},
    )


def _to_analysis_job_view(row: AnalysisJob) -> AnalysisJobView:
    return AnalysisJobView(
        job_id=row.job_id,
        outcome_id=row.outcome_id,
        job_type=row.job_type,
        status=AnalysisJobStatus(row.status),
        progress_message=row.progress_message,
        lookback_days=row.lookback_days,
        max_proposals=row.max_proposals,
        result=load_json_object(row.result_json),
        error=row.error,
        created_at=to_aware_utc(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
    )
