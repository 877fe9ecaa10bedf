"""Supervisor facade wiring the observer, steering, escalator and auto-resolver together."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from homr.config import FailurePatternSettings, Settings
from homr.orchestrator.affinity import TaskAffinity
from homr.orchestrator.auto_resolver import AutoResolver
from homr.orchestrator.backend.base import CompletionBackend, TaskDecomposer, WorkerControl
from homr.orchestrator.backend.decomposer import CompletionTaskDecomposer
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.dependency_graph import DependencyGraphManager
from homr.orchestrator.escalator import Escalator
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    ActivityEvent,
    FailureRecommendation,
    HomrStatus,
    Observation,
    TaskView,
)
from homr.orchestrator.observer import Observer, create_failure_pattern_ambiguity
from homr.orchestrator.repository import HomrRepository
from homr.orchestrator.steering import SteeringEngine

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 10


@dataclass(slots=True)
class ObserveAndProcessResult:
    """What the control loop did after one task completed."""

    observation: Observation | None
    escalated: bool = False
    steered: bool = False
    failure_pattern_detected: bool = False
    workers_paused: bool = False
    escalation_id: str | None = None


class HomrService:
    """Coordinates one control-loop invocation per completed task."""

    def __init__(
        self,
        *,
        repository: HomrRepository,
        backend: CompletionBackend,
        settings: Settings | None = None,
        decomposer: TaskDecomposer | None = None,
        worker_control: WorkerControl | None = None,
        affinity: TaskAffinity | None = None,
        locks: OutcomeLockRegistry | None = None,
    ) -> None:
        self.settings = settings or Settings()
        limits = self.settings.homr
        self.repository = repository
        self.locks = locks or OutcomeLockRegistry()
        self.worker_control: WorkerControl = worker_control or repository
        self.context_store = ContextStore(repository, self.locks)
        self.graph = DependencyGraphManager(repository, self.locks)
        self.steering = SteeringEngine(
            repository,
            self.context_store,
            self.graph,
            self.locks,
            max_discoveries=limits.max_discoveries,
        )
        self.observer = Observer(
            repository,
            self.context_store,
            backend,
            output_max_chars=limits.output_max_chars,
            timeout_seconds=limits.observe_timeout_seconds,
            failure_settings=self.settings.failure_patterns,
        )
        self.escalator = Escalator(
            repository,
            self.context_store,
            self.locks,
            backend,
            decomposer=decomposer
            or CompletionTaskDecomposer(
                repository,
                self.graph,
                backend,
                timeout_seconds=limits.decompose_timeout_seconds,
            ),
            affinity=affinity,
            question_timeout_seconds=limits.question_timeout_seconds,
        )
        self.auto_resolver = AutoResolver(
            repository,
            self.context_store,
            self.escalator,
            backend,
            timeout_seconds=limits.auto_resolve_timeout_seconds,
        )

    def is_enabled(self, outcome_id: str) -> bool:
        return self.repository.is_homr_enabled(outcome_id)

    def observe_and_process(
        self,
        task: TaskView,
        full_output: str,
        *,
        worker_id: str | None = None,
        failure_config: FailurePatternSettings | None = None,
    ) -> ObserveAndProcessResult:
        """Observe the task, then escalate a failure pattern or ambiguity, else steer."""

        outcome_id = task.outcome_id
        if not self.is_enabled(outcome_id):
            return ObserveAndProcessResult(observation=None)

        observation = self.observer.observe(task, full_output)
        if observation is None:
            return ObserveAndProcessResult(observation=None)

        failure = self.observer.detect_failure_patterns(observation, settings=failure_config)
        if failure.detected and failure.recommendation == FailureRecommendation.ESCALATE:
            escalation = self.escalator.create_escalation(
                outcome_id,
                create_failure_pattern_ambiguity(failure, task),
                task,
            )
            paused_workers = [
                worker.worker_id
                for worker in self.worker_control.get_active_workers_by_outcome(outcome_id)
                if self.worker_control.pause_worker(worker.worker_id)
            ]
            pattern = failure.pattern.value if failure.pattern is not None else None
            self.repository.log_activity(
                outcome_id,
                event=ActivityEvent.FAILURE_PATTERN_DETECTED,
                summary=(
                    f"Failure pattern detected: {pattern} "
                    f"({failure.consecutive_failures} consecutive failures). Workers paused."
                ),
                details={
                    "pattern": pattern,
                    "consecutive_failures": failure.consecutive_failures,
                    "average_alignment": failure.average_alignment,
                    "escalation_id": escalation.escalation_id,
                    "workers_paused": paused_workers,
                    "reporting_worker_id": worker_id,
                },
            )
            logger.warning(
                "Failure pattern %s detected in outcome %s; paused %d worker(s)",
                pattern,
                outcome_id,
                len(paused_workers),
            )
            return ObserveAndProcessResult(
                observation=observation,
                escalated=True,
                failure_pattern_detected=True,
                workers_paused=bool(paused_workers),
                escalation_id=escalation.escalation_id,
            )

        if observation.ambiguity is not None:
            escalation = self.escalator.create_escalation(
                outcome_id,
                observation.ambiguity,
                task,
            )
            return ObserveAndProcessResult(
                observation=observation,
                escalated=True,
                escalation_id=escalation.escalation_id,
            )

        steering = self.steering.steer(observation)
        return ObserveAndProcessResult(observation=observation, steered=bool(steering.actions))

    def quick_observe(self, task: TaskView, *, success: bool) -> Observation | None:
        if not self.is_enabled(task.outcome_id):
            return None
        return self.observer.quick_observe(task, success=success)

    def should_block_work(self, outcome_id: str) -> bool:
        return self.is_enabled(outcome_id) and self.escalator.has_pending_escalations(outcome_id)

    def on_worker_start(self, outcome_id: str, worker_id: str) -> None:
        if not self.is_enabled(outcome_id):
            return
        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.WORKER_START,
            summary=f"Worker {worker_id} started - HOMR monitoring enabled",
            details={"worker_id": worker_id},
        )

    def on_worker_stop(self, outcome_id: str, worker_id: str) -> None:
        if not self.is_enabled(outcome_id):
            return
        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.WORKER_STOP,
            summary=f"Worker {worker_id} stopped",
            details={"worker_id": worker_id},
        )

    def get_status(self, outcome_id: str) -> HomrStatus:
        outcome = self.repository.require_outcome(outcome_id)
        snapshot = self.context_store.get_snapshot(outcome_id)
        return HomrStatus(
            outcome_id=outcome_id,
            enabled=outcome.homr_enabled,
            discoveries=len(snapshot.discoveries),
            decisions=len(snapshot.decisions),
            constraints=len(snapshot.constraints),
            stats=snapshot.stats,
            pending_escalations=self.escalator.get_pending_escalation_count(outcome_id),
            recent_activity=self.repository.list_activity(
                outcome_id,
                limit=RECENT_ACTIVITY_LIMIT,
            ),
        )
