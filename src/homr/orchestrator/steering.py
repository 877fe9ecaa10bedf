"""Turn observations into context injections and task graph changes."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import uuid4

from homr.orchestrator.context_store import CompactionResult, ContextStore
from homr.orchestrator.dependency_graph import DependencyGraphManager
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    WILDCARD,
    ActivityEvent,
    Constraint,
    ContextInjection,
    Decision,
    DecisionMaker,
    DependencyModificationResult,
    Discovery,
    DiscoveryType,
    DriftItem,
    InjectionPriority,
    InjectionType,
    Observation,
    Severity,
    SteeringAction,
    SteeringActionType,
    SteeringResult,
    TaskContext,
    TaskCreate,
    TaskView,
)
from homr.orchestrator.repository import HomrRepository
from homr.storage.database import utc_now

logger = logging.getLogger(__name__)

CORRECTIVE_TASK_PRIORITY = 1

_DRIFT_PRIORITY: dict[Severity, InjectionPriority] = {
    Severity.MEDIUM: InjectionPriority.SHOULD_KNOW,
    Severity.LOW: InjectionPriority.NICE_TO_KNOW,
}


def discovery_priority(discovery_type: DiscoveryType) -> InjectionPriority:
    if discovery_type == DiscoveryType.BLOCKER:
        return InjectionPriority.MUST_KNOW
    if discovery_type in {DiscoveryType.CONSTRAINT, DiscoveryType.DEPENDENCY}:
        return InjectionPriority.SHOULD_KNOW
    return InjectionPriority.NICE_TO_KNOW


def _template_injection(
    *,
    injection_type: InjectionType,
    content: str,
    source: str,
    priority: InjectionPriority,
    target_task_id: str,
) -> ContextInjection:
    return ContextInjection(
        injection_id=f"inj_{uuid4().hex[:16]}",
        type=injection_type,
        content=content,
        source=source,
        priority=priority,
        target_task_id=target_task_id,
        created_at=utc_now(),
    )


class SteeringEngine:
    """React to one observation with synchronous, ordered side effects."""

    def __init__(
        self,
        repository: HomrRepository,
        context_store: ContextStore,
        graph: DependencyGraphManager,
        locks: OutcomeLockRegistry,
        *,
        max_discoveries: int = 50,
    ) -> None:
        self.repository = repository
        self.context_store = context_store
        self.graph = graph
        self.locks = locks
        self.max_discoveries = max_discoveries

    def steer(self, observation: Observation) -> SteeringResult:
        actions = self.plan(observation)
        outcome_id = observation.outcome_id

        if actions:
            with self.locks.hold(outcome_id):
                for action in actions:
                    self.execute(action, outcome_id)
                self.repository.increment_context_stat(outcome_id, "steering_actions")
            self.repository.log_activity(
                outcome_id,
                event=ActivityEvent.STEERING_BATCH,
                summary=(
                    f"Executed {len(actions)} steering action(s) after observing task "
                    f"{observation.task_id}"
                ),
                details={
                    "observation_id": observation.observation_id,
                    "task_id": observation.task_id,
                    "action_count": len(actions),
                    "actions": [
                        {"type": action.type.value, "reason": action.reason} for action in actions
                    ],
                },
            )
            self.compact_context(outcome_id)

        return SteeringResult(
            actions=actions,
            summary=f"Executed {len(actions)} steering action(s)"
            if actions
            else "No steering actions needed",
        )

    def plan(self, observation: Observation) -> list[SteeringAction]:
        """Derive steering actions from drift first, then from discoveries."""

        actions: list[SteeringAction] = []
        for drift in observation.drift:
            if drift.severity == Severity.HIGH:
                actions.append(self._corrective_task_action(observation, drift))
            else:
                actions.append(self._drift_warning_action(observation, drift))
        for discovery in observation.discoveries:
            if discovery.relevant_tasks:
                actions.append(self._discovery_injection_action(discovery))
        return actions

    def execute(self, action: SteeringAction, outcome_id: str) -> None:
        """Apply one action; there is no rollback across a batch."""

        if action.type == SteeringActionType.INJECT_CONTEXT:
            self._execute_injection(action, outcome_id)
        elif action.type == SteeringActionType.CREATE_TASK:
            if action.new_task is None:
                raise ValueError("create_task action requires new_task")
            created = self.repository.create_task(action.new_task)
            logger.info("Created corrective task %s: %s", created.task_id, created.title)
        elif action.type == SteeringActionType.UPDATE_TASK:
            task = self._action_task(action)
            if task is not None:
                description = (
                    f"{task.description}\n\n---\n\n**HOMR Update:**\n{action.additions}"
                    if task.description
                    else f"**HOMR Update:**\n{action.additions}"
                )
                self.repository.update_task_description(task.task_id, description)
                logger.info("Updated task %s description", task.task_id)
        elif action.type == SteeringActionType.UPDATE_PRIORITY:
            task = self._action_task(action)
            if task is not None and action.new_priority is not None:
                self.repository.update_task_priority(task.task_id, action.new_priority)
                logger.info("Updated task %s priority to %d", task.task_id, action.new_priority)
        elif action.type == SteeringActionType.MARK_OBSOLETE:
            task = self._action_task(action)
            if task is not None:
                self.repository.update_task_description(
                    task.task_id,
                    f"**MARKED OBSOLETE BY HOMR:**\n{action.reason}\n\n---\n\n{task.description}",
                )
                logger.info("Marked task %s as obsolete", task.task_id)
        else:
            raise ValueError(f"Unsupported steering action: {action.type}")

    def compact_context(
        self,
        outcome_id: str,
        max_discoveries: int | None = None,
    ) -> CompactionResult:
        limit = max_discoveries if max_discoveries is not None else self.max_discoveries
        result = self.context_store.compact(outcome_id, max_discoveries=limit)
        if result.compacted:
            self.repository.log_activity(
                outcome_id,
                event=ActivityEvent.CONTEXT_COMPACTION,
                summary=f"Compacted {result.compacted} discoveries to maintain context size",
                details={
                    "before": result.before,
                    "after": result.after,
                    "compacted": result.compacted,
                },
            )
        return result

    # Context store delegates

    def record_decision(
        self,
        outcome_id: str,
        *,
        content: str,
        made_by: DecisionMaker,
        context: str = "",
        affected_areas: Sequence[str] = (),
    ) -> Decision:
        return self.context_store.record_decision(
            outcome_id,
            content=content,
            made_by=made_by,
            context=context,
            affected_areas=affected_areas,
        )

    def record_constraint(
        self,
        outcome_id: str,
        *,
        constraint_type: str,
        content: str,
        source: str,
    ) -> Constraint:
        return self.context_store.record_constraint(
            outcome_id,
            constraint_type=constraint_type,
            content=content,
            source=source,
        )

    def deactivate_constraint(self, outcome_id: str, constraint_id: str) -> bool:
        return self.context_store.deactivate_constraint(outcome_id, constraint_id)

    def insert_corrective_task(
        self,
        outcome_id: str,
        *,
        target_task_id: str,
        title: str,
        description: str,
        priority: int = CORRECTIVE_TASK_PRIORITY,
    ) -> DependencyModificationResult:
        return self.graph.insert_corrective_task(
            outcome_id,
            target_task_id=target_task_id,
            title=title,
            description=description,
            priority=priority,
        )

    def build_task_context(self, task_id: str, outcome_id: str) -> str:
        return self.context_store.build_task_context(task_id, outcome_id)

    def get_task_context(self, task_id: str, outcome_id: str) -> TaskContext:
        return self.context_store.get_task_context(task_id, outcome_id)

    # Internals

    def _corrective_task_action(self, observation: Observation, drift: DriftItem) -> SteeringAction:
        source = self.repository.get_task(observation.task_id)
        return SteeringAction(
            type=SteeringActionType.CREATE_TASK,
            reason=f"High severity drift detected: {drift.description}",
            new_task=TaskCreate(
                outcome_id=observation.outcome_id,
                title=f"Fix: {drift.description[:50]}",
                description=(
                    "**Corrective Task Created by HOMR**\n\n"
                    "This task was automatically created to address drift detected in task "
                    f"{observation.task_id}.\n\n"
                    f"**Drift Type:** {drift.type}\n"
                    f"**Severity:** {drift.severity.value}\n"
                    f"**Description:** {drift.description}\n\n"
                    f"**Evidence:**\n> {drift.evidence}\n\n"
                    "Please review the original work and make corrections as needed."
                ),
                priority=CORRECTIVE_TASK_PRIORITY,
                phase=source.phase if source is not None else "execution",
            ),
        )

    def _drift_warning_action(self, observation: Observation, drift: DriftItem) -> SteeringAction:
        pending = self.repository.get_pending_tasks(observation.outcome_id)
        return SteeringAction(
            type=SteeringActionType.INJECT_CONTEXT,
            reason=f"Warning about {drift.severity.value} severity drift",
            task_ids=[task.task_id for task in pending],
            injection=_template_injection(
                injection_type=InjectionType.WARNING,
                content=(
                    f"**Drift Detected in Previous Task:** {drift.description}\n\n"
                    "Please ensure your work stays aligned with the original intent."
                ),
                source=observation.task_id,
                priority=_DRIFT_PRIORITY.get(drift.severity, InjectionPriority.NICE_TO_KNOW),
                target_task_id=WILDCARD,
            ),
        )

    def _discovery_injection_action(self, discovery: Discovery) -> SteeringAction:
        return SteeringAction(
            type=SteeringActionType.INJECT_CONTEXT,
            reason=f"Share {discovery.type.value} discovery with relevant tasks",
            task_ids=list(discovery.relevant_tasks),
            injection=_template_injection(
                injection_type=InjectionType.DISCOVERY,
                content=discovery.content,
                source=discovery.source,
                priority=discovery_priority(discovery.type),
                target_task_id=WILDCARD if discovery.is_wildcard else discovery.relevant_tasks[0],
            ),
        )

    def _execute_injection(self, action: SteeringAction, outcome_id: str) -> None:
        injection = action.injection
        if injection is None:
            raise ValueError("inject_context action requires an injection")
        if WILDCARD in action.task_ids or injection.target_task_id == WILDCARD:
            targets = [WILDCARD]
        else:
            targets = list(action.task_ids)
        for target in targets:
            self.context_store.add_injection(
                outcome_id,
                injection_type=injection.type,
                content=injection.content,
                source=injection.source,
                priority=injection.priority,
                target_task_id=target,
            )
        logger.info("Injected context to %d task(s)", len(action.task_ids))

    def _action_task(self, action: SteeringAction) -> TaskView | None:
        if action.task_id is None:
            raise ValueError(f"{action.type.value} action requires task_id")
        task = self.repository.get_task(action.task_id)
        if task is None:
            logger.warning("Steering target task %s not found", action.task_id)
        return task
