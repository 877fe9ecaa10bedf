"""Task dependency graph mutations that keep each outcome's graph acyclic."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence

from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    ActivityEvent,
    DependencyModificationResult,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)


class DependencyGraphManager:
    """Add, remove and validate blocking edges between tasks of one outcome.

    Every mutation runs under the outcome lock, and the cycle check happens
    before the edge is written, so concurrent callers never commit a cycle.
    """

    def __init__(self, repository: HomrRepository, locks: OutcomeLockRegistry) -> None:
        self.repository = repository
        self.locks = locks

    def add_dependency(
        self,
        dependent_task_id: str,
        dependency_task_id: str,
    ) -> DependencyModificationResult:
        """Make ``dependent_task_id`` wait for ``dependency_task_id``."""

        dependent = self.repository.get_task(dependent_task_id)
        if dependent is None:
            return DependencyModificationResult(
                success=False,
                reason=f"Dependent task {dependent_task_id} not found",
            )

        with self.locks.hold(dependent.outcome_id):
            dependent = self.repository.get_task(dependent_task_id)
            dependency = self.repository.get_task(dependency_task_id)
            if dependent is None:
                return DependencyModificationResult(
                    success=False,
                    reason=f"Dependent task {dependent_task_id} not found",
                )
            if dependency is None:
                return DependencyModificationResult(
                    success=False,
                    reason=f"Dependency task {dependency_task_id} not found",
                )
            if dependent_task_id == dependency_task_id:
                return DependencyModificationResult(
                    success=False,
                    reason="A task cannot depend on itself",
                )
            if dependent.outcome_id != dependency.outcome_id:
                return DependencyModificationResult(
                    success=False,
                    reason="Tasks must belong to the same outcome to create a dependency",
                )
            if dependency_task_id in dependent.depends_on:
                return DependencyModificationResult(
                    success=True,
                    affected_tasks=[dependent_task_id],
                    reason="Dependency already exists",
                )
            if self.would_create_cycle(dependent_task_id, dependency_task_id):
                return DependencyModificationResult(
                    success=False,
                    reason="Adding this dependency would create a circular dependency",
                )

            self.repository.set_task_dependencies(
                dependent_task_id,
                [*dependent.depends_on, dependency_task_id],
            )

        logger.info("Added dependency: %s now depends on %s", dependent_task_id, dependency_task_id)
        return DependencyModificationResult(success=True, affected_tasks=[dependent_task_id])

    def remove_dependency(
        self,
        dependent_task_id: str,
        dependency_task_id: str,
    ) -> DependencyModificationResult:
        dependent = self.repository.get_task(dependent_task_id)
        if dependent is None:
            return DependencyModificationResult(
                success=False,
                reason=f"Task {dependent_task_id} not found",
            )

        with self.locks.hold(dependent.outcome_id):
            dependent = self.repository.require_task(dependent_task_id)
            if dependency_task_id not in dependent.depends_on:
                return DependencyModificationResult(
                    success=True,
                    affected_tasks=[dependent_task_id],
                    reason="Dependency does not exist",
                )
            self.repository.set_task_dependencies(
                dependent_task_id,
                [dep for dep in dependent.depends_on if dep != dependency_task_id],
            )

        logger.info(
            "Removed dependency: %s no longer depends on %s",
            dependent_task_id,
            dependency_task_id,
        )
        return DependencyModificationResult(success=True, affected_tasks=[dependent_task_id])

    def would_create_cycle(self, dependent_task_id: str, dependency_task_id: str) -> bool:
        """Breadth-first search from the proposed dependency back to the dependent."""

        visited: set[str] = set()
        queue = deque([dependency_task_id])
        while queue:
            current_id = queue.popleft()
            if current_id == dependent_task_id:
                return True
            if current_id in visited:
                continue
            visited.add(current_id)

            task = self.repository.get_task(current_id)
            if task is None:
                continue
            queue.extend(dep for dep in task.depends_on if dep not in visited)
        return False

    def insert_corrective_task(
        self,
        outcome_id: str,
        *,
        target_task_id: str,
        title: str,
        description: str,
        priority: int = 1,
    ) -> DependencyModificationResult:
        """Create a task that must complete before the target can be claimed.

        The corrective task is kept even when the blocking edge cannot be added.
        """

        with self.locks.hold(outcome_id):
            target = self.repository.get_task(target_task_id)
            if target is None:
                return DependencyModificationResult(
                    success=False,
                    reason=f"Target task {target_task_id} not found",
                )
            if target.outcome_id != outcome_id:
                return DependencyModificationResult(
                    success=False,
                    reason=(
                        f"Target task {target_task_id} does not belong to outcome {outcome_id}"
                    ),
                )

            corrective = self.repository.create_task(
                TaskCreate(
                    outcome_id=outcome_id,
                    title=title,
                    description=(
                        f"**Corrective Task Created by HOMR**\n\n{description}\n\n"
                        f"**Blocks:** {target.title}"
                    ),
                    priority=priority,
                    phase=target.phase,
                ),
            )
            added = self.add_dependency(target_task_id, corrective.task_id)
            if not added.success:
                logger.warning(
                    "Created corrective task %s but failed to add dependency: %s",
                    corrective.task_id,
                    added.reason,
                )

        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.CORRECTIVE_TASK_INSERTED,
            summary=f'Inserted corrective task "{title}" blocking task {target_task_id}',
            details={
                "corrective_task_id": corrective.task_id,
                "target_task_id": target_task_id,
                "title": title,
                "dependency_added": added.success,
            },
        )
        logger.info("Inserted corrective task %s blocking %s", corrective.task_id, target_task_id)
        return DependencyModificationResult(
            success=True,
            task_id=corrective.task_id,
            affected_tasks=[corrective.task_id, target_task_id],
        )

    def block_task_chain(
        self,
        outcome_id: str,
        blocker_task_id: str,
        task_ids: Sequence[str],
    ) -> DependencyModificationResult:
        """Add the blocker as a dependency of every listed task, collecting failures."""

        with self.locks.hold(outcome_id):
            blocker = self.repository.get_task(blocker_task_id)
            if blocker is None:
                return DependencyModificationResult(
                    success=False,
                    reason=f"Blocker task {blocker_task_id} not found",
                )
            if blocker.outcome_id != outcome_id:
                return DependencyModificationResult(
                    success=False,
                    reason=(
                        f"Blocker task {blocker_task_id} does not belong to outcome {outcome_id}"
                    ),
                )

            affected: list[str] = []
            errors: list[str] = []
            for task_id in task_ids:
                if task_id == blocker_task_id:
                    continue
                result = self.add_dependency(task_id, blocker_task_id)
                if result.success:
                    affected.append(task_id)
                else:
                    errors.append(f"{task_id}: {result.reason}")

        details: dict[str, object] = {"blocker_task_id": blocker_task_id, "blocked_tasks": affected}
        if errors:
            details["errors"] = errors
        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.TASK_CHAIN_BLOCKED,
            summary=f"Blocked {len(affected)} task(s) with blocker task {blocker_task_id}",
            details=details,
        )
        if affected:
            logger.info("Blocked %d tasks with blocker %s", len(affected), blocker_task_id)
        return DependencyModificationResult(
            success=bool(affected) or not errors,
            affected_tasks=affected,
            reason="; ".join(errors) if errors else None,
        )

    def get_tasks_depending_on(self, task_id: str) -> list[TaskView]:
        """Pending tasks of the same outcome that list ``task_id`` as a dependency."""

        task = self.repository.get_task(task_id)
        if task is None:
            return []
        return [
            candidate
            for candidate in self.repository.list_tasks(
                task.outcome_id,
                statuses=[TaskStatus.PENDING],
            )
            if task_id in candidate.depends_on
        ]
