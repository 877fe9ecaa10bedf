"""Completion-backed task decomposition into dependent subtasks."""

from __future__ import annotations

import logging

from homr.orchestrator.backend.base import (
    CompletionBackend,
    CompletionRequest,
    DecompositionResult,
)
from homr.orchestrator.dependency_graph import DependencyGraphManager
from homr.orchestrator.models import (
    SECTION_SEPARATOR,
    OutcomeIntent,
    TaskCreate,
    TaskView,
    strip_pause_marker,
)
from homr.orchestrator.prompts import (
    SubtaskPlan,
    build_decomposition_prompt,
    parse_decomposition_response,
)
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBTASKS = 6
_DECOMPOSE_MAX_TURNS = 5


class CompletionTaskDecomposer:
    """Ask the completion service for a subtask plan and materialize it as tasks."""

    def __init__(
        self,
        repository: HomrRepository,
        graph: DependencyGraphManager,
        backend: CompletionBackend,
        *,
        timeout_seconds: int = 90,
        max_subtasks: int = DEFAULT_MAX_SUBTASKS,
    ) -> None:
        self.repository = repository
        self.graph = graph
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_subtasks = max_subtasks

    def decompose(
        self,
        task: TaskView,
        *,
        intent: OutcomeIntent | None,
        approach: str | None,
    ) -> DecompositionResult:
        existing = self._existing_subtasks(task.task_id)
        if existing is not None:
            return existing

        response = self.backend.complete(
            CompletionRequest(
                prompt=build_decomposition_prompt(
                    task=task,
                    intent=intent,
                    approach=approach,
                    max_subtasks=self.max_subtasks,
                ),
                max_turns=_DECOMPOSE_MAX_TURNS,
                timeout_seconds=self.timeout_seconds,
                metadata={"description": f"Task decomposition for: {task.title}"},
            ),
        )
        if not response.success or not response.text:
            return DecompositionResult(
                success=False,
                reasoning="Decomposition call failed",
                error=response.error or "No response from the completion service",
            )

        plan = parse_decomposition_response(response.text, max_subtasks=self.max_subtasks)
        if plan is None:
            return DecompositionResult(
                success=False,
                reasoning="Failed to parse decomposition response",
                error="Decomposition response did not contain a valid subtask plan",
            )

        with self.graph.locks.hold(task.outcome_id):
            # a concurrent call may have finished while the model was answering
            existing = self._existing_subtasks(task.task_id)
            if existing is not None:
                return existing
            created_ids = self._create_subtasks(task, plan.subtasks)
            parent = self.repository.require_task(task.task_id)
            self.repository.mark_task_completed(
                task.task_id,
                description=(
                    f"{strip_pause_marker(parent.description)}\n\n"
                    f"[DECOMPOSED into {len(created_ids)} subtasks: {', '.join(created_ids)}]"
                ).lstrip(),
            )

        logger.info("Decomposed task %s into %d subtasks", task.task_id, len(created_ids))
        return DecompositionResult(
            success=True,
            created_task_ids=created_ids,
            reasoning=plan.reasoning,
        )

    def _existing_subtasks(self, task_id: str) -> DecompositionResult | None:
        existing = self.repository.list_subtasks(task_id)
        if not existing:
            return None
        logger.info(
            "Found %d existing subtasks for task %s, returning them",
            len(existing),
            task_id,
        )
        return DecompositionResult(
            success=True,
            created_task_ids=[subtask.task_id for subtask in existing],
            reasoning="Returning existing subtasks",
        )

    def _create_subtasks(self, parent: TaskView, subtasks: list[SubtaskPlan]) -> list[str]:
        total = len(subtasks)
        created_ids: list[str] = []
        for index, subtask in enumerate(subtasks):
            created = self.repository.create_task(
                TaskCreate(
                    outcome_id=parent.outcome_id,
                    title=f"[{index + 1}/{total}] {subtask.title}",
                    description=_subtask_description(subtask, parent, index, total),
                    priority=parent.priority + index,
                    max_attempts=parent.max_attempts,
                    phase=parent.phase,
                    decomposed_from_task_id=parent.task_id,
                ),
            )
            created_ids.append(created.task_id)

        for index, subtask in enumerate(subtasks):
            for dependency_index in subtask.depends_on:
                result = self.graph.add_dependency(
                    created_ids[index],
                    created_ids[dependency_index],
                )
                if not result.success:
                    logger.warning(
                        "Could not wire subtask %d to subtask %d: %s",
                        index,
                        dependency_index,
                        result.reason,
                    )
        return created_ids


def _subtask_description(subtask: SubtaskPlan, parent: TaskView, index: int, total: int) -> str:
    description = (
        f"{subtask.description}{SECTION_SEPARATOR.rstrip()}\n"
        f'Part {index + 1} of {total} subtasks from: "{parent.title}"'
    )
    if subtask.depends_on:
        numbers = ", ".join(str(dependency + 1) for dependency in subtask.depends_on)
        description += f"\nDepends on completing: subtask(s) {numbers}"
    return description
