"""Interfaces for the completion, decomposition and worker-control capabilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from homr.orchestrator.models import OutcomeIntent, TaskView, WorkerView


@dataclass(slots=True)
class CompletionRequest:
    """Inputs for one completion call."""

    prompt: str
    system_prompt: str | None = None
    max_turns: int = 1
    timeout_seconds: int = 60
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CompletionResult:
    """Completion outcome; failures carry an error instead of raising."""

    success: bool
    text: str = ""
    error: str | None = None


class CompletionBackend(Protocol):
    """Protocol implemented by completion service adapters."""

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one completion and return its text or error."""


@dataclass(slots=True)
class DecompositionResult:
    """Outcome of splitting one task into subtasks."""

    success: bool
    created_task_ids: list[str] = field(default_factory=list)
    reasoning: str = ""
    error: str | None = None


class TaskDecomposer(Protocol):
    """Protocol implemented by task decomposition capabilities."""

    def decompose(
        self,
        task: TaskView,
        *,
        intent: OutcomeIntent | None,
        approach: str | None,
    ) -> DecompositionResult:
        """Split the task into subtasks and report the created ids."""


class WorkerControl(Protocol):
    """Worker lifecycle hooks used when a failure pattern pauses an outcome."""

    def pause_worker(self, worker_id: str) -> bool:
        """Pause one running worker."""

    def get_active_workers_by_outcome(self, outcome_id: str) -> list[WorkerView]:
        """Return running workers of the outcome."""
