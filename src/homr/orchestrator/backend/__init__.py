"""External capability implementations used by the control loop."""

from homr.orchestrator.backend.base import (
    CompletionBackend,
    CompletionRequest,
    CompletionResult,
    DecompositionResult,
    TaskDecomposer,
    WorkerControl,
)
from homr.orchestrator.backend.cli_backend import BackendRunError, CliCompletionBackend
from homr.orchestrator.backend.decomposer import CompletionTaskDecomposer

__all__ = [
    "BackendRunError",
    "CliCompletionBackend",
    "CompletionBackend",
    "CompletionRequest",
    "CompletionResult",
    "CompletionTaskDecomposer",
    "DecompositionResult",
    "TaskDecomposer",
    "WorkerControl",
]
