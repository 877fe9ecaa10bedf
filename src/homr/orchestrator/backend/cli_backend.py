"""Subprocess-based completion backend for CLI model agents."""

from __future__ import annotations

import logging
import shlex
import subprocess

from homr.orchestrator.backend.base import CompletionRequest, CompletionResult

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliCompletionBackend:
    """Render a command template per request and return the process stdout."""

    def __init__(self, *, command_template: str, model: str) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise ValueError("Completion command template is empty.")
        if "{prompt}" not in stripped:
            raise ValueError("Completion command template must include {prompt}.")
        self.command_template = stripped
        self.model = model

    def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            argv = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                request=request,
            )
            return _run_completion(argv=argv, timeout_seconds=request.timeout_seconds)
        except BackendRunError as error:
            logger.warning(
                "Completion call failed (transient=%s): %s",
                error.transient,
                error,
            )
            return CompletionResult(success=False, error=str(error))


def _build_run_args(
    *,
    command_template: str,
    model: str,
    request: CompletionRequest,
) -> list[str]:
    try:
        rendered = command_template.format(
            prompt=shlex.quote(request.prompt),
            system_prompt=shlex.quote(request.system_prompt or ""),
            model=shlex.quote(model),
            max_turns=shlex.quote(str(request.max_turns)),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Completion command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_completion(*, argv: list[str], timeout_seconds: int) -> CompletionResult:
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        raise BackendRunError(
            f"Completion command timed out after {timeout_seconds}s",
            transient=True,
        ) from error
    except FileNotFoundError as error:
        raise BackendRunError(
            f"Completion command not found: {argv[0]}",
            transient=False,
        ) from error
    except OSError as error:
        raise BackendRunError(
            f"Completion command failed to start: {error}",
            transient=True,
        ) from error

    if completed.returncode != 0:
        stderr_tail = (completed.stderr or "").strip()[-_STDERR_TAIL_CHARS:]
        raise BackendRunError(
            f"Completion command exited with code {completed.returncode}: {stderr_tail}",
            transient=False,
        )
    return CompletionResult(success=True, text=completed.stdout or "")
