import allure
import pytest

from homr.orchestrator.backend.base import CompletionRequest
from homr.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliCompletionBackend,
    _build_run_args,
)

pytestmark = [
    allure.epic("Completion Backend"),
    allure.feature("CLI Command Rendering"),
]


def test_build_run_args_quotes_each_placeholder() -> None:
    argv = _build_run_args(
        command_template=(
            "agent -p {prompt} --system {system_prompt} --model {model} --turns {max_turns}"
        ),
        model="sonnet",
        request=CompletionRequest(
            prompt="Review 'checkout' output; exit",
            system_prompt="Respond with JSON only",
            max_turns=3,
        ),
    )

    assert argv == [
        "agent",
        "-p",
        "Review 'checkout' output; exit",
        "--system",
        "Respond with JSON only",
        "--model",
        "sonnet",
        "--turns",
        "3",
    ]


def test_build_run_args_renders_missing_system_prompt_as_empty_argument() -> None:
    argv = _build_run_args(
        command_template="agent {prompt} {system_prompt}",
        model="sonnet",
        request=CompletionRequest(prompt="hello"),
    )

    assert argv == ["agent", "hello", ""]


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(BackendRunError, match="placeholder") as error:
        _build_run_args(
            command_template="agent {prompt} --temperature {temperature}",
            model="sonnet",
            request=CompletionRequest(prompt="hello"),
        )

    assert error.value.transient is False


@pytest.mark.parametrize("template", ["", "   ", "agent --model {model}"])
def test_backend_rejects_template_without_prompt(template: str) -> None:
    with pytest.raises(ValueError):
        CliCompletionBackend(command_template=template, model="sonnet")


def test_missing_binary_becomes_failed_completion() -> None:
    backend = CliCompletionBackend(
        command_template="homr-nonexistent-agent-binary {prompt}",
        model="sonnet",
    )

    result = backend.complete(CompletionRequest(prompt="hello", timeout_seconds=5))

    assert result.success is False
    assert result.error is not None
    assert "not found" in result.error


def test_non_zero_exit_becomes_failed_completion() -> None:
    backend = CliCompletionBackend(
        command_template="sh -c 'echo broken >&2; exit 3' {prompt}",
        model="sonnet",
    )

    result = backend.complete(CompletionRequest(prompt="hello", timeout_seconds=5))

    assert result.success is False
    assert "exited with code 3" in (result.error or "")
    assert "broken" in (result.error or "")


def test_successful_command_returns_stdout() -> None:
    backend = CliCompletionBackend(command_template="echo {prompt}", model="sonnet")

    result = backend.complete(CompletionRequest(prompt='{"ok": true}', timeout_seconds=5))

    assert result.success is True
    assert result.text.strip() == '{"ok": true}'
