from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result
from conftest import ScriptedBackend

from homr import main
from homr.main import homr
from homr.orchestrator.controllers import HomrCliController
from homr.orchestrator.models import AutoResolveMode, EscalationStatus, TaskStatus
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Operator Surface"),
    allure.feature("HOMR CLI"),
]

QUESTION = {
    "questionText": "Which retry approach should payments use?",
    "questionContext": "Two designs are viable",
    "options": [
        {"id": "use_queue", "label": "Use a queue"},
        {"id": "skip_task", "label": "Skip retries"},
    ],
}

UNCERTAIN_OBSERVATION = {
    "onTrack": True,
    "alignmentScore": 70,
    "quality": "good",
    "summary": "Stopped at the retry design.",
}


@pytest.fixture()
def cli_backend(monkeypatch: pytest.MonkeyPatch) -> ScriptedBackend:
    backend = ScriptedBackend()
    monkeypatch.setattr(
        main,
        "HOMR_CONTROLLER",
        HomrCliController(backend_factory=lambda _settings: backend),
    )
    return backend


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str) -> Result:
    """Run a command, placing ``--db-path`` right after the command words."""

    split = next((index for index, arg in enumerate(args) if arg.startswith("--")), len(args))
    return CliRunner().invoke(homr, [*args[:split], "--db-path", str(db_path), *args[split:]])


def _ok(db_path: Path, *args: str) -> str:
    result = _invoke(db_path, *args)
    assert result.exit_code == 0, result.output
    return result.output


def _capture(pattern: str, output: str) -> str:
    match = re.search(pattern, output)
    assert match is not None, output
    return match.group(1)


def _outcome(db_path: Path, *extra: str) -> str:
    output = _ok(
        db_path,
        "outcome",
        "create",
        "--name",
        "Checkout",
        "--intent",
        "Ship card payments",
        "--item",
        "Payments",
        "--success-criterion",
        "Orders are paid",
        *extra,
    )
    return _capture(r"outcome_id=(\S+)", output)


def _task(db_path: Path, outcome_id: str, title: str, *extra: str) -> str:
    output = _ok(db_path, "task", "add", "--outcome", outcome_id, "--title", title, *extra)
    return _capture(r"task_id=(\S+)", output)


def _escalate(backend: ScriptedBackend, db_path: Path, tmp_path: Path) -> tuple[str, str, str]:
    outcome_id = _outcome(db_path)
    task_id = _task(db_path, outcome_id, "Payment retries")
    output_file = tmp_path / "worker.log"
    output_file.write_text("I'm not sure which approach to use for retries.", encoding="utf-8")
    backend.push(UNCERTAIN_OBSERVATION, QUESTION)
    observed = _ok(db_path, "observe", "--task", task_id, "--output-file", str(output_file))
    return outcome_id, task_id, _capture(r"Escalation created: (\S+)", observed)


def test_outcome_and_task_lifecycle(cli_backend: ScriptedBackend, db_path: Path) -> None:
    outcome_id = _outcome(db_path)
    first = _task(db_path, outcome_id, "Cart API", "--priority", "1")
    second = _task(db_path, outcome_id, "Payment API", "--priority", "2")

    _ok(db_path, "task", "depend", "--task", second, "--on", first)
    cycle = _invoke(db_path, "task", "depend", "--task", first, "--on", second)
    claimed = _ok(db_path, "task", "claim", "--outcome", outcome_id, "--worker", "worker_1")
    _ok(db_path, "task", "complete", "--task", first)
    shown = _ok(db_path, "outcome", "show", "--outcome", outcome_id)
    listed = _ok(db_path, "outcome", "list")

    assert cycle.exit_code == 1
    assert "circular dependency" in cycle.output
    assert f"Claimed: task_id={first} worker_id=worker_1" in claimed
    assert "Intent: Ship card payments" in shown
    assert "  success: Orders are paid" in shown
    assert f"depends_on={first}" in shown
    assert f"{outcome_id} status=active homr=on auto_resolve=manual name=Checkout" in listed
    repository = HomrRepository(db_path)
    try:
        assert repository.require_task(first).status == TaskStatus.COMPLETED
    finally:
        repository.close()
    assert cli_backend.requests == []


def test_failed_attempts_exhaust_budget(cli_backend: ScriptedBackend, db_path: Path) -> None:
    outcome_id = _outcome(db_path)
    task_id = _task(db_path, outcome_id, "Flaky job", "--max-attempts", "1")

    _ok(db_path, "task", "claim", "--outcome", outcome_id)
    output = _ok(db_path, "task", "fail", "--task", task_id)

    assert "status=failed attempts=1/1" in output


def test_unknown_task_is_a_usage_error(cli_backend: ScriptedBackend, db_path: Path) -> None:
    result = _invoke(db_path, "task", "complete", "--task", "task_missing")

    assert result.exit_code == 1
    assert "task_missing" in result.output


def test_ambiguous_output_escalates_and_blocks_claims(
    cli_backend: ScriptedBackend,
    db_path: Path,
    tmp_path: Path,
) -> None:
    outcome_id, task_id, escalation_id = _escalate(cli_backend, db_path, tmp_path)

    blocked = _ok(db_path, "task", "claim", "--outcome", outcome_id)
    listed = _ok(db_path, "escalations", "list", "--status", "pending")
    shown = _ok(db_path, "escalations", "show", "--id", escalation_id)
    answered = _ok(
        db_path,
        "escalations",
        "answer",
        "--id",
        escalation_id,
        "--option",
        "skip_task",
    )
    repeated = _invoke(db_path, "escalations", "answer", "--id", escalation_id, "--option", "x")

    assert "Work blocked: 1 pending escalation(s) need an answer." in blocked
    assert escalation_id in listed
    assert "skip_task: Skip retries [skip_failing_tasks]" in shown
    assert f"skip_failing_tasks {task_id}: ok" in answered
    assert repeated.exit_code == 1
    assert "not pending" in repeated.output
    repository = HomrRepository(db_path)
    try:
        escalation = repository.get_escalation(escalation_id)
        assert escalation is not None
        assert escalation.status == EscalationStatus.ANSWERED
        assert repository.require_task(task_id).status == TaskStatus.FAILED
    finally:
        repository.close()


def test_dismiss_resumes_and_feeds_activity(
    cli_backend: ScriptedBackend,
    db_path: Path,
    tmp_path: Path,
) -> None:
    outcome_id, task_id, escalation_id = _escalate(cli_backend, db_path, tmp_path)

    dismissed = _ok(
        db_path,
        "escalations",
        "dismiss",
        "--id",
        escalation_id,
        "--reason",
        "Design settled offline",
    )
    feed = _ok(
        db_path,
        "activity",
        "--outcome",
        outcome_id,
        "--type",
        "escalation",
        "--type",
        "resolution",
    )
    status = _ok(db_path, "status", "--outcome", outcome_id)
    claimed = _ok(db_path, "task", "claim", "--outcome", outcome_id)

    assert f"Resumed tasks: {task_id}" in dismissed
    assert "escalation_dismissed: Dismissed escalation: Design settled offline" in feed
    assert "escalation_created" in feed
    assert "task_observed" not in feed
    assert "Pending escalations: 0" in status
    assert "escalations_created=1" in status
    assert f"Claimed: task_id={task_id}" in claimed


def test_quick_observe_and_disabled_outcome(cli_backend: ScriptedBackend, db_path: Path) -> None:
    outcome_id = _outcome(db_path)
    task_id = _task(db_path, outcome_id, "Cart API")

    quick = _ok(db_path, "observe", "--task", task_id, "--quick", "--failed")
    _ok(db_path, "outcome", "disable", "--outcome", outcome_id)
    disabled = _ok(db_path, "observe", "--task", task_id, "--quick")
    missing_output = _invoke(db_path, "observe", "--task", task_id)

    assert f"Quick observation: task_id={task_id} quality=needs_work alignment=40" in quick
    assert f"HOMR is disabled for outcome {outcome_id}." in disabled
    assert missing_output.exit_code == 1
    assert "--output-file is required" in missing_output.output


def test_auto_resolve_configuration_and_run(
    cli_backend: ScriptedBackend,
    db_path: Path,
    tmp_path: Path,
) -> None:
    outcome_id, _, escalation_id = _escalate(cli_backend, db_path, tmp_path)

    updated = _ok(
        db_path,
        "auto-resolve",
        "set",
        "--outcome",
        outcome_id,
        "--mode",
        "full-auto",
        "--threshold",
        "0.7",
    )
    shown = _ok(db_path, "auto-resolve", "show", "--outcome", outcome_id)
    cli_backend.push(
        {
            "shouldAutoResolve": True,
            "selectedOption": "use_queue",
            "reasoning": "Queues match the design approach",
            "confidence": 0.9,
        },
    )
    ran = _ok(db_path, "auto-resolve", "run", "--outcome", outcome_id)

    assert "mode=full-auto threshold=0.70" in updated
    assert "mode=full-auto threshold=0.70" in shown
    assert "Auto-resolve: total=1 resolved=1 deferred=0" in ran
    assert f"{escalation_id}: resolved - Queues match the design approach" in ran
    repository = HomrRepository(db_path)
    try:
        outcome = repository.require_outcome(outcome_id)
        assert outcome.auto_resolve_mode == AutoResolveMode.FULL_AUTO
        assert repository.count_pending_escalations(outcome_id) == 0
    finally:
        repository.close()


def test_auto_resolve_run_evaluates_manual_outcome(
    cli_backend: ScriptedBackend,
    db_path: Path,
    tmp_path: Path,
) -> None:
    outcome_id, _, escalation_id = _escalate(cli_backend, db_path, tmp_path)
    cli_backend.push(
        {
            "shouldAutoResolve": True,
            "selectedOption": "use_queue",
            "reasoning": "Queues fit",
            "confidence": 0.85,
        },
    )

    ran = _ok(db_path, "auto-resolve", "run", "--outcome", outcome_id)
    shown = _ok(db_path, "auto-resolve", "show", "--outcome", outcome_id)

    assert f"{escalation_id}: resolved - Queues fit" in ran
    assert "mode=manual" in shown


def test_analysis_waits_for_the_job(cli_backend: ScriptedBackend, db_path: Path) -> None:
    outcome_id = _outcome(db_path)

    started = _ok(db_path, "analysis", "start", "--outcome", outcome_id, "--lookback-days", "7")
    job_id = _capture(r"(?m)^(\S+) status=completed", started)
    status = _ok(db_path, "analysis", "status", "--job", job_id)
    recent = _ok(db_path, "analysis", "recent")
    active = _ok(db_path, "analysis", "active")

    assert "No escalations found for analysis." in started
    assert "progress=Analysis complete" in status
    assert job_id in recent
    assert "No active analysis jobs." in active
    assert cli_backend.requests == []


def test_missing_analysis_job_is_reported(cli_backend: ScriptedBackend, db_path: Path) -> None:
    result = _invoke(db_path, "analysis", "status", "--job", "analysis_missing")

    assert result.exit_code == 1
    assert "Analysis job not found: analysis_missing" in result.output
