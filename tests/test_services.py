from collections.abc import Callable
from typing import Any

import allure
from conftest import ScriptedBackend

from homr.config import FailurePatternSettings
from homr.orchestrator.models import (
    ActivityEvent,
    AmbiguityType,
    EscalationStatus,
    OutcomeView,
    TaskCreate,
    TaskView,
    WorkerStatus,
)
from homr.orchestrator.repository import HomrRepository
from homr.orchestrator.services import HomrService

pytestmark = [
    allure.epic("Supervision"),
    allure.feature("Control Loop"),
]

PayloadFactory = Callable[..., dict[str, Any]]


def _service(repository: HomrRepository, backend: ScriptedBackend) -> HomrService:
    return HomrService(repository=repository, backend=backend)


def _task(repository: HomrRepository, outcome: OutcomeView, title: str) -> TaskView:
    return repository.create_task(TaskCreate(outcome_id=outcome.outcome_id, title=title))


def test_disabled_outcome_is_left_alone(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    repository.set_outcome_homr_enabled(outcome.outcome_id, enabled=False)
    service = _service(repository, backend)
    task = _task(repository, outcome, "Payments")

    result = service.observe_and_process(task, "I'm not sure which approach to use.")

    assert result.observation is None
    assert result.escalated is False
    assert backend.requests == []
    assert service.quick_observe(task, success=True) is None
    service.on_worker_start(outcome.outcome_id, "worker_1")
    assert repository.list_activity(outcome.outcome_id) == []
    assert service.should_block_work(outcome.outcome_id) is False


def test_three_consecutive_failures_pause_every_worker(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
    observation_payload: PayloadFactory,
) -> None:
    service = _service(repository, backend)
    workers = [repository.register_worker(outcome.outcome_id) for _ in range(2)]
    tasks = [_task(repository, outcome, title) for title in ("Cart", "Payments", "Receipts")]
    for index in range(3):
        backend.push(
            observation_payload(onTrack=False, alignmentScore=20, summary=f"miss {index}"),
        )

    results = [service.observe_and_process(task, "Tests still red.") for task in tasks]

    assert [result.escalated for result in results] == [False, False, True]
    final = results[-1]
    assert final.failure_pattern_detected is True
    assert final.workers_paused is True
    assert final.escalation_id is not None
    for worker in workers:
        paused = repository.get_worker(worker.worker_id)
        assert paused is not None
        assert paused.status == WorkerStatus.PAUSED
    escalation = repository.get_escalation(final.escalation_id)
    assert escalation is not None
    assert escalation.trigger_type == AmbiguityType.BLOCKING_DECISION.value
    assert escalation.affected_tasks == [tasks[2].task_id]
    logged = repository.list_activity(outcome.outcome_id)[0]
    assert logged.event == ActivityEvent.FAILURE_PATTERN_DETECTED
    assert sorted(logged.details["workers_paused"]) == sorted(
        worker.worker_id for worker in workers
    )
    assert service.should_block_work(outcome.outcome_id) is True


def test_failure_threshold_can_be_overridden_per_call(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
    observation_payload: PayloadFactory,
) -> None:
    service = _service(repository, backend)
    task = _task(repository, outcome, "Cart")
    backend.push(observation_payload(onTrack=False, alignmentScore=10))

    result = service.observe_and_process(
        task,
        "Tests still red.",
        worker_id="worker_9",
        failure_config=FailurePatternSettings(consecutive_failure_threshold=1),
    )

    assert result.failure_pattern_detected is True
    assert result.workers_paused is False
    logged = repository.list_activity(outcome.outcome_id)[0]
    assert logged.details["reporting_worker_id"] == "worker_9"


def test_ambiguity_escalates_instead_of_steering(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
    observation_payload: PayloadFactory,
) -> None:
    service = _service(repository, backend)
    task = _task(repository, outcome, "Payments")
    backend.push(
        observation_payload(
            ambiguity={
                "detected": True,
                "type": "contradicting_info",
                "description": "Ticket and design doc disagree on refunds",
                "evidence": ["refunds"],
                "suggestedQuestion": "Are partial refunds allowed?",
            },
            drift=[{"type": "scope", "description": "Extra", "severity": "high"}],
        ),
        {
            "questionText": "Are partial refunds allowed?",
            "questionContext": "Ticket and design doc disagree",
            "options": [
                {"id": "allow", "label": "Allow"},
                {"id": "deny", "label": "Deny"},
            ],
        },
    )

    result = service.observe_and_process(task, "Done, refunds left open.")

    assert result.escalated is True
    assert result.steered is False
    assert result.escalation_id is not None
    escalation = repository.get_escalation(result.escalation_id)
    assert escalation is not None
    assert escalation.status == EscalationStatus.PENDING
    assert [option.id for option in escalation.options] == ["allow", "deny"]
    assert [item.title for item in repository.list_tasks(outcome.outcome_id)] == ["Payments"]
    assert repository.require_task(task.task_id).is_paused


def test_clean_observation_steers(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
    observation_payload: PayloadFactory,
) -> None:
    service = _service(repository, backend)
    task = _task(repository, outcome, "Payments")
    backend.push(
        observation_payload(
            drift=[{"type": "scope", "description": "Added loyalty points", "severity": "high"}],
        ),
    )

    result = service.observe_and_process(task, "Implemented payments and loyalty points.")

    assert result.steered is True
    assert result.escalated is False
    titles = [item.title for item in repository.list_tasks(outcome.outcome_id)]
    assert "Fix: Added loyalty points" in titles


def test_failed_observation_reports_nothing(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    service = _service(repository, backend)

    result = service.observe_and_process(_task(repository, outcome, "Payments"), "output")

    assert result.observation is None
    assert repository.list_escalations(outcome_id=outcome.outcome_id) == []


def test_status_summarizes_context_and_activity(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    service = _service(repository, backend)
    task = _task(repository, outcome, "Payments")
    service.on_worker_start(outcome.outcome_id, "worker_1")
    service.quick_observe(task, success=False)
    service.on_worker_stop(outcome.outcome_id, "worker_1")

    status = service.get_status(outcome.outcome_id)

    assert status.enabled is True
    assert status.stats.tasks_observed == 1
    assert status.pending_escalations == 0
    assert [item.event for item in status.recent_activity] == [
        ActivityEvent.WORKER_STOP,
        ActivityEvent.WORKER_START,
    ]
    assert status.recent_activity[-1].summary == (
        "Worker worker_1 started - HOMR monitoring enabled"
    )
