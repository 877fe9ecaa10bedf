from datetime import UTC, datetime

import allure
import pytest
from conftest import ScriptedBackend

from homr.orchestrator.auto_resolver import AutoResolver, classify_escalation, heuristic_decision
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.escalator import Escalator
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    AUTO_RESOLVED_TAG,
    ActivityEvent,
    AmbiguitySignal,
    AmbiguityType,
    AutoResolveConfig,
    AutoResolveMode,
    DecisionMaker,
    EscalationAction,
    EscalationCategory,
    EscalationStatus,
    EscalationView,
    OutcomeView,
    QuestionOption,
    TaskCreate,
)
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Escalation"),
    allure.feature("Auto-resolve"),
]

FULL_AUTO = AutoResolveConfig(mode=AutoResolveMode.FULL_AUTO, confidence_threshold=0.8)


def _view(
    question: str,
    *,
    trigger_type: str = "unclear_requirement",
    options: list[QuestionOption] | None = None,
) -> EscalationView:
    return EscalationView(
        escalation_id="esc_1",
        outcome_id="out_1",
        status=EscalationStatus.PENDING,
        trigger_type=trigger_type,
        trigger_task_id=None,
        trigger_evidence=[],
        question_text=question,
        question_context="",
        options=options or [],
        affected_tasks=[],
        answer_option=None,
        answer_context=None,
        answered_at=None,
        incorporated_into_outcome_id=None,
        created_at=datetime.now(UTC),
    )


def _resolver(repository: HomrRepository, backend: ScriptedBackend) -> AutoResolver:
    locks = OutcomeLockRegistry()
    store = ContextStore(repository, locks)
    escalator = Escalator(repository, store, locks, backend)
    return AutoResolver(repository, store, escalator, backend)


def _escalate(
    resolver: AutoResolver,
    outcome: OutcomeView,
    question: str,
    options: list[QuestionOption],
) -> EscalationView:
    task = resolver.repository.create_task(
        TaskCreate(outcome_id=outcome.outcome_id, title=f"Task for {question}"),
    )
    return resolver.escalator.create_escalation(
        outcome.outcome_id,
        AmbiguitySignal(
            type=AmbiguityType.MULTIPLE_APPROACHES,
            description="Needs a call",
            affected_tasks=[task.task_id],
            suggested_question=question,
            options=options,
        ),
        task,
    )


CURRENCY_OPTIONS = [
    QuestionOption(id="usd", label="USD only"),
    QuestionOption(id="multi", label="Multi-currency"),
]


@pytest.mark.parametrize(
    ("question", "trigger_type", "expected"),
    [
        ("The task is too complex for one pass", "unclear_requirement", "complexity"),
        ("Should we raise the turn limit?", "unclear_requirement", "complexity"),
        ("The build failed again", "unclear_requirement", "failure"),
        ("What now?", "failure_pattern", "failure"),
        ("Is this destructive migration acceptable?", "unclear_requirement", "security"),
        ("The refund rule is unclear", "unclear_requirement", "ambiguity"),
        ("Which currency should prices use?", "multiple_approaches", "unknown"),
        ("Complex change touching security settings", "unclear_requirement", "complexity"),
    ],
)
def test_classify_escalation(question: str, trigger_type: str, expected: str) -> None:
    category = classify_escalation(_view(question, trigger_type=trigger_type))

    assert category == EscalationCategory(expected)


def test_security_escalations_are_never_auto_resolved() -> None:
    options = [QuestionOption(id="proceed", label="Proceed")]

    decision = heuristic_decision(_view("Run a dangerous data wipe?", options=options), None)

    assert decision is not None
    assert decision.should_auto_resolve is False
    assert decision.confidence == 1.0


def test_first_failure_prefers_retry_option() -> None:
    options = [
        QuestionOption(id="retry_once", label="Retry"),
        QuestionOption(id="stop", label="Stop"),
    ]

    decision = heuristic_decision(_view("The build failed", options=options), None)

    assert decision is not None
    assert decision.selected_option == "retry_once"
    assert decision.confidence == 0.75


def test_unknown_category_has_no_heuristic() -> None:
    assert heuristic_decision(_view("Which currency?", options=CURRENCY_OPTIONS), None) is None


def test_manual_mode_defers_without_model_call(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    escalation = _escalate(resolver, outcome, "Which currency?", CURRENCY_OPTIONS)

    result = resolver.try_auto_resolve(escalation.escalation_id, AutoResolveConfig())

    assert result.resolved is False
    assert result.decision.reasoning == "Auto-resolve is disabled (manual mode)"
    assert backend.requests == []
    pending = repository.get_escalation(escalation.escalation_id)
    assert pending is not None
    assert pending.status == EscalationStatus.PENDING


def test_full_auto_complexity_picks_decomposition(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    options = [
        QuestionOption(
            id="break_into_subtasks",
            label="Break it up",
            action=EscalationAction.BREAK_INTO_SUBTASKS,
        ),
        QuestionOption(id="continue", label="Keep going"),
    ]
    escalation = _escalate(resolver, outcome, "This work is too complex", options)

    result = resolver.try_auto_resolve(escalation.escalation_id, FULL_AUTO)

    assert result.resolved is True
    assert result.decision.selected_option == "break_into_subtasks"
    answered = repository.get_escalation(escalation.escalation_id)
    assert answered is not None
    assert answered.status == EscalationStatus.ANSWERED
    assert answered.answer_context is not None
    assert answered.answer_context.startswith(AUTO_RESOLVED_TAG)
    decision = resolver.context_store.list_decisions(outcome.outcome_id)[0]
    assert decision.made_by == DecisionMaker.HOMR
    logged = repository.list_activity(outcome.outcome_id)[0]
    assert logged.event == ActivityEvent.AUTO_RESOLVED
    assert logged.summary == "Auto-resolved: break_into_subtasks (confidence: 90%)"


def test_confidence_below_threshold_defers_and_logs(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    options = [
        QuestionOption(id="retry", label="Retry"),
        QuestionOption(id="stop", label="Stop"),
    ]
    escalation = _escalate(resolver, outcome, "The deploy failed", options)

    result = resolver.try_auto_resolve(escalation.escalation_id, FULL_AUTO)

    assert result.resolved is False
    assert result.decision.confidence == 0.75
    logged = repository.list_activity(outcome.outcome_id)[0]
    assert logged.event == ActivityEvent.AUTO_RESOLVE_DEFERRED
    assert logged.summary == "Auto-resolve deferred to human (confidence: 75%)"
    assert repository.count_pending_escalations(outcome.outcome_id) == 1


def test_model_decision_resolves_when_confident(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    escalation = _escalate(resolver, outcome, "Which currency?", CURRENCY_OPTIONS)
    backend.push(
        'Sure: {"shouldAutoResolve": true, "selectedOption": "usd", '
        '"reasoning": "Launch market is US", "confidence": 0.92}',
    )

    result = resolver.try_auto_resolve(escalation.escalation_id, FULL_AUTO)

    assert result.resolved is True
    assert result.resolution is not None
    assert result.resolution.selected_option.id == "usd"
    assert "Which currency?" in backend.requests[0].prompt


def test_model_failure_defers_with_zero_confidence(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    escalation = _escalate(resolver, outcome, "Which currency?", CURRENCY_OPTIONS)

    result = resolver.try_auto_resolve(escalation.escalation_id, FULL_AUTO)

    assert result.resolved is False
    assert result.decision.confidence == 0.0
    assert result.decision.reasoning == "Failed to get response from the completion service"


def test_model_choosing_unknown_option_is_reported(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    escalation = _escalate(resolver, outcome, "Which currency?", CURRENCY_OPTIONS)
    backend.push(
        {
            "shouldAutoResolve": True,
            "selectedOption": "eur",
            "reasoning": "Europe",
            "confidence": 0.95,
        },
    )

    result = resolver.try_auto_resolve(escalation.escalation_id, FULL_AUTO)

    assert result.resolved is False
    assert result.decision.reasoning == "Auto-resolution failed: Invalid option: eur"


def test_batch_continues_after_a_failing_item(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    first = _escalate(resolver, outcome, "Which currency?", CURRENCY_OPTIONS)
    second = _escalate(resolver, outcome, "Which locale?", CURRENCY_OPTIONS)
    backend.push(
        RuntimeError("service exploded"),
        {
            "shouldAutoResolve": True,
            "selectedOption": "multi",
            "reasoning": "Global launch",
            "confidence": 0.9,
        },
    )

    batch = resolver.auto_resolve_all_pending(outcome.outcome_id, FULL_AUTO)

    assert (batch.total, batch.resolved, batch.deferred) == (2, 1, 1)
    assert batch.results[0].escalation_id == first.escalation_id
    assert batch.results[0].reasoning == "Auto-resolution failed: service exploded"
    assert batch.results[1].escalation_id == second.escalation_id
    assert batch.results[1].resolved is True


def test_get_config_follows_outcome_settings(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    resolver = _resolver(repository, backend)
    repository.update_auto_resolve_config(
        outcome.outcome_id,
        mode=AutoResolveMode.SEMI_AUTO,
        threshold=0.6,
    )

    config = resolver.get_config(outcome.outcome_id)

    assert config.mode == AutoResolveMode.SEMI_AUTO
    assert config.confidence_threshold == 0.6
    assert resolver.get_config("out_missing").mode == AutoResolveMode.MANUAL
