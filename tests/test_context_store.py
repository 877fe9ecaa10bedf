import allure

from homr.orchestrator.context_store import COMPACTION_SOURCE, ContextStore, score_discovery
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    WILDCARD,
    DecisionMaker,
    Discovery,
    DiscoveryType,
    InjectionPriority,
    InjectionType,
    OutcomeView,
)
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Context"),
    allure.feature("Cross-Task Context Store"),
]


def _store(repository: HomrRepository) -> ContextStore:
    return ContextStore(repository, OutcomeLockRegistry())


def test_empty_context_renders_nothing(repository: HomrRepository, outcome: OutcomeView) -> None:
    assert _store(repository).build_task_context("task_1", outcome.outcome_id) == ""


def test_task_context_includes_targeted_and_wildcard_entries(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = _store(repository)
    store.add_discovery(
        outcome.outcome_id,
        Discovery(
            type=DiscoveryType.BLOCKER,
            content="Payment sandbox rejects test cards after 5pm",
            relevant_tasks=["task_1"],
            source="task_0",
        ),
    )
    store.add_discovery(
        outcome.outcome_id,
        Discovery(
            type=DiscoveryType.PATTERN,
            content="Handlers live in api/routes",
            relevant_tasks=[WILDCARD],
            source="task_0",
        ),
    )
    store.add_discovery(
        outcome.outcome_id,
        Discovery(type=DiscoveryType.OTHER, content="Unrelated", relevant_tasks=["task_9"]),
    )
    store.add_injection(
        outcome.outcome_id,
        injection_type=InjectionType.WARNING,
        content="Keep amounts in cents",
        source="task_0",
        priority=InjectionPriority.MUST_KNOW,
        target_task_id="task_1",
    )
    store.record_decision(
        outcome.outcome_id,
        content="Use Stripe",
        made_by=DecisionMaker.HUMAN,
        context="Escalation: Which provider?",
    )
    store.record_constraint(
        outcome.outcome_id,
        constraint_type="technical",
        content="Python 3.12 only",
        source="task_0",
    )

    rendered = store.build_task_context("task_1", outcome.outcome_id)

    assert rendered.startswith("## HOMR Context (Cross-Task Learnings)")
    assert "**[BLOCKER]** Payment sandbox rejects test cards after 5pm" in rendered
    assert "Handlers live in api/routes" in rendered
    assert "Unrelated" not in rendered
    assert "**Must know:**" in rendered
    assert "- Keep amounts in cents _(from task_0)_" in rendered
    assert "- **Use Stripe**" in rendered
    assert "- [technical] Python 3.12 only" in rendered
    assert rendered.index("[BLOCKER]") < rendered.index("[PATTERN]")
    assert repository.get_context_stats(outcome.outcome_id).discoveries_extracted == 3


def test_deactivated_constraints_leave_task_context(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = _store(repository)
    constraint = store.record_constraint(
        outcome.outcome_id,
        constraint_type="business",
        content="EU customers only",
        source="human",
    )

    assert store.deactivate_constraint(outcome.outcome_id, constraint.constraint_id) is True
    assert store.deactivate_constraint(outcome.outcome_id, "con_missing") is False
    assert store.get_task_context("task_1", outcome.outcome_id).constraints == []
    assert len(store.list_constraints(outcome.outcome_id)) == 1


def test_answer_pattern_counts_repeat_choices(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = _store(repository)

    first = store.record_answer_pattern(
        outcome.outcome_id,
        trigger_type="unclear_requirement",
        option_id="usd",
        question="Which currency?",
    )
    second = store.record_answer_pattern(
        outcome.outcome_id,
        trigger_type="unclear_requirement",
        option_id="usd",
        question="Which currency?",
    )

    assert (first.count, second.count) == (1, 2)
    patterns = [
        discovery
        for discovery in store.list_discoveries(outcome.outcome_id)
        if discovery.content.startswith("answer_pattern:unclear_requirement:usd|")
    ]
    assert len(patterns) == 1
    assert "|count:2|" in patterns[0].content
    assert patterns[0].is_wildcard


def test_compaction_keeps_highest_scoring_discoveries(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = _store(repository)
    store.add_discovery(
        outcome.outcome_id,
        Discovery(type=DiscoveryType.BLOCKER, content="Oldest blocker", relevant_tasks=["t"]),
    )
    for index in range(5):
        store.add_discovery(
            outcome.outcome_id,
            Discovery(type=DiscoveryType.OTHER, content=f"note {index}", relevant_tasks=["t"]),
        )

    result = store.compact(outcome.outcome_id, max_discoveries=3)

    assert (result.before, result.after, result.compacted) == (6, 4, 3)
    contents = [item.content for item in store.list_discoveries(outcome.outcome_id)]
    assert "Oldest blocker" in contents
    assert "note 4" in contents
    assert "note 0" not in contents
    summary = store.list_discoveries(outcome.outcome_id)[-1]
    assert summary.source == COMPACTION_SOURCE
    assert summary.content.startswith("[Compacted 3 earlier discoveries]")


def test_compaction_below_limit_is_a_no_op(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = _store(repository)
    store.add_discovery(outcome.outcome_id, Discovery(type=DiscoveryType.OTHER, content="x"))

    result = store.compact(outcome.outcome_id, max_discoveries=3)

    assert result.compacted == 0
    assert len(store.list_discoveries(outcome.outcome_id)) == 1


def test_discovery_score_favours_type_recency_and_wildcards() -> None:
    blocker = Discovery(type=DiscoveryType.BLOCKER, content="b")
    pattern = Discovery(type=DiscoveryType.PATTERN, content="p", relevant_tasks=[WILDCARD])

    assert score_discovery(blocker, index=0, total=10) == 100.0
    assert score_discovery(blocker, index=5, total=10) == 125.0
    assert score_discovery(pattern, index=0, total=10) == 60.0
