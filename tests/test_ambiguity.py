import allure

from homr.orchestrator.affinity import KeywordOverlapAffinity, extract_keywords
from homr.orchestrator.ambiguity import detect_ambiguity_patterns
from homr.orchestrator.models import AmbiguityType, OutcomeView, TaskCreate
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Observation"),
    allure.feature("Ambiguity Detection"),
]


def test_clean_output_has_no_ambiguity() -> None:
    assert detect_ambiguity_patterns("Implemented the endpoint and all tests pass.") is None


def test_dominant_type_wins() -> None:
    output = (
        "I'm not sure whether refunds are in scope. "
        "Assuming that partial refunds are allowed, I added a flag. "
        "We could go either way on webhooks."
    )

    signal = detect_ambiguity_patterns(output)

    assert signal is not None
    assert signal.type == AmbiguityType.UNCLEAR_REQUIREMENT
    assert signal.description == "Worker expressed uncertainty"
    assert len(signal.evidence) == 3
    assert signal.suggested_question == "What is the expected behavior for this requirement?"


def test_ties_prefer_the_more_specific_type() -> None:
    signal = detect_ambiguity_patterns(
        "The design doc contradicts the ticket, and I can't proceed without a call.",
    )

    assert signal is not None
    assert signal.type == AmbiguityType.BLOCKING_DECISION


def test_evidence_is_a_window_around_the_match() -> None:
    prefix = "x" * 80
    signal = detect_ambiguity_patterns(f"{prefix} Option A is faster {'y' * 80}")

    assert signal is not None
    assert signal.type == AmbiguityType.MULTIPLE_APPROACHES
    evidence = signal.evidence[0]
    assert "Option A" in evidence
    assert len(evidence) <= len("Option A") + 100


def test_extract_keywords_drops_stopwords_and_short_tokens() -> None:
    keywords = extract_keywords("Add the Stripe webhook to an API!")

    assert keywords == {"add", "stripe", "webhook", "api"}


def test_keyword_affinity_needs_two_shared_keywords(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    trigger = repository.create_task(
        TaskCreate(outcome_id=outcome.outcome_id, title="Stripe webhook handler"),
    )
    related = repository.create_task(
        TaskCreate(outcome_id=outcome.outcome_id, title="Retry stripe webhook deliveries"),
    )
    unrelated = repository.create_task(
        TaskCreate(outcome_id=outcome.outcome_id, title="Stripe dashboard styling"),
    )

    matches = KeywordOverlapAffinity().related_tasks(trigger, [trigger, related, unrelated])

    assert matches == [related.task_id]
