import json
from datetime import UTC, datetime, timedelta

import allure
import pytest
from conftest import ScriptedBackend

from homr.analysis.analyzer import (
    AnalysisResult,
    ClusterSeverity,
    CompletionImprovementAnalyzer,
    EscalationCluster,
    ImprovementProposal,
    ProgressCallback,
    ProposalApproach,
    extract_json,
    sort_clusters,
)
from homr.analysis.runner import STALE_JOB_ERROR, AnalysisJobRunner, result_message
from homr.orchestrator.models import (
    ActivityEvent,
    AnalysisJobStatus,
    EscalationCreate,
    EscalationStatus,
    EscalationView,
    OutcomeIntent,
    OutcomeView,
    QuestionOption,
)
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Improvement Analysis"),
    allure.feature("Analysis Jobs"),
]

CLUSTER_RESPONSE = {
    "clusters": [
        {
            "root_cause": "missing_refund_spec",
            "pattern_description": "Workers keep asking about refunds",
            "problem_statement": "Refund rules are undocumented",
            "severity": "high",
            "escalation_indices": [0, 1, 2],
        },
        {"root_cause": "one_off", "escalation_indices": [0]},
    ],
}

PROPOSAL_RESPONSE = {
    "outcome_name": "Document refund rules",
    "intent": {
        "summary": "Write down the refund policy",
        "items": [{"title": "Policy doc", "priority": "high"}],
        "success_criteria": ["No more refund escalations"],
    },
    "approach": {"summary": "Interview finance", "steps": ["Interview", "Write"], "risks": []},
    "tasks": [
        {"title": "Draft refund policy", "description": "First draft", "priority": 1},
        {"title": "", "description": "ignored"},
    ],
}


class RecordingAnalyzer:
    """Analyzer double that records the job progress seen while it runs."""

    def __init__(self, repository: HomrRepository, outcome: AnalysisResult | Exception) -> None:
        self.repository = repository
        self.outcome = outcome
        self.seen_progress: list[str | None] = []

    def analyze(
        self,
        *,
        lookback_days: int,
        outcome_id: str | None,
        max_proposals: int,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisResult:
        job = self.repository.list_active_analysis_jobs()[0]
        self.seen_progress.append(job.progress_message)
        if on_progress is not None:
            on_progress("Clustering 3 escalation(s) by root cause...")
        current = self.repository.get_analysis_job(job.job_id)
        self.seen_progress.append(current.progress_message if current else None)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _cluster(
    severity: ClusterSeverity = ClusterSeverity.MEDIUM,
    *,
    size: int = 2,
    root_cause: str = "spec_gap",
) -> EscalationCluster:
    escalation = EscalationView(
        escalation_id="esc_1",
        outcome_id="out_1",
        status=EscalationStatus.ANSWERED,
        trigger_type="unclear_requirement",
        trigger_task_id=None,
        trigger_evidence=[],
        question_text="Refunds?",
        question_context="",
        options=[],
        affected_tasks=[],
        answer_option="allow",
        answer_context=None,
        answered_at=None,
        incorporated_into_outcome_id=None,
        created_at=datetime.now(UTC),
    )
    return EscalationCluster(
        cluster_id=f"cluster_{root_cause}",
        root_cause=root_cause,
        pattern_description="",
        problem_statement="",
        severity=severity,
        escalations=[escalation] * size,
    )


def _analysis(
    *,
    escalations: int,
    clusters: int = 0,
    proposals: int = 0,
    created: list[OutcomeView] | None = None,
) -> AnalysisResult:
    cluster = _cluster()
    proposal = ImprovementProposal(
        cluster=cluster,
        outcome_name="Fix specs",
        intent=OutcomeIntent(summary="Clarify specs"),
        approach=ProposalApproach(summary="Write them down"),
    )
    return AnalysisResult(
        escalations_analyzed=escalations,
        clusters=[cluster] * clusters,
        proposals=[proposal] * proposals,
        analyzed_at=datetime.now(UTC),
        outcomes_created=created or [],
    )


def _escalations(repository: HomrRepository, outcome: OutcomeView, count: int) -> list[str]:
    ids = []
    for index in range(count):
        escalation = repository.create_escalation(
            EscalationCreate(
                outcome_id=outcome.outcome_id,
                trigger_type="unclear_requirement",
                trigger_task_id=None,
                trigger_evidence=["refunds?"],
                question_text=f"Are partial refunds allowed in case {index}?",
                question_context="Refund rules are missing",
                options=[
                    QuestionOption(id="allow", label="Allow"),
                    QuestionOption(id="deny", label="Deny"),
                ],
                affected_tasks=[],
            ),
        )
        repository.answer_escalation(
            escalation.escalation_id,
            option_id="allow",
            additional_context=None,
        )
        ids.append(escalation.escalation_id)
    return ids


def test_background_job_reports_progress_and_completes(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    analyzers: list[RecordingAnalyzer] = []

    def factory(repo: HomrRepository) -> RecordingAnalyzer:
        analyzer = RecordingAnalyzer(repo, _analysis(escalations=3, clusters=1, proposals=1))
        analyzers.append(analyzer)
        return analyzer

    runner = AnalysisJobRunner(repository, analyzer_factory=factory)

    job_id = runner.start_background_analysis(outcome_id=outcome.outcome_id, lookback_days=7)
    job = runner.wait(job_id, timeout=10)

    assert job is not None
    assert job.status == AnalysisJobStatus.COMPLETED
    assert job.progress_message == "Analysis complete"
    assert job.lookback_days == 7
    assert job.started_at is not None
    assert job.completed_at is not None
    assert job.result is not None
    assert job.result["message"] == (
        "Analyzed 3 escalation(s), identified 1 pattern cluster(s), "
        "and generated 1 improvement proposal(s)."
    )
    assert job.result["clusters"][0]["trigger_types"] == ["unclear_requirement"]
    assert job.result["proposals"][0]["outcome_name"] == "Fix specs"
    assert analyzers[0].seen_progress == [
        "Fetching escalations from the last 7 days...",
        "Clustering 3 escalation(s) by root cause...",
    ]
    events = [item.event for item in repository.list_activity(outcome.outcome_id)]
    assert events == [ActivityEvent.ANALYSIS_COMPLETED, ActivityEvent.ANALYSIS_STARTED]
    assert runner.has_active_analysis() is False
    assert [item.job_id for item in runner.get_recent_analysis_jobs()] == [job_id]


def test_failing_analyzer_fails_the_job(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    runner = AnalysisJobRunner(
        repository,
        analyzer_factory=lambda repo: RecordingAnalyzer(repo, RuntimeError("clustering down")),
    )

    job = runner.wait(runner.start_background_analysis(outcome_id=outcome.outcome_id), timeout=10)

    assert job is not None
    assert job.status == AnalysisJobStatus.FAILED
    assert job.error == "clustering down"
    assert job.progress_message == "Analysis failed"
    logged = repository.list_activity(outcome.outcome_id)[0]
    assert logged.event == ActivityEvent.ANALYSIS_FAILED
    assert logged.summary == "Improvement analysis failed: clustering down"


def test_stale_jobs_are_failed_on_recovery(repository: HomrRepository) -> None:
    stale = repository.create_analysis_job(
        outcome_id=None,
        lookback_days=30,
        max_proposals=5,
        progress_message="Queued for analysis...",
    )
    runner = AnalysisJobRunner(
        repository,
        analyzer_factory=lambda repo: RecordingAnalyzer(repo, _analysis(escalations=0)),
    )
    assert runner.has_active_analysis() is True

    assert runner.recover_stale_jobs() == 1

    recovered = runner.get_job_status(stale.job_id)
    assert recovered is not None
    assert recovered.status == AnalysisJobStatus.FAILED
    assert recovered.error == STALE_JOB_ERROR
    assert runner.get_active_analysis_jobs() == []
    assert runner.recover_stale_jobs() == 0


@pytest.mark.parametrize(
    ("escalations", "clusters", "proposals", "expected"),
    [
        (0, 0, 0, "No escalations found for analysis."),
        (4, 0, 0, "Analyzed 4 escalation(s) but no recurring patterns were identified."),
        (4, 2, 0, "Identified 2 cluster(s) from 4 escalation(s), but could not generate"),
        (4, 2, 1, "Analyzed 4 escalation(s), identified 2 pattern cluster(s), and generated 1"),
    ],
)
def test_result_message_variants(
    escalations: int,
    clusters: int,
    proposals: int,
    expected: str,
) -> None:
    message = result_message(
        _analysis(escalations=escalations, clusters=clusters, proposals=proposals),
    )

    assert message.startswith(expected)


def test_result_message_mentions_created_outcomes(outcome: OutcomeView) -> None:
    message = result_message(
        _analysis(escalations=2, clusters=1, proposals=1, created=[outcome]),
    )

    assert message.endswith("Created 1 improvement outcome(s).")


def test_completion_analyzer_clusters_proposes_and_creates_outcome(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    escalation_ids = _escalations(repository, outcome, 3)
    backend.push(
        f"Here you go:\n{json.dumps(CLUSTER_RESPONSE)}",
        PROPOSAL_RESPONSE,
    )
    analyzer = CompletionImprovementAnalyzer(repository, backend)
    progress: list[str] = []

    result = analyzer.analyze(
        lookback_days=30,
        outcome_id=outcome.outcome_id,
        max_proposals=5,
        on_progress=progress.append,
        auto_create_outcomes=True,
    )

    assert result.escalations_analyzed == 3
    assert [cluster.root_cause for cluster in result.clusters] == ["missing_refund_spec"]
    assert result.clusters[0].severity == ClusterSeverity.HIGH
    assert sorted(item.escalation_id for item in result.clusters[0].escalations) == sorted(
        escalation_ids,
    )
    assert progress == [
        "Clustering 3 escalation(s) by root cause...",
        "Generating improvement proposals for 1 cluster(s)...",
    ]
    proposal = result.proposals[0]
    assert [task.title for task in proposal.tasks] == ["Draft refund policy"]
    assert proposal.intent.items[0].priority == "high"
    created = result.outcomes_created[0]
    assert created.name == "Document refund rules"
    assert [task.title for task in repository.list_tasks(created.outcome_id)] == [
        "Draft refund policy",
    ]
    since = datetime.now(UTC) - timedelta(days=1)
    assert repository.list_unincorporated_escalations(since=since) == []
    assert "Checkout service" in backend.requests[0].prompt


def test_completion_analyzer_needs_enough_escalations(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    _escalations(repository, outcome, 1)

    result = CompletionImprovementAnalyzer(repository, backend).analyze(
        lookback_days=30,
        outcome_id=None,
        max_proposals=5,
    )

    assert result.escalations_analyzed == 1
    assert result.clusters == []
    assert backend.requests == []


def test_unparseable_proposal_is_dropped(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    _escalations(repository, outcome, 3)
    backend.push(CLUSTER_RESPONSE, '{"outcome_name": "Half a plan"}')

    result = CompletionImprovementAnalyzer(repository, backend).analyze(
        lookback_days=30,
        outcome_id=outcome.outcome_id,
        max_proposals=5,
    )

    assert len(result.clusters) == 1
    assert result.proposals == []
    assert result.outcomes_created == []


def test_sort_clusters_orders_by_severity_then_size() -> None:
    low = _cluster(ClusterSeverity.LOW, size=9, root_cause="low")
    high_small = _cluster(ClusterSeverity.HIGH, size=2, root_cause="high_small")
    high_big = _cluster(ClusterSeverity.HIGH, size=5, root_cause="high_big")
    critical = _cluster(ClusterSeverity.CRITICAL, size=2, root_cause="critical")

    ordered = sort_clusters([low, high_small, critical, high_big])

    assert [cluster.root_cause for cluster in ordered] == [
        "critical",
        "high_big",
        "high_small",
        "low",
    ]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"a": 1}', {"a": 1}),
        ('Result:\n{"a": [1, 2]}\nDone', {"a": [1, 2]}),
        ("[1, 2]", [1, 2]),
        ("no json here", None),
        ("{broken", None),
    ],
)
def test_extract_json(text: str, expected: object) -> None:
    assert extract_json(text) == expected


def test_explicit_zero_lookback_is_kept(repository: HomrRepository, outcome: OutcomeView) -> None:
    runner = AnalysisJobRunner(
        repository,
        analyzer_factory=lambda repo: RecordingAnalyzer(repo, _analysis(escalations=0)),
    )

    job = runner.wait(
        runner.start_background_analysis(
            outcome_id=outcome.outcome_id,
            lookback_days=0,
            max_proposals=0,
        ),
        timeout=10,
    )

    assert job is not None
    assert job.status == AnalysisJobStatus.COMPLETED
    assert (job.lookback_days, job.max_proposals) == (0, 0)
