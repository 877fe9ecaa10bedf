"""Cluster escalations by root cause and propose improvement outcomes."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from homr.orchestrator.backend.base import CompletionBackend, CompletionRequest
from homr.orchestrator.contracts import dump_json
from homr.orchestrator.models import (
    EscalationView,
    IntentItem,
    OutcomeCreate,
    OutcomeIntent,
    OutcomeView,
    TaskCreate,
)
from homr.orchestrator.prompts import CLUSTER_PROMPT, PROPOSAL_PROMPT
from homr.orchestrator.repository import HomrRepository
from homr.storage.database import utc_now

logger = logging.getLogger(__name__)

MIN_CLUSTER_SIZE = 2
MAX_CLUSTERS = 5
FETCH_LIMIT = 100
_CLUSTER_MAX_TURNS = 3
_PROPOSAL_MAX_TURNS = 3
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

ProgressCallback = Callable[[str], object]


class ClusterSeverity(str, Enum):
    """Impact of a recurring escalation pattern."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_SEVERITY_ORDER = {
    ClusterSeverity.CRITICAL: 0,
    ClusterSeverity.HIGH: 1,
    ClusterSeverity.MEDIUM: 2,
    ClusterSeverity.LOW: 3,
}


@dataclass(slots=True)
class EscalationCluster:
    """Escalations sharing one root cause."""

    cluster_id: str
    root_cause: str
    pattern_description: str
    problem_statement: str
    severity: ClusterSeverity
    escalations: list[EscalationView] = field(default_factory=list)


@dataclass(slots=True)
class ProposedTask:
    title: str
    description: str
    priority: int = 100


@dataclass(slots=True)
class ProposalApproach:
    summary: str
    steps: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ImprovementProposal:
    """Outcome draft that would remove one escalation cluster."""

    cluster: EscalationCluster
    outcome_name: str
    intent: OutcomeIntent
    approach: ProposalApproach
    tasks: list[ProposedTask] = field(default_factory=list)


@dataclass(slots=True)
class AnalysisResult:
    escalations_analyzed: int
    clusters: list[EscalationCluster]
    proposals: list[ImprovementProposal]
    analyzed_at: datetime
    outcomes_created: list[OutcomeView] = field(default_factory=list)


class ImprovementAnalyzer(Protocol):
    """Protocol implemented by escalation clustering capabilities."""

    def analyze(
        self,
        *,
        lookback_days: int,
        outcome_id: str | None,
        max_proposals: int,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisResult:
        """Cluster recent escalations and draft up to ``max_proposals`` fixes."""


def extract_json(text: str) -> Any:
    """Parse the text as JSON, else its outermost ``{...}`` block, else ``None``."""

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if match is None:
            return None
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            return None


def sort_clusters(clusters: list[EscalationCluster]) -> list[EscalationCluster]:
    """Most severe first; larger clusters first within one severity."""

    return sorted(
        clusters,
        key=lambda cluster: (_SEVERITY_ORDER[cluster.severity], -len(cluster.escalations)),
    )


class CompletionImprovementAnalyzer:
    """Analyzer that asks the completion service to cluster and propose."""

    def __init__(
        self,
        repository: HomrRepository,
        backend: CompletionBackend,
        *,
        cluster_timeout_seconds: int = 60,
        proposal_timeout_seconds: int = 90,
        min_cluster_size: int = MIN_CLUSTER_SIZE,
        max_clusters: int = MAX_CLUSTERS,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.cluster_timeout_seconds = cluster_timeout_seconds
        self.proposal_timeout_seconds = proposal_timeout_seconds
        self.min_cluster_size = min_cluster_size
        self.max_clusters = max_clusters

    def analyze(
        self,
        *,
        lookback_days: int,
        outcome_id: str | None,
        max_proposals: int,
        on_progress: ProgressCallback | None = None,
        auto_create_outcomes: bool = False,
    ) -> AnalysisResult:
        progress = on_progress or (lambda _message: None)
        escalations = self.repository.list_unincorporated_escalations(
            since=utc_now() - timedelta(days=lookback_days),
            outcome_id=outcome_id,
            limit=FETCH_LIMIT,
        )
        if not escalations:
            logger.info("No escalations found for analysis")
            return AnalysisResult(
                escalations_analyzed=0,
                clusters=[],
                proposals=[],
                analyzed_at=utc_now(),
            )

        progress(f"Clustering {len(escalations)} escalation(s) by root cause...")
        clusters = sort_clusters(self.cluster(escalations))
        if not clusters:
            return AnalysisResult(
                escalations_analyzed=len(escalations),
                clusters=[],
                proposals=[],
                analyzed_at=utc_now(),
            )

        selected = clusters[:max_proposals]
        progress(f"Generating improvement proposals for {len(selected)} cluster(s)...")
        proposals: list[ImprovementProposal] = []
        for cluster in selected:
            proposal = self.propose(cluster)
            if proposal is not None:
                proposals.append(proposal)

        created = (
            [self.create_improvement_outcome(proposal) for proposal in proposals]
            if auto_create_outcomes
            else []
        )
        return AnalysisResult(
            escalations_analyzed=len(escalations),
            clusters=clusters,
            proposals=proposals,
            analyzed_at=utc_now(),
            outcomes_created=created,
        )

    def cluster(self, escalations: list[EscalationView]) -> list[EscalationCluster]:
        if len(escalations) < self.min_cluster_size:
            logger.info(
                "Not enough escalations to cluster (%d < %d)",
                len(escalations),
                self.min_cluster_size,
            )
            return []

        outcome_names: dict[str, str] = {}
        summaries = []
        for index, escalation in enumerate(escalations):
            if escalation.outcome_id not in outcome_names:
                outcome = self.repository.get_outcome(escalation.outcome_id)
                outcome_names[escalation.outcome_id] = outcome.name if outcome else "Unknown"
            summaries.append(
                {
                    "index": index,
                    "type": escalation.trigger_type,
                    "question": escalation.question_text,
                    "context": escalation.question_context[:500],
                    "evidence": escalation.trigger_evidence[:3],
                    "outcome": outcome_names[escalation.outcome_id],
                    "answer": escalation.answer_option or "Unanswered",
                },
            )

        response = self.backend.complete(
            CompletionRequest(
                prompt=CLUSTER_PROMPT.format(
                    escalations=json.dumps(summaries, indent=2, ensure_ascii=False),
                    min_cluster_size=self.min_cluster_size,
                ),
                max_turns=_CLUSTER_MAX_TURNS,
                timeout_seconds=self.cluster_timeout_seconds,
                metadata={"description": "Improvement analyzer - clustering escalations"},
            ),
        )
        if not response.success or not response.text:
            logger.warning("Escalation clustering failed: %s", response.error)
            return []
        parsed = extract_json(response.text)
        if not isinstance(parsed, dict) or not isinstance(parsed.get("clusters"), list):
            logger.warning("Failed to parse clustering response")
            return []

        clusters: list[EscalationCluster] = []
        for raw in parsed["clusters"][: self.max_clusters]:
            if not isinstance(raw, dict):
                continue
            indices = raw.get("escalation_indices")
            members = [
                escalations[index]
                for index in (indices if isinstance(indices, list) else [])
                if isinstance(index, int) and 0 <= index < len(escalations)
            ]
            if len(members) < self.min_cluster_size:
                continue
            clusters.append(
                EscalationCluster(
                    cluster_id=f"cluster_{uuid4().hex[:16]}",
                    root_cause=str(raw.get("root_cause") or "unknown"),
                    pattern_description=str(raw.get("pattern_description") or ""),
                    problem_statement=str(raw.get("problem_statement") or ""),
                    severity=_parse_severity(raw.get("severity")),
                    escalations=members,
                ),
            )
        logger.info(
            "Identified %d clusters from %d escalations",
            len(clusters),
            len(escalations),
        )
        return clusters

    def propose(self, cluster: EscalationCluster) -> ImprovementProposal | None:
        examples = "\n\n".join(
            f"- Type: {escalation.trigger_type}\n"
            f"  Question: {escalation.question_text}\n"
            f"  Answer: {escalation.answer_option or 'Unanswered'}"
            for escalation in cluster.escalations
        )
        response = self.backend.complete(
            CompletionRequest(
                prompt=PROPOSAL_PROMPT.format(
                    root_cause=cluster.root_cause,
                    pattern_description=cluster.pattern_description,
                    problem_statement=cluster.problem_statement,
                    severity=cluster.severity.value,
                    occurrences=len(cluster.escalations),
                    examples=examples,
                ),
                max_turns=_PROPOSAL_MAX_TURNS,
                timeout_seconds=self.proposal_timeout_seconds,
                metadata={
                    "description": (
                        f"Improvement analyzer - generating proposal for {cluster.root_cause}"
                    ),
                },
            ),
        )
        if not response.success or not response.text:
            logger.warning("Proposal generation failed: %s", response.error)
            return None

        parsed = extract_json(response.text)
        if (
            not isinstance(parsed, dict)
            or not isinstance(parsed.get("outcome_name"), str)
            or not isinstance(parsed.get("intent"), dict)
            or not isinstance(parsed.get("approach"), dict)
            or not isinstance(parsed.get("tasks"), list)
        ):
            logger.warning("Failed to parse proposal response for %s", cluster.root_cause)
            return None

        intent = parsed["intent"]
        approach = parsed["approach"]
        return ImprovementProposal(
            cluster=cluster,
            outcome_name=parsed["outcome_name"],
            intent=OutcomeIntent(
                summary=str(intent.get("summary") or ""),
                items=[
                    IntentItem(
                        title=str(item.get("title") or ""),
                        description=str(item.get("description") or ""),
                        priority=str(item.get("priority") or "medium"),
                    )
                    for item in _dicts(intent.get("items"))
                ],
                success_criteria=_strings(intent.get("success_criteria")),
            ),
            approach=ProposalApproach(
                summary=str(approach.get("summary") or ""),
                steps=_strings(approach.get("steps")),
                risks=_strings(approach.get("risks")),
                dependencies=_strings(approach.get("dependencies")),
            ),
            tasks=[
                ProposedTask(
                    title=str(task.get("title") or ""),
                    description=str(task.get("description") or ""),
                    priority=task["priority"]
                    if isinstance(task.get("priority"), int)
                    else 100,
                )
                for task in _dicts(parsed.get("tasks"))
                if task.get("title")
            ],
        )

    def create_improvement_outcome(self, proposal: ImprovementProposal) -> OutcomeView:
        """Materialize a proposal and exclude its escalations from future clustering."""

        approach = proposal.approach
        outcome = self.repository.create_outcome(
            OutcomeCreate(
                name=proposal.outcome_name,
                intent=proposal.intent,
                design_approach=dump_json(
                    {
                        "summary": approach.summary,
                        "steps": approach.steps,
                        "risks": approach.risks,
                        "dependencies": approach.dependencies,
                    },
                ),
            ),
        )
        for task in proposal.tasks:
            self.repository.create_task(
                TaskCreate(
                    outcome_id=outcome.outcome_id,
                    title=task.title,
                    description=task.description,
                    priority=task.priority,
                ),
            )
        self.repository.mark_escalations_incorporated(
            [escalation.escalation_id for escalation in proposal.cluster.escalations],
            outcome_id=outcome.outcome_id,
        )
        logger.info(
            "Created improvement outcome %s for root cause %s",
            outcome.outcome_id,
            proposal.cluster.root_cause,
        )
        return outcome


def _parse_severity(raw: object) -> ClusterSeverity:
    try:
        return ClusterSeverity(str(raw).lower())
    except ValueError:
        return ClusterSeverity.MEDIUM


def _dicts(raw: object) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _strings(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw]
