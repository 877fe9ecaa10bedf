"""Domain models for outcomes, tasks and the HOMR supervisory loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

WILDCARD = "*"
PAUSED_MARKER = "**[PAUSED]**"
SKIPPED_MARKER = "**[SKIPPED BY HUMAN]**"
AUTO_RESOLVED_TAG = "[AUTO-RESOLVED]"
SECTION_SEPARATOR = "\n\n---\n\n"


class OutcomeStatus(str, Enum):
    """Outcome lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    """Worker-executable task lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Quality(str, Enum):
    """Quality tier assigned by the observer."""

    GOOD = "good"
    NEEDS_WORK = "needs_work"
    OFF_RAILS = "off_rails"


class Severity(str, Enum):
    """Severity of drift items and quality issues."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: object) -> Severity:
        """Map loosely typed model output to a severity, defaulting to low."""

        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.LOW
        return cls.LOW


class DiscoveryType(str, Enum):
    """Kinds of cross-task learnings."""

    BLOCKER = "blocker"
    CONSTRAINT = "constraint"
    DEPENDENCY = "dependency"
    DECISION = "decision"
    PATTERN = "pattern"
    OTHER = "other"

    @classmethod
    def parse(cls, value: object) -> DiscoveryType:
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.OTHER
        return cls.OTHER


class AmbiguityType(str, Enum):
    """Kinds of ambiguity that warrant a human decision."""

    UNCLEAR_REQUIREMENT = "unclear_requirement"
    MULTIPLE_APPROACHES = "multiple_approaches"
    BLOCKING_DECISION = "blocking_decision"
    CONTRADICTING_INFO = "contradicting_info"


class InjectionPriority(str, Enum):
    """How strongly an injected context entry should be surfaced."""

    MUST_KNOW = "must_know"
    SHOULD_KNOW = "should_know"
    NICE_TO_KNOW = "nice_to_know"


class InjectionType(str, Enum):
    """Origin category of an injected context entry."""

    DISCOVERY = "discovery"
    WARNING = "warning"
    DECISION = "decision"


class DecisionMaker(str, Enum):
    """Provenance of a recorded decision."""

    HUMAN = "human"
    WORKER = "worker"
    HOMR = "homr"


class ContextEntryKind(str, Enum):
    """Collections held by the per-outcome context store."""

    DISCOVERY = "discovery"
    DECISION = "decision"
    CONSTRAINT = "constraint"
    INJECTION = "injection"


class EscalationStatus(str, Enum):
    """Escalation lifecycle; answered and dismissed are terminal."""

    PENDING = "pending"
    ANSWERED = "answered"
    DISMISSED = "dismissed"


class EscalationAction(str, Enum):
    """Typed action attached to a question option."""

    INCREASE_TURN_LIMIT = "increase_turn_limit"
    BREAK_INTO_SUBTASKS = "break_into_subtasks"
    SKIP_FAILING_TASKS = "skip_failing_tasks"

    @classmethod
    def infer(cls, option_id: str) -> EscalationAction | None:
        """Tag an option that arrived without an action from its id."""

        lowered = option_id.lower()
        if any(token in lowered for token in ("increase_turn", "more_turns", "extend_limit")):
            return cls.INCREASE_TURN_LIMIT
        if any(token in lowered for token in ("break_into", "subtask", "decompose", "split")):
            return cls.BREAK_INTO_SUBTASKS
        if any(token in lowered for token in ("skip", "abandon", "fail")):
            return cls.SKIP_FAILING_TASKS
        return None


class AutoResolveMode(str, Enum):
    """Per-outcome auto-resolve policy."""

    MANUAL = "manual"
    SEMI_AUTO = "semi-auto"
    FULL_AUTO = "full-auto"


class EscalationCategory(str, Enum):
    """Keyword classification used by auto-resolve heuristics."""

    COMPLEXITY = "complexity"
    FAILURE = "failure"
    AMBIGUITY = "ambiguity"
    SECURITY = "security"
    UNKNOWN = "unknown"


class FailurePattern(str, Enum):
    """Multi-observation failure patterns."""

    CONSECUTIVE_FAILURES = "consecutive_failures"
    DECLINING_QUALITY = "declining_quality"
    REPEATED_DRIFT = "repeated_drift"


class FailureRecommendation(str, Enum):
    """What the control loop should do about a failure pattern."""

    CONTINUE = "continue"
    PAUSE_FOR_REVIEW = "pause_for_review"
    ESCALATE = "escalate"


class SteeringActionType(str, Enum):
    """Steering action variants."""

    INJECT_CONTEXT = "inject_context"
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    UPDATE_PRIORITY = "update_priority"
    MARK_OBSOLETE = "mark_obsolete"


class AnalysisJobStatus(str, Enum):
    """Improvement analysis job lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivityType(str, Enum):
    """Filterable activity feed categories."""

    OBSERVATION = "observation"
    STEERING = "steering"
    ESCALATION = "escalation"
    RESOLUTION = "resolution"
    AUTO_RESOLVED = "auto_resolved"
    AUTO_RESOLVE_DEFERRED = "auto_resolve_deferred"
    ANALYSIS = "analysis"


class ActivityEvent(str, Enum):
    """Structured activity event kinds; each maps to exactly one feed category."""

    TASK_OBSERVED = "task_observed"
    WORKER_START = "worker_start"
    WORKER_STOP = "worker_stop"
    STEERING_BATCH = "steering_batch"
    CONTEXT_COMPACTION = "context_compaction"
    CORRECTIVE_TASK_INSERTED = "corrective_task_inserted"
    TASK_CHAIN_BLOCKED = "task_chain_blocked"
    ESCALATION_CREATED = "escalation_created"
    FAILURE_PATTERN_DETECTED = "failure_pattern_detected"
    ESCALATION_RESOLVED = "escalation_resolved"
    ESCALATION_DISMISSED = "escalation_dismissed"
    AUTO_RESOLVED = "auto_resolved"
    AUTO_RESOLVE_DEFERRED = "auto_resolve_deferred"
    ANALYSIS_STARTED = "analysis_started"
    ANALYSIS_COMPLETED = "analysis_completed"
    ANALYSIS_FAILED = "analysis_failed"


ACTIVITY_TYPE_BY_EVENT: dict[ActivityEvent, ActivityType] = {
    ActivityEvent.TASK_OBSERVED: ActivityType.OBSERVATION,
    ActivityEvent.WORKER_START: ActivityType.OBSERVATION,
    ActivityEvent.WORKER_STOP: ActivityType.OBSERVATION,
    ActivityEvent.STEERING_BATCH: ActivityType.STEERING,
    ActivityEvent.CONTEXT_COMPACTION: ActivityType.STEERING,
    ActivityEvent.CORRECTIVE_TASK_INSERTED: ActivityType.STEERING,
    ActivityEvent.TASK_CHAIN_BLOCKED: ActivityType.STEERING,
    ActivityEvent.ESCALATION_CREATED: ActivityType.ESCALATION,
    ActivityEvent.FAILURE_PATTERN_DETECTED: ActivityType.ESCALATION,
    ActivityEvent.ESCALATION_RESOLVED: ActivityType.RESOLUTION,
    ActivityEvent.ESCALATION_DISMISSED: ActivityType.RESOLUTION,
    ActivityEvent.AUTO_RESOLVED: ActivityType.AUTO_RESOLVED,
    ActivityEvent.AUTO_RESOLVE_DEFERRED: ActivityType.AUTO_RESOLVE_DEFERRED,
    ActivityEvent.ANALYSIS_STARTED: ActivityType.ANALYSIS,
    ActivityEvent.ANALYSIS_COMPLETED: ActivityType.ANALYSIS,
    ActivityEvent.ANALYSIS_FAILED: ActivityType.ANALYSIS,
}


class EscalationError(ValueError):
    """Unknown escalation, non-pending escalation or invalid option."""


class TaskNotFoundError(ValueError):
    """Referenced task does not exist."""


class OutcomeNotFoundError(ValueError):
    """Referenced outcome does not exist."""


@dataclass(slots=True)
class IntentItem:
    """One requirement of an outcome's intent."""

    title: str
    description: str = ""
    priority: str = "medium"


@dataclass(slots=True)
class OutcomeIntent:
    """What the outcome is trying to achieve."""

    summary: str
    items: list[IntentItem] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OutcomeCreate:
    """Input payload for creating an outcome."""

    name: str
    outcome_id: str | None = None
    intent: OutcomeIntent | None = None
    design_approach: str | None = None
    homr_enabled: bool = True


@dataclass(slots=True)
class OutcomeView:
    """Readable outcome view."""

    outcome_id: str
    name: str
    status: OutcomeStatus
    intent: OutcomeIntent | None
    design_approach: str | None
    homr_enabled: bool
    auto_resolve_mode: AutoResolveMode
    auto_resolve_threshold: float
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    outcome_id: str
    title: str
    description: str = ""
    task_id: str | None = None
    priority: int = 100
    max_attempts: int = 3
    depends_on: list[str] = field(default_factory=list)
    phase: str = "execution"
    decomposed_from_task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for the control loop and CLI."""

    task_id: str
    outcome_id: str
    title: str
    description: str
    status: TaskStatus
    priority: int
    attempts: int
    max_attempts: int
    depends_on: list[str]
    phase: str
    decomposed_from_task_id: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_paused(self) -> bool:
        return self.description.startswith(PAUSED_MARKER)


def strip_pause_marker(description: str) -> str:
    """Drop the pause notice and its separator, keeping the original description."""

    if not description.startswith(PAUSED_MARKER):
        return description
    _, separator, rest = description.partition(SECTION_SEPARATOR)
    return rest.strip() if separator else ""


@dataclass(slots=True)
class WorkerView:
    """Readable worker view."""

    worker_id: str
    outcome_id: str
    status: WorkerStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class DriftItem:
    """Detected deviation of completed work from intent or design."""

    type: str
    description: str
    severity: Severity
    evidence: str = ""


@dataclass(slots=True)
class Discovery:
    """A learning from one task relevant to other tasks."""

    type: DiscoveryType
    content: str
    relevant_tasks: list[str] = field(default_factory=list)
    source: str = ""
    entry_id: str | None = None

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.relevant_tasks


@dataclass(slots=True)
class QualityIssue:
    """Quality problem spotted in a task's output."""

    type: str
    description: str
    severity: Severity


@dataclass(slots=True)
class QuestionOption:
    """One answerable option of an escalation question."""

    id: str
    label: str
    description: str = ""
    implications: str = ""
    action: EscalationAction | None = None


@dataclass(slots=True)
class AmbiguitySignal:
    """Normalized ambiguity detected in a task's output."""

    type: AmbiguityType
    description: str
    evidence: list[str] = field(default_factory=list)
    affected_tasks: list[str] = field(default_factory=list)
    suggested_question: str = ""
    options: list[QuestionOption] = field(default_factory=list)


@dataclass(slots=True)
class Observation:
    """Immutable result of observing exactly one task."""

    task_id: str
    outcome_id: str
    on_track: bool
    alignment_score: int
    quality: Quality
    drift: list[DriftItem] = field(default_factory=list)
    discoveries: list[Discovery] = field(default_factory=list)
    issues: list[QualityIssue] = field(default_factory=list)
    ambiguity: AmbiguitySignal | None = None
    summary: str = ""
    observation_id: int | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class Decision:
    """Decision recorded in the context store."""

    decision_id: str
    content: str
    made_by: DecisionMaker
    made_at: datetime
    context: str = ""
    affected_areas: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Constraint:
    """Constraint recorded in the context store."""

    constraint_id: str
    type: str
    content: str
    source: str
    discovered_at: datetime
    active: bool = True


@dataclass(slots=True)
class ContextInjection:
    """Content pushed into one task's (or every task's) execution context."""

    injection_id: str
    type: InjectionType
    content: str
    source: str
    priority: InjectionPriority
    target_task_id: str
    created_at: datetime


@dataclass(slots=True)
class ContextStats:
    """Monotonic per-outcome counters."""

    tasks_observed: int = 0
    discoveries_extracted: int = 0
    escalations_created: int = 0
    steering_actions: int = 0


@dataclass(slots=True)
class ContextSnapshot:
    """Full view of one outcome's context store."""

    outcome_id: str
    discoveries: list[Discovery]
    decisions: list[Decision]
    constraints: list[Constraint]
    injections: list[ContextInjection]
    stats: ContextStats


@dataclass(slots=True)
class TaskContext:
    """Context entries relevant to one task."""

    discoveries: list[Discovery] = field(default_factory=list)
    injections: list[ContextInjection] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)


@dataclass(slots=True)
class EscalationCreate:
    """Input payload for persisting an escalation."""

    outcome_id: str
    trigger_type: str
    trigger_task_id: str | None
    trigger_evidence: list[str]
    question_text: str
    question_context: str
    options: list[QuestionOption]
    affected_tasks: list[str]


@dataclass(slots=True)
class EscalationView:
    """Readable escalation view."""

    escalation_id: str
    outcome_id: str
    status: EscalationStatus
    trigger_type: str
    trigger_task_id: str | None
    trigger_evidence: list[str]
    question_text: str
    question_context: str
    options: list[QuestionOption]
    affected_tasks: list[str]
    answer_option: str | None
    answer_context: str | None
    answered_at: datetime | None
    incorporated_into_outcome_id: str | None
    created_at: datetime

    def option(self, option_id: str) -> QuestionOption | None:
        for candidate in self.options:
            if candidate.id == option_id:
                return candidate
        return None


@dataclass(slots=True)
class EscalationAnswer:
    """Answer to an escalation question."""

    selected_option: str
    additional_context: str | None = None


@dataclass(slots=True)
class EscalationActionResult:
    """Per-task outcome of applying one escalation action."""

    action: EscalationAction
    task_id: str
    success: bool
    previous_value: int | None = None
    new_value: int | None = None
    created_task_ids: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class AnswerPattern:
    """How often an answer was chosen for a trigger type."""

    trigger_type: str
    option_id: str
    count: int


@dataclass(slots=True)
class EscalationResolution:
    """Result of resolving an escalation."""

    escalation_id: str
    selected_option: QuestionOption
    resumed_tasks: list[str]
    injected_context: str
    applied_actions: list[EscalationActionResult]
    stored_pattern: AnswerPattern


@dataclass(slots=True)
class FailurePatternResult:
    """Multi-observation failure analysis."""

    detected: bool
    pattern: FailurePattern | None
    consecutive_failures: int
    recent_quality: list[Quality]
    average_alignment: float
    recommendation: FailureRecommendation
    evidence: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DependencyModificationResult:
    """Outcome of a dependency graph mutation."""

    success: bool
    affected_tasks: list[str] = field(default_factory=list)
    task_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class SteeringAction:
    """One steering action; fields beyond type/reason depend on the variant."""

    type: SteeringActionType
    reason: str
    task_ids: list[str] = field(default_factory=list)
    injection: ContextInjection | None = None
    task_id: str | None = None
    new_task: TaskCreate | None = None
    additions: str = ""
    new_priority: int | None = None


@dataclass(slots=True)
class SteeringResult:
    """Actions executed after one observation."""

    actions: list[SteeringAction]
    summary: str


@dataclass(slots=True)
class AutoResolveConfig:
    """Per-outcome auto-resolve configuration."""

    mode: AutoResolveMode = AutoResolveMode.MANUAL
    confidence_threshold: float = 0.8


@dataclass(slots=True)
class AutoResolveDecision:
    """Heuristic or model judgment about one escalation."""

    should_auto_resolve: bool
    selected_option: str | None
    reasoning: str
    confidence: float


@dataclass(slots=True)
class AutoResolveOutcome:
    """Result of one auto-resolve attempt."""

    resolved: bool
    decision: AutoResolveDecision
    resolution: EscalationResolution | None = None


@dataclass(slots=True)
class AutoResolveItem:
    """Per-escalation entry of a batch auto-resolve run."""

    escalation_id: str
    resolved: bool
    reasoning: str


@dataclass(slots=True)
class AutoResolveBatchResult:
    """Aggregate result of auto-resolving every pending escalation."""

    total: int
    resolved: int
    deferred: int
    results: list[AutoResolveItem] = field(default_factory=list)


@dataclass(slots=True)
class ActivityView:
    """One activity feed entry."""

    activity_id: int
    outcome_id: str
    type: ActivityType
    event: ActivityEvent
    summary: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AnalysisJobView:
    """Persisted improvement analysis job state."""

    job_id: str
    outcome_id: str | None
    job_type: str
    status: AnalysisJobStatus
    progress_message: str | None
    lookback_days: int
    max_proposals: int
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class HomrStatus:
    """Per-outcome supervision summary."""

    outcome_id: str
    enabled: bool
    discoveries: int
    decisions: int
    constraints: int
    stats: ContextStats
    pending_escalations: int
    recent_activity: list[ActivityView] = field(default_factory=list)
