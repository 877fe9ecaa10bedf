"""Observe completed task output and detect failure patterns across observations."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from homr.config import FailurePatternSettings
from homr.orchestrator.ambiguity import detect_ambiguity_patterns, suggested_question
from homr.orchestrator.backend.base import CompletionBackend, CompletionRequest
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.models import (
    ActivityEvent,
    AmbiguitySignal,
    AmbiguityType,
    Discovery,
    DiscoveryType,
    EscalationAction,
    FailurePattern,
    FailurePatternResult,
    FailureRecommendation,
    Observation,
    OutcomeIntent,
    Quality,
    QualityIssue,
    QuestionOption,
    Severity,
    TaskView,
)
from homr.orchestrator.prompts import (
    OBSERVER_SYSTEM_PROMPT,
    ObservationResponse,
    build_observation_prompt,
    parse_observation_response,
)
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)

MAX_FAILURE_EVIDENCE = 5
_QUALITY_RANK = {Quality.GOOD: 3, Quality.NEEDS_WORK: 2, Quality.OFF_RAILS: 1}
_TURN_LIMIT_HINTS = ("turn", "max_turns", "iteration")

_PATTERN_DESCRIPTIONS = {
    FailurePattern.DECLINING_QUALITY: "Work quality is declining across recent tasks",
    FailurePattern.REPEATED_DRIFT: "The same type of drift keeps occurring across tasks",
}
_PATTERN_QUESTIONS = {
    FailurePattern.CONSECUTIVE_FAILURES: (
        "Multiple tasks are failing. Should we pause work for review, or continue?"
    ),
    FailurePattern.DECLINING_QUALITY: (
        "Work quality is declining. Should we pause to reassess the approach?"
    ),
    FailurePattern.REPEATED_DRIFT: "A recurring issue is causing drift. How should we address it?",
}


class Observer:
    """Analyze one completed task with the completion backend."""

    def __init__(
        self,
        repository: HomrRepository,
        context_store: ContextStore,
        backend: CompletionBackend,
        *,
        output_max_chars: int = 50_000,
        timeout_seconds: int = 60,
        failure_settings: FailurePatternSettings | None = None,
    ) -> None:
        self.repository = repository
        self.context_store = context_store
        self.backend = backend
        self.output_max_chars = output_max_chars
        self.timeout_seconds = timeout_seconds
        self.failure_settings = failure_settings or FailurePatternSettings()

    def observe(
        self,
        task: TaskView,
        full_output: str,
        *,
        intent: OutcomeIntent | None = None,
        design_approach: str | None = None,
    ) -> Observation | None:
        """Analyze and persist; ``None`` means nothing was observed or stored."""

        observation = self.analyze(
            task,
            full_output,
            intent=intent,
            design_approach=design_approach,
        )
        if observation is None:
            return None
        return self.persist_observation(observation, task_title=task.title)

    def analyze(
        self,
        task: TaskView,
        full_output: str,
        *,
        intent: OutcomeIntent | None = None,
        design_approach: str | None = None,
    ) -> Observation | None:
        if intent is None or design_approach is None:
            outcome = self.repository.get_outcome(task.outcome_id)
            if outcome is not None:
                intent = intent if intent is not None else outcome.intent
                design_approach = (
                    design_approach if design_approach is not None else outcome.design_approach
                )

        prompt = build_observation_prompt(
            task=task,
            full_output=full_output,
            intent=intent,
            design_approach=design_approach,
            snapshot=self.context_store.get_snapshot(task.outcome_id),
            output_max_chars=self.output_max_chars,
        )
        logger.info("Analyzing task %s: %s", task.task_id, task.title)
        response = self.backend.complete(
            CompletionRequest(
                prompt=prompt,
                system_prompt=OBSERVER_SYSTEM_PROMPT,
                max_turns=1,
                timeout_seconds=self.timeout_seconds,
                metadata={
                    "outcome_id": task.outcome_id,
                    "description": f"HOMR observation for task: {task.title}",
                },
            ),
        )
        if not response.success or not response.text:
            logger.warning("Observation call failed for task %s: %s", task.task_id, response.error)
            return None

        parsed = parse_observation_response(response.text)
        if parsed is None:
            logger.warning("Discarding unparseable observation for task %s", task.task_id)
            return None
        return _to_observation(parsed, task=task, full_output=full_output)

    def persist_observation(self, observation: Observation, *, task_title: str = "") -> Observation:
        """Store the observation, feed its discoveries to the context store and log it."""

        stored = self.repository.create_observation(observation)
        self.context_store.add_discoveries(observation.outcome_id, observation.discoveries)
        self.repository.log_activity(
            observation.outcome_id,
            event=ActivityEvent.TASK_OBSERVED,
            summary=observation.summary,
            details={
                "task_id": observation.task_id,
                "task_title": task_title,
                "on_track": observation.on_track,
                "alignment_score": observation.alignment_score,
                "quality": observation.quality.value,
                "drift_count": len(observation.drift),
                "discovery_count": len(observation.discoveries),
                "has_ambiguity": observation.ambiguity is not None,
            },
        )
        logger.info(
            "Task %s observed: on_track=%s alignment=%d quality=%s discoveries=%d ambiguity=%s",
            observation.task_id,
            observation.on_track,
            observation.alignment_score,
            observation.quality.value,
            len(observation.discoveries),
            observation.ambiguity is not None,
        )
        return stored

    def quick_observe(self, task: TaskView, *, success: bool) -> Observation:
        """Canned observation from the worker's success flag; no model call."""

        observation = Observation(
            task_id=task.task_id,
            outcome_id=task.outcome_id,
            on_track=success,
            alignment_score=80 if success else 40,
            quality=Quality.GOOD if success else Quality.NEEDS_WORK,
            issues=[]
            if success
            else [
                QualityIssue(
                    type="task_failure",
                    description="Task did not complete successfully",
                    severity=Severity.MEDIUM,
                ),
            ],
            summary=f'Task "{task.title}" completed successfully.'
            if success
            else f'Task "{task.title}" failed or had issues.',
        )
        return self.repository.create_observation(observation)

    def detect_failure_patterns(
        self,
        observation: Observation,
        *,
        settings: FailurePatternSettings | None = None,
    ) -> FailurePatternResult:
        """Classify the recent observation window of the outcome.

        The window is the current observation followed by up to ``lookback``
        earlier ones, newest first.
        """

        config = settings or self.failure_settings
        recent = self.repository.get_recent_observations(
            observation.outcome_id,
            limit=config.lookback,
            exclude_id=observation.observation_id,
        )
        window = [observation, *recent]

        evidence: list[str] = []
        consecutive_failures = 0
        for item in window:
            healthy = (
                item.on_track
                and item.alignment_score >= config.healthy_alignment
                and item.quality != Quality.OFF_RAILS
            )
            if healthy:
                break
            consecutive_failures += 1
            state = "low alignment" if item.on_track else "off track"
            evidence.append(f'Task {state}: "{item.summary}"')

        average_alignment = sum(item.alignment_score for item in window) / len(window)
        recent_quality = [item.quality for item in window]
        ranks = [_QUALITY_RANK[quality] for quality in recent_quality]
        declining = len(ranks) >= 3 and ranks[0] < ranks[1] < ranks[2]  # noqa: PLR2004

        drift_types = Counter(drift.type for item in window for drift in item.drift)
        repeated_drift = next(
            (drift_type for drift_type, count in drift_types.items() if count > 1),
            None,
        )

        pattern: FailurePattern | None = None
        recommendation = FailureRecommendation.CONTINUE
        if consecutive_failures >= config.consecutive_failure_threshold:
            pattern = FailurePattern.CONSECUTIVE_FAILURES
            recommendation = FailureRecommendation.ESCALATE
        elif declining:
            pattern = FailurePattern.DECLINING_QUALITY
            recommendation = FailureRecommendation.PAUSE_FOR_REVIEW
        elif repeated_drift is not None:
            pattern = FailurePattern.REPEATED_DRIFT
            recommendation = FailureRecommendation.PAUSE_FOR_REVIEW
            evidence.append(f"Repeated drift type: {repeated_drift}")

        return FailurePatternResult(
            detected=pattern is not None,
            pattern=pattern,
            consecutive_failures=consecutive_failures,
            recent_quality=recent_quality,
            average_alignment=average_alignment,
            recommendation=recommendation,
            evidence=evidence[:MAX_FAILURE_EVIDENCE],
        )


def create_failure_pattern_ambiguity(
    result: FailurePatternResult,
    task: TaskView,
) -> AmbiguitySignal:
    """Express a failure pattern as a blocking decision the escalator can ask about."""

    evidence_text = " ".join(result.evidence).lower()
    turn_limit_issue = any(hint in evidence_text for hint in _TURN_LIMIT_HINTS)

    options: list[QuestionOption] = []
    if turn_limit_issue:
        options.extend(
            [
                QuestionOption(
                    id="break_into_subtasks",
                    label="Break into Subtasks",
                    description="Split the complex task into smaller, manageable pieces",
                    implications="Task will be decomposed into subtasks that fit the retry budget",
                    action=EscalationAction.BREAK_INTO_SUBTASKS,
                ),
                QuestionOption(
                    id="increase_turn_limit",
                    label="Increase Turn Limit",
                    description="Double the retry budget and retry the task",
                    implications="Worker gets more attempts but the task may still be too complex",
                    action=EscalationAction.INCREASE_TURN_LIMIT,
                ),
            ],
        )
    options.extend(
        [
            QuestionOption(
                id="continue_with_guidance",
                label="Continue with Guidance",
                description="Add specific instructions and let workers retry",
                implications="You'll provide additional context to help workers succeed",
            ),
            QuestionOption(
                id="pause_and_review",
                label="Pause for Review",
                description="Stop all workers and review what went wrong",
                implications="Work will stop until you manually resume after investigation",
            ),
            QuestionOption(
                id="skip_failing_tasks",
                label="Skip Failing Tasks",
                description="Mark stuck tasks as failed and continue with others",
                implications="Some work may be incomplete but progress will continue",
                action=EscalationAction.SKIP_FAILING_TASKS,
            ),
        ],
    )

    if result.pattern == FailurePattern.CONSECUTIVE_FAILURES:
        description = (
            f"{result.consecutive_failures} consecutive tasks have failed or gone off track"
        )
    else:
        description = _PATTERN_DESCRIPTIONS.get(result.pattern, "Work appears to be stuck")

    if turn_limit_issue:
        question = (
            "Tasks are hitting turn limits. Should we break them into smaller pieces "
            "or increase the limit?"
        )
    else:
        question = _PATTERN_QUESTIONS.get(result.pattern, "How should we proceed?")

    return AmbiguitySignal(
        type=AmbiguityType.BLOCKING_DECISION,
        description=description,
        evidence=list(result.evidence),
        affected_tasks=[task.task_id],
        suggested_question=question,
        options=options,
    )


def _to_observation(
    parsed: ObservationResponse,
    *,
    task: TaskView,
    full_output: str,
) -> Observation:
    ambiguity = _ambiguity_from_response(parsed.ambiguity)
    if ambiguity is None:
        ambiguity = detect_ambiguity_patterns(full_output)
    return Observation(
        task_id=task.task_id,
        outcome_id=task.outcome_id,
        on_track=parsed.on_track,
        alignment_score=parsed.alignment_score,
        quality=parsed.quality,
        drift=parsed.drift,
        discoveries=[
            _discovery_from_response(raw, source=task.task_id) for raw in parsed.discoveries
        ],
        issues=parsed.issues,
        ambiguity=ambiguity,
        summary=parsed.summary,
    )


def _discovery_from_response(raw: dict[str, Any], *, source: str) -> Discovery:
    relevant = raw.get("relevantTasks", raw.get("relevant_tasks"))
    return Discovery(
        type=DiscoveryType.parse(raw.get("type")),
        content=str(raw.get("content", "")),
        relevant_tasks=[str(task_id) for task_id in relevant] if isinstance(relevant, list) else [],
        source=source,
    )


def _ambiguity_from_response(raw: dict[str, Any] | None) -> AmbiguitySignal | None:
    if raw is None:
        return None
    try:
        ambiguity_type = AmbiguityType(raw.get("type"))
    except ValueError:
        logger.warning("Ignoring ambiguity with unknown type: %s", raw.get("type"))
        return None
    evidence = raw.get("evidence")
    question = raw.get("suggestedQuestion")
    return AmbiguitySignal(
        type=ambiguity_type,
        description=str(raw.get("description") or ""),
        evidence=[str(item) for item in evidence] if isinstance(evidence, list) else [],
        suggested_question=question
        if isinstance(question, str) and question
        else suggested_question(ambiguity_type),
    )
