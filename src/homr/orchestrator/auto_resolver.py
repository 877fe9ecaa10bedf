"""Confidence-gated automatic resolution of pending escalations."""

from __future__ import annotations

import logging

from homr.orchestrator.backend.base import CompletionBackend, CompletionRequest
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.escalator import Escalator
from homr.orchestrator.models import (
    AUTO_RESOLVED_TAG,
    ActivityEvent,
    AutoResolveBatchResult,
    AutoResolveConfig,
    AutoResolveDecision,
    AutoResolveItem,
    AutoResolveMode,
    AutoResolveOutcome,
    DecisionMaker,
    EscalationAction,
    EscalationAnswer,
    EscalationCategory,
    EscalationError,
    EscalationStatus,
    EscalationView,
    OutcomeView,
    QuestionOption,
    TaskView,
)
from homr.orchestrator.prompts import build_auto_resolve_prompt, parse_auto_resolve_response
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.8

_DECOMPOSE_HINTS = ("break", "subtask", "decompose")
_RETRY_HINTS = ("retry", "increase", "proceed")


def classify_escalation(escalation: EscalationView) -> EscalationCategory:
    """Keyword classification; earlier categories win when several match."""

    question = escalation.question_text.lower()
    trigger_type = escalation.trigger_type.lower()
    if "complex" in question or "turn limit" in question:
        return EscalationCategory.COMPLEXITY
    if "fail" in question or "failure" in trigger_type:
        return EscalationCategory.FAILURE
    if any(word in question for word in ("security", "dangerous", "destructive")):
        return EscalationCategory.SECURITY
    if any(word in question for word in ("ambig", "unclear", "clarif")):
        return EscalationCategory.AMBIGUITY
    return EscalationCategory.UNKNOWN


def get_auto_resolve_config(outcome: OutcomeView | None) -> AutoResolveConfig:
    if outcome is None:
        return AutoResolveConfig(
            mode=AutoResolveMode.MANUAL,
            confidence_threshold=DEFAULT_CONFIDENCE_THRESHOLD,
        )
    return AutoResolveConfig(
        mode=outcome.auto_resolve_mode,
        confidence_threshold=outcome.auto_resolve_threshold,
    )


def heuristic_decision(
    escalation: EscalationView,
    task: TaskView | None,
) -> AutoResolveDecision | None:
    """Fast path without a model call; ``None`` means the heuristics do not apply."""

    category = classify_escalation(escalation)
    options = escalation.options

    if category == EscalationCategory.SECURITY:
        return _defer("Security-related escalations require human review", 1.0)

    if category == EscalationCategory.COMPLEXITY:
        option = _find_option(options, EscalationAction.BREAK_INTO_SUBTASKS, _DECOMPOSE_HINTS)
        if option is not None:
            return AutoResolveDecision(
                should_auto_resolve=True,
                selected_option=option.id,
                reasoning=(
                    "Complexity escalation - decomposition is the safest path forward. "
                    "Breaking into subtasks prevents turn limit exhaustion and creates "
                    "manageable work units."
                ),
                confidence=0.9,
            )

    if category == EscalationCategory.FAILURE:
        if task is not None and task.attempts > 1:
            return _defer("Task has failed multiple times - human should review", 0.85)
        option = _find_option(options, EscalationAction.INCREASE_TURN_LIMIT, _RETRY_HINTS)
        if option is not None:
            return AutoResolveDecision(
                should_auto_resolve=True,
                selected_option=option.id,
                reasoning="First failure - retrying is reasonable before escalating to human",
                confidence=0.75,
            )

    if category == EscalationCategory.AMBIGUITY:
        return _defer("Ambiguous requirements require human domain knowledge", 0.95)

    return None


class AutoResolver:
    """Resolve escalations without a human when a heuristic or the model is confident."""

    def __init__(
        self,
        repository: HomrRepository,
        context_store: ContextStore,
        escalator: Escalator,
        backend: CompletionBackend,
        *,
        timeout_seconds: int = 30,
    ) -> None:
        self.repository = repository
        self.context_store = context_store
        self.escalator = escalator
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    def get_config(self, outcome_id: str) -> AutoResolveConfig:
        return get_auto_resolve_config(self.repository.get_outcome(outcome_id))

    def try_auto_resolve(
        self,
        escalation_id: str,
        config: AutoResolveConfig,
    ) -> AutoResolveOutcome:
        if config.mode == AutoResolveMode.MANUAL:
            return AutoResolveOutcome(
                resolved=False,
                decision=_defer("Auto-resolve is disabled (manual mode)", 1.0),
            )

        escalation = self.repository.get_escalation(escalation_id)
        if escalation is None:
            raise EscalationError(f"Escalation not found: {escalation_id}")
        if escalation.status != EscalationStatus.PENDING:
            return AutoResolveOutcome(
                resolved=False,
                decision=_defer(
                    f"Escalation is not pending (status: {escalation.status.value})",
                    1.0,
                ),
            )

        task = (
            self.repository.get_task(escalation.trigger_task_id)
            if escalation.trigger_task_id
            else None
        )
        decision = heuristic_decision(escalation, task)
        if decision is None:
            decision = self.model_decision(escalation, task)

        logger.info(
            "Auto-resolve evaluation for %s: confidence=%.2f threshold=%.2f resolve=%s",
            escalation_id,
            decision.confidence,
            config.confidence_threshold,
            decision.should_auto_resolve,
        )

        if not decision.should_auto_resolve or decision.confidence < config.confidence_threshold:
            self.repository.log_activity(
                escalation.outcome_id,
                event=ActivityEvent.AUTO_RESOLVE_DEFERRED,
                summary=(
                    f"Auto-resolve deferred to human (confidence: {decision.confidence * 100:.0f}%)"
                ),
                details={"escalation_id": escalation_id, "reasoning": decision.reasoning},
            )
            return AutoResolveOutcome(resolved=False, decision=decision)

        # Semi-auto has no confirmation step yet and commits like full-auto.
        if decision.selected_option is None:
            return AutoResolveOutcome(
                resolved=False,
                decision=_replace_reasoning(decision, "No option selected for auto-resolution"),
            )

        try:
            resolution = self.escalator.resolve_escalation(
                escalation_id,
                EscalationAnswer(
                    selected_option=decision.selected_option,
                    additional_context=f"{AUTO_RESOLVED_TAG} {decision.reasoning}",
                ),
                made_by=DecisionMaker.HOMR,
            )
        except EscalationError as error:
            logger.warning("Auto-resolution of %s failed: %s", escalation_id, error)
            return AutoResolveOutcome(
                resolved=False,
                decision=_replace_reasoning(decision, f"Auto-resolution failed: {error}"),
            )

        self.repository.log_activity(
            escalation.outcome_id,
            event=ActivityEvent.AUTO_RESOLVED,
            summary=(
                f"Auto-resolved: {decision.selected_option} "
                f"(confidence: {decision.confidence * 100:.0f}%)"
            ),
            details={
                "escalation_id": escalation_id,
                "selected_option": decision.selected_option,
                "reasoning": decision.reasoning,
                "confidence": decision.confidence,
            },
        )
        logger.info("Auto-resolved escalation %s with %s", escalation_id, decision.selected_option)
        return AutoResolveOutcome(resolved=True, decision=decision, resolution=resolution)

    def auto_resolve_all_pending(
        self,
        outcome_id: str,
        config: AutoResolveConfig,
    ) -> AutoResolveBatchResult:
        """Evaluate every pending escalation; a failing item is reported and skipped."""

        pending = self.repository.list_pending_escalations(outcome_id)
        results: list[AutoResolveItem] = []
        for escalation in pending:
            try:
                outcome = self.try_auto_resolve(escalation.escalation_id, config)
            except Exception as error:  # noqa: BLE001
                logger.exception("Auto-resolve of escalation %s raised", escalation.escalation_id)
                results.append(
                    AutoResolveItem(
                        escalation_id=escalation.escalation_id,
                        resolved=False,
                        reasoning=f"Auto-resolution failed: {error}",
                    ),
                )
                continue
            results.append(
                AutoResolveItem(
                    escalation_id=escalation.escalation_id,
                    resolved=outcome.resolved,
                    reasoning=outcome.decision.reasoning,
                ),
            )

        resolved = sum(1 for item in results if item.resolved)
        return AutoResolveBatchResult(
            total=len(pending),
            resolved=resolved,
            deferred=len(results) - resolved,
            results=results,
        )

    def model_decision(
        self,
        escalation: EscalationView,
        task: TaskView | None,
    ) -> AutoResolveDecision:
        decisions = self.context_store.list_decisions(escalation.outcome_id)
        response = self.backend.complete(
            CompletionRequest(
                prompt=build_auto_resolve_prompt(
                    escalation=escalation,
                    task=task,
                    outcome=self.repository.get_outcome(escalation.outcome_id),
                    past_decisions=[decision.content for decision in decisions],
                ),
                max_turns=1,
                timeout_seconds=self.timeout_seconds,
                metadata={"description": "HOMR auto-resolve evaluation"},
            ),
        )
        if not response.success or not response.text:
            logger.warning("Auto-resolve model call failed: %s", response.error)
            return _defer("Failed to get response from the completion service", 0.0)
        return parse_auto_resolve_response(response.text)


def _defer(reasoning: str, confidence: float) -> AutoResolveDecision:
    return AutoResolveDecision(
        should_auto_resolve=False,
        selected_option=None,
        reasoning=reasoning,
        confidence=confidence,
    )


def _replace_reasoning(decision: AutoResolveDecision, reasoning: str) -> AutoResolveDecision:
    return AutoResolveDecision(
        should_auto_resolve=decision.should_auto_resolve,
        selected_option=decision.selected_option,
        reasoning=reasoning,
        confidence=decision.confidence,
    )


def _find_option(
    options: list[QuestionOption],
    action: EscalationAction,
    hints: tuple[str, ...],
) -> QuestionOption | None:
    for option in options:
        if option.action == action:
            return option
    for option in options:
        lowered = option.id.lower()
        if any(hint in lowered for hint in hints):
            return option
    return None
