"""Escalation lifecycle: structured questions, task pausing and answer application."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from homr.orchestrator.affinity import KeywordOverlapAffinity, TaskAffinity
from homr.orchestrator.ambiguity import suggested_question
from homr.orchestrator.backend.base import CompletionBackend, CompletionRequest, TaskDecomposer
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    PAUSED_MARKER,
    SECTION_SEPARATOR,
    SKIPPED_MARKER,
    ActivityEvent,
    AmbiguitySignal,
    AmbiguityType,
    DecisionMaker,
    EscalationAction,
    EscalationActionResult,
    EscalationAnswer,
    EscalationCreate,
    EscalationError,
    EscalationResolution,
    EscalationStatus,
    EscalationView,
    InjectionPriority,
    InjectionType,
    QuestionOption,
    TaskStatus,
    TaskView,
    strip_pause_marker,
)
from homr.orchestrator.prompts import (
    QUESTION_SYSTEM_PROMPT,
    build_escalation_question_prompt,
    parse_escalation_question_response,
)
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)

TURN_LIMIT_MULTIPLIER = 2
MIN_TURN_LIMIT_INCREASE = 5
_MULTIPLIER_RE = re.compile(r"(\d+)x", re.IGNORECASE)

FALLBACK_OPTIONS: tuple[QuestionOption, ...] = (
    QuestionOption(
        id="proceed",
        label="Proceed as-is",
        description="Continue with the current approach",
        implications="Work will continue without changes",
    ),
    QuestionOption(
        id="stop",
        label="Stop and review",
        description="Pause work for manual review",
        implications="Tasks will remain paused until resolved",
    ),
)


def pause_message(ambiguity_type: str) -> str:
    return f"Paused by HOMR: Awaiting human input on {ambiguity_type}"


class Escalator:
    """Create, answer and dismiss escalations for one or more outcomes."""

    def __init__(
        self,
        repository: HomrRepository,
        context_store: ContextStore,
        locks: OutcomeLockRegistry,
        backend: CompletionBackend,
        *,
        decomposer: TaskDecomposer | None = None,
        affinity: TaskAffinity | None = None,
        question_timeout_seconds: int = 30,
    ) -> None:
        self.repository = repository
        self.context_store = context_store
        self.locks = locks
        self.backend = backend
        self.decomposer = decomposer
        self.affinity = affinity or KeywordOverlapAffinity()
        self.question_timeout_seconds = question_timeout_seconds

    # Creation

    def create_escalation(
        self,
        outcome_id: str,
        signal: AmbiguitySignal,
        trigger_task: TaskView,
    ) -> EscalationView:
        """Persist a question about the signal and pause every affected task."""

        affected = (
            list(signal.affected_tasks)
            if signal.affected_tasks
            else self.find_affected_tasks(outcome_id, signal, trigger_task)
        )

        question_text = signal.suggested_question or suggested_question(signal.type)
        question_context = signal.description
        options = list(signal.options)
        if len(options) < 2:  # noqa: PLR2004
            generated = self._generate_question(signal, trigger_task)
            if generated is not None:
                question_text, question_context, options = generated
            else:
                options = list(FALLBACK_OPTIONS)

        with self.locks.hold(outcome_id):
            escalation = self.repository.create_escalation(
                EscalationCreate(
                    outcome_id=outcome_id,
                    trigger_type=signal.type.value,
                    trigger_task_id=trigger_task.task_id,
                    trigger_evidence=list(signal.evidence),
                    question_text=question_text,
                    question_context=question_context,
                    options=options,
                    affected_tasks=affected,
                ),
            )
            for task_id in affected:
                self.pause_task(task_id, pause_message(signal.type.value))

        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.ESCALATION_CREATED,
            summary=(
                f'Created escalation: "{question_text[:50]}..." affecting {len(affected)} task(s)'
            ),
            details={
                "escalation_id": escalation.escalation_id,
                "trigger_type": signal.type.value,
                "trigger_task_id": trigger_task.task_id,
                "affected_tasks": affected,
                "question": question_text,
                "option_count": len(options),
            },
        )
        logger.info(
            "Created escalation %s with %d options affecting %d task(s)",
            escalation.escalation_id,
            len(options),
            len(affected),
        )
        return escalation

    def find_affected_tasks(
        self,
        outcome_id: str,
        signal: AmbiguitySignal,
        trigger_task: TaskView,
    ) -> list[str]:
        pending = self.repository.get_pending_tasks(outcome_id)
        if signal.type == AmbiguityType.BLOCKING_DECISION:
            return [task.task_id for task in pending]
        return [trigger_task.task_id, *self.affinity.related_tasks(trigger_task, pending)]

    def _generate_question(
        self,
        signal: AmbiguitySignal,
        task: TaskView,
    ) -> tuple[str, str, list[QuestionOption]] | None:
        outcome = self.repository.get_outcome(task.outcome_id)
        response = self.backend.complete(
            CompletionRequest(
                prompt=build_escalation_question_prompt(
                    signal=signal,
                    task=task,
                    intent=outcome.intent if outcome is not None else None,
                ),
                system_prompt=QUESTION_SYSTEM_PROMPT,
                max_turns=1,
                timeout_seconds=self.question_timeout_seconds,
                metadata={"description": "HOMR escalation question generation"},
            ),
        )
        if not response.success or not response.text:
            logger.warning("Failed to generate escalation question: %s", response.error)
            return None
        parsed = parse_escalation_question_response(response.text)
        if parsed is None:
            return None
        return parsed.question_text, parsed.question_context, parsed.options

    # Pause / resume

    def pause_task(self, task_id: str, message: str) -> bool:
        """Prefix a pending task with the pause marker; already paused tasks are left alone."""

        task = self.repository.get_task(task_id)
        if task is None or task.status != TaskStatus.PENDING or task.is_paused:
            return False
        description = (
            f"{PAUSED_MARKER} {message}{SECTION_SEPARATOR}{task.description}"
            if task.description
            else f"{PAUSED_MARKER} {message}"
        )
        self.repository.update_task_description(task_id, description)
        logger.info("Paused task %s", task_id)
        return True

    def resume_task(self, task_id: str) -> bool:
        task = self.repository.get_task(task_id)
        if task is None or not task.is_paused:
            return False
        self.repository.update_task_description(task_id, strip_pause_marker(task.description))
        logger.info("Resumed task %s", task_id)
        return True

    # Resolution

    def resolve_escalation(
        self,
        escalation_id: str,
        answer: EscalationAnswer,
        *,
        made_by: DecisionMaker = DecisionMaker.HUMAN,
    ) -> EscalationResolution:
        """Answer a pending escalation and apply the selected option's action."""

        escalation = self._require_escalation(escalation_id)
        outcome_id = escalation.outcome_id
        with self.locks.hold(outcome_id):
            escalation = self._require_escalation(escalation_id)
            if escalation.status != EscalationStatus.PENDING:
                raise EscalationError(
                    f"Escalation {escalation_id} is not pending "
                    f"(status: {escalation.status.value})",
                )
            option = escalation.option(answer.selected_option)
            if option is None:
                raise EscalationError(f"Invalid option: {answer.selected_option}")
            if not self.repository.answer_escalation(
                escalation_id,
                option_id=option.id,
                additional_context=answer.additional_context,
            ):
                raise EscalationError(f"Escalation {escalation_id} is no longer pending")

        affected = list(escalation.affected_tasks)
        decision_context = f"Escalation: {escalation.question_text}"
        if answer.additional_context:
            decision_context += f"\nAdditional context: {answer.additional_context}"
        self.context_store.record_decision(
            outcome_id,
            content=f"{option.label}: {option.description}",
            made_by=made_by,
            context=decision_context,
            affected_areas=affected,
        )

        applied = self.apply_action(
            option.action,
            outcome_id=outcome_id,
            task_ids=affected,
            additional_context=answer.additional_context,
        )
        if applied:
            logger.info(
                "Applied %d/%d actions for escalation %s",
                sum(1 for result in applied if result.success),
                len(applied),
                escalation_id,
            )

        pattern = self.context_store.record_answer_pattern(
            outcome_id,
            trigger_type=escalation.trigger_type,
            option_id=option.id,
            question=escalation.question_text,
        )

        injected = _decision_context(option, answer.additional_context, applied)
        skipped = _succeeded(applied, EscalationAction.SKIP_FAILING_TASKS)
        decomposed = _succeeded(applied, EscalationAction.BREAK_INTO_SUBTASKS)
        resumed: list[str] = []
        with self.locks.hold(outcome_id):
            for task_id in affected:
                if task_id in skipped:
                    continue
                self.context_store.add_injection(
                    outcome_id,
                    injection_type=InjectionType.DECISION,
                    content=injected,
                    source=f"Escalation {escalation_id}",
                    priority=InjectionPriority.MUST_KNOW,
                    target_task_id=task_id,
                )
                if task_id in decomposed:
                    continue
                self.resume_task(task_id)
                resumed.append(task_id)

        successful = sum(1 for result in applied if result.success)
        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.ESCALATION_RESOLVED,
            summary=(
                f'Resolved escalation: Selected "{option.label}", applied {successful} '
                f"action(s), resumed {len(resumed)} task(s)"
            ),
            details={
                "escalation_id": escalation_id,
                "selected_option": option.label,
                "option_id": option.id,
                "made_by": made_by.value,
                "additional_context": answer.additional_context,
                "resumed_tasks": resumed,
                "applied_actions": [
                    {
                        "action": result.action.value,
                        "task_id": result.task_id,
                        "success": result.success,
                    }
                    for result in applied
                ],
                "stored_pattern": {
                    "trigger_type": pattern.trigger_type,
                    "option_id": pattern.option_id,
                    "count": pattern.count,
                },
            },
        )
        logger.info("Resolved escalation %s: %s", escalation_id, option.label)
        return EscalationResolution(
            escalation_id=escalation_id,
            selected_option=option,
            resumed_tasks=resumed,
            injected_context=injected,
            applied_actions=applied,
            stored_pattern=pattern,
        )

    def apply_action(
        self,
        action: EscalationAction | None,
        *,
        outcome_id: str,
        task_ids: Sequence[str],
        additional_context: str | None = None,
    ) -> list[EscalationActionResult]:
        """Dispatch on the option's action tag; untagged options change no tasks."""

        if action is None:
            return []
        if action == EscalationAction.INCREASE_TURN_LIMIT:
            return self._increase_turn_limit(outcome_id, task_ids, additional_context)
        if action == EscalationAction.BREAK_INTO_SUBTASKS:
            return self._break_into_subtasks(outcome_id, task_ids)
        if action == EscalationAction.SKIP_FAILING_TASKS:
            return self._skip_failing_tasks(outcome_id, task_ids)
        raise ValueError(f"Unsupported escalation action: {action}")

    def _increase_turn_limit(
        self,
        outcome_id: str,
        task_ids: Sequence[str],
        additional_context: str | None,
    ) -> list[EscalationActionResult]:
        multiplier = TURN_LIMIT_MULTIPLIER
        if additional_context:
            match = _MULTIPLIER_RE.search(additional_context)
            if match:
                multiplier = int(match.group(1))

        results: list[EscalationActionResult] = []
        with self.locks.hold(outcome_id):
            for task_id in task_ids:
                task = self.repository.get_task(task_id)
                if task is None:
                    results.append(_failed(EscalationAction.INCREASE_TURN_LIMIT, task_id))
                    continue
                previous = task.max_attempts
                new_value = max(previous * multiplier, previous + MIN_TURN_LIMIT_INCREASE)
                self.repository.update_task_max_attempts(task_id, new_value)
                results.append(
                    EscalationActionResult(
                        action=EscalationAction.INCREASE_TURN_LIMIT,
                        task_id=task_id,
                        success=True,
                        previous_value=previous,
                        new_value=new_value,
                    ),
                )
                logger.info("Increased retry budget of %s: %d -> %d", task_id, previous, new_value)
        return results

    def _break_into_subtasks(
        self,
        outcome_id: str,
        task_ids: Sequence[str],
    ) -> list[EscalationActionResult]:
        outcome = self.repository.get_outcome(outcome_id)
        results: list[EscalationActionResult] = []
        for task_id in task_ids:
            task = self.repository.get_task(task_id)
            if task is None:
                results.append(_failed(EscalationAction.BREAK_INTO_SUBTASKS, task_id))
                continue
            if task.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
                results.append(
                    _failed(
                        EscalationAction.BREAK_INTO_SUBTASKS,
                        task_id,
                        error=f"Task already {task.status.value}",
                    ),
                )
                continue
            if self.decomposer is None:
                results.append(
                    _failed(
                        EscalationAction.BREAK_INTO_SUBTASKS,
                        task_id,
                        error="No task decomposer configured",
                    ),
                )
                continue
            try:
                decomposition = self.decomposer.decompose(
                    task,
                    intent=outcome.intent if outcome is not None else None,
                    approach=outcome.design_approach if outcome is not None else None,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Decomposition of task %s raised", task_id)
                results.append(
                    _failed(EscalationAction.BREAK_INTO_SUBTASKS, task_id, error=str(error)),
                )
                continue
            if decomposition.success:
                results.append(
                    EscalationActionResult(
                        action=EscalationAction.BREAK_INTO_SUBTASKS,
                        task_id=task_id,
                        success=True,
                        created_task_ids=list(decomposition.created_task_ids),
                    ),
                )
                logger.info(
                    "Decomposed task %s into %d subtasks",
                    task_id,
                    len(decomposition.created_task_ids),
                )
            else:
                results.append(
                    _failed(
                        EscalationAction.BREAK_INTO_SUBTASKS,
                        task_id,
                        error=decomposition.error or decomposition.reasoning,
                    ),
                )
        return results

    def _skip_failing_tasks(
        self,
        outcome_id: str,
        task_ids: Sequence[str],
    ) -> list[EscalationActionResult]:
        results: list[EscalationActionResult] = []
        with self.locks.hold(outcome_id):
            for task_id in task_ids:
                task = self.repository.get_task(task_id)
                if task is None:
                    results.append(_failed(EscalationAction.SKIP_FAILING_TASKS, task_id))
                    continue
                if task.status == TaskStatus.COMPLETED:
                    results.append(
                        _failed(
                            EscalationAction.SKIP_FAILING_TASKS,
                            task_id,
                            error="Task already completed",
                        ),
                    )
                    continue
                notice = f"{SKIPPED_MARKER} This task was skipped via escalation resolution."
                remaining = strip_pause_marker(task.description)
                self.repository.mark_task_failed(
                    task_id,
                    description=f"{notice}{SECTION_SEPARATOR}{remaining}" if remaining else notice,
                )
                results.append(
                    EscalationActionResult(
                        action=EscalationAction.SKIP_FAILING_TASKS,
                        task_id=task_id,
                        success=True,
                    ),
                )
                logger.info("Marked task %s as skipped", task_id)
        return results

    # Dismissal and queries

    def dismiss_escalation(self, escalation_id: str, reason: str | None = None) -> list[str]:
        """Close the escalation without a decision and resume its tasks."""

        escalation = self._require_escalation(escalation_id)
        outcome_id = escalation.outcome_id
        resumed: list[str] = []
        with self.locks.hold(outcome_id):
            if not self.repository.dismiss_escalation(escalation_id, reason=reason):
                current = self._require_escalation(escalation_id)
                raise EscalationError(
                    f"Escalation {escalation_id} is not pending (status: {current.status.value})",
                )
            for task_id in escalation.affected_tasks:
                if self.resume_task(task_id):
                    resumed.append(task_id)

        suffix = f": {reason}" if reason else ""
        self.repository.log_activity(
            outcome_id,
            event=ActivityEvent.ESCALATION_DISMISSED,
            summary=f"Dismissed escalation{suffix}, resumed {len(resumed)} task(s)",
            details={
                "escalation_id": escalation_id,
                "reason": reason,
                "resumed_tasks": resumed,
            },
        )
        logger.info("Dismissed escalation %s", escalation_id)
        return resumed

    def has_pending_escalations(self, outcome_id: str) -> bool:
        return self.get_pending_escalation_count(outcome_id) > 0

    def get_pending_escalation_count(self, outcome_id: str) -> int:
        return self.repository.count_pending_escalations(outcome_id)

    def _require_escalation(self, escalation_id: str) -> EscalationView:
        escalation = self.repository.get_escalation(escalation_id)
        if escalation is None:
            raise EscalationError(f"Escalation not found: {escalation_id}")
        return escalation


def _failed(
    action: EscalationAction,
    task_id: str,
    *,
    error: str = "Task not found",
) -> EscalationActionResult:
    return EscalationActionResult(action=action, task_id=task_id, success=False, error=error)


def _succeeded(results: Sequence[EscalationActionResult], action: EscalationAction) -> set[str]:
    return {result.task_id for result in results if result.action == action and result.success}


def _decision_context(
    option: QuestionOption,
    additional_context: str | None,
    applied: Sequence[EscalationActionResult],
) -> str:
    lines = [f"**Decision Made:** {option.label}", option.description]
    if additional_context:
        lines.append(f"\n**Additional Context:** {additional_context}")
    successful = [result.action.value for result in applied if result.success]
    if successful:
        lines.append(f"\n**Actions Applied:** {', '.join(dict.fromkeys(successful))}")
    return "\n".join(lines)
