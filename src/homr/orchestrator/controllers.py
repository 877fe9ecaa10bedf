"""Controllers for HOMR CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from homr.analysis import AnalysisJobRunner, CompletionImprovementAnalyzer
from homr.config import Settings
from homr.orchestrator.backend import CliCompletionBackend, CompletionBackend
from homr.orchestrator.models import (
    ActivityType,
    AnalysisJobView,
    AutoResolveConfig,
    AutoResolveMode,
    EscalationAnswer,
    EscalationStatus,
    IntentItem,
    OutcomeCreate,
    OutcomeIntent,
    OutcomeStatus,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from homr.orchestrator.repository import HomrRepository
from homr.orchestrator.services import HomrService

BackendFactory = Callable[[Settings], CompletionBackend]


@dataclass(slots=True)
class OutcomeCreateCommand:
    """CLI input for outcome creation."""

    db_path: Path | None
    name: str
    intent_summary: str | None
    intent_items: tuple[str, ...]
    success_criteria: tuple[str, ...]
    design_approach: str | None
    homr_enabled: bool


@dataclass(slots=True)
class OutcomeCommand:
    """CLI input for commands addressing one outcome."""

    db_path: Path | None
    outcome_id: str


@dataclass(slots=True)
class OutcomeListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    db_path: Path | None
    outcome_id: str
    title: str
    description: str
    priority: int
    max_attempts: int
    depends_on: tuple[str, ...]
    phase: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    outcome_id: str
    statuses: tuple[str, ...]


@dataclass(slots=True)
class TaskCommand:
    """CLI input for commands addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskDependencyCommand:
    """CLI input for dependency edge mutation."""

    db_path: Path | None
    task_id: str
    depends_on_task_id: str


@dataclass(slots=True)
class TaskClaimCommand:
    db_path: Path | None
    outcome_id: str
    worker_id: str | None


@dataclass(slots=True)
class EscalationListCommand:
    db_path: Path | None
    outcome_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class EscalationCommand:
    db_path: Path | None
    escalation_id: str


@dataclass(slots=True)
class EscalationAnswerCommand:
    """CLI input for answering a pending escalation."""

    db_path: Path | None
    escalation_id: str
    option_id: str
    additional_context: str | None


@dataclass(slots=True)
class EscalationDismissCommand:
    db_path: Path | None
    escalation_id: str
    reason: str | None


@dataclass(slots=True)
class ActivityCommand:
    """CLI input for the activity feed."""

    db_path: Path | None
    outcome_id: str
    types: tuple[str, ...]
    limit: int
    offset: int


@dataclass(slots=True)
class AutoResolveSetCommand:
    db_path: Path | None
    outcome_id: str
    mode: str
    threshold: float | None


@dataclass(slots=True)
class AnalysisStartCommand:
    """CLI input for improvement analysis."""

    db_path: Path | None
    outcome_id: str | None
    lookback_days: int | None
    max_proposals: int | None
    wait: bool
    timeout_seconds: float | None = None


@dataclass(slots=True)
class AnalysisJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class AnalysisListCommand:
    db_path: Path | None
    limit: int = 10


@dataclass(slots=True)
class ObserveCommand:
    """CLI input for observing one completed task."""

    db_path: Path | None
    task_id: str
    output_file: Path | None
    quick: bool
    failed: bool
    worker_id: str | None


class HomrCliController:
    """Coordinates outcome, task, escalation, and analysis CLI operations."""

    def __init__(self, *, backend_factory: BackendFactory | None = None) -> None:
        self._backend_factory = backend_factory or _cli_backend

    # -- outcomes --------------------------------------------------------------

    def create_outcome(self, command: OutcomeCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        intent = None
        if command.intent_summary or command.intent_items or command.success_criteria:
            intent = OutcomeIntent(
                summary=command.intent_summary or command.name,
                items=[IntentItem(title=title) for title in command.intent_items],
                success_criteria=list(command.success_criteria),
            )
        with _repository(settings) as repository:
            outcome = repository.create_outcome(
                OutcomeCreate(
                    name=command.name,
                    intent=intent,
                    design_approach=command.design_approach,
                    homr_enabled=command.homr_enabled,
                ),
            )
        return [
            f"Outcome created: outcome_id={outcome.outcome_id} name={outcome.name} "
            f"homr={'on' if outcome.homr_enabled else 'off'}",
        ]

    def list_outcomes(self, command: OutcomeListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = OutcomeStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            outcomes = repository.list_outcomes(status=status)
        if not outcomes:
            return ["No outcomes found."]
        return [
            f"{outcome.outcome_id} status={outcome.status.value} "
            f"homr={'on' if outcome.homr_enabled else 'off'} "
            f"auto_resolve={outcome.auto_resolve_mode.value} name={outcome.name}"
            for outcome in outcomes
        ]

    def show_outcome(self, command: OutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcome = repository.require_outcome(command.outcome_id)
            tasks = repository.list_tasks(command.outcome_id)
        lines = [
            f"Outcome: {outcome.outcome_id}",
            f"Name: {outcome.name}",
            f"Status: {outcome.status.value}",
            f"HOMR: {'enabled' if outcome.homr_enabled else 'disabled'}",
            f"Auto-resolve: {outcome.auto_resolve_mode.value} "
            f"(threshold {outcome.auto_resolve_threshold:.2f})",
        ]
        if outcome.intent is not None:
            lines.append(f"Intent: {outcome.intent.summary}")
            lines.extend(f"  - {item.title}" for item in outcome.intent.items)
            lines.extend(f"  success: {criterion}" for criterion in outcome.intent.success_criteria)
        if outcome.design_approach:
            lines.append(f"Design approach: {outcome.design_approach}")
        lines.append(f"Tasks: {len(tasks)}")
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def set_homr_enabled(self, command: OutcomeCommand, *, enabled: bool) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.require_outcome(command.outcome_id)
            repository.set_outcome_homr_enabled(command.outcome_id, enabled=enabled)
        state = "enabled" if enabled else "disabled"
        return [f"HOMR {state} for outcome {command.outcome_id}"]

    # -- tasks -----------------------------------------------------------------

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    outcome_id=command.outcome_id,
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    max_attempts=command.max_attempts,
                    depends_on=list(command.depends_on),
                    phase=command.phase,
                ),
            )
        return [f"Task added: task_id={task.task_id} priority={task.priority} title={task.title}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = tuple(TaskStatus(status) for status in command.statuses) or None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(command.outcome_id, statuses=statuses)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def add_dependency(self, command: TaskDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            result = service.graph.add_dependency(command.task_id, command.depends_on_task_id)
        if not result.success:
            raise ValueError(result.reason or "Dependency was not added")
        return [f"Dependency added: {command.task_id} -> {command.depends_on_task_id}"]

    def remove_dependency(self, command: TaskDependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            result = service.graph.remove_dependency(command.task_id, command.depends_on_task_id)
        if not result.success:
            raise ValueError(result.reason or "Dependency was not removed")
        return [f"Dependency removed: {command.task_id} -> {command.depends_on_task_id}"]

    def claim_task(self, command: TaskClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            outcome = repository.require_outcome(command.outcome_id)
            if service.should_block_work(outcome.outcome_id):
                pending = service.escalator.get_pending_escalation_count(outcome.outcome_id)
                return [f"Work blocked: {pending} pending escalation(s) need an answer."]
            worker = repository.register_worker(outcome.outcome_id, worker_id=command.worker_id)
            task = repository.claim_next_task(outcome.outcome_id, worker_id=worker.worker_id)
            if task is None:
                return [f"No claimable task for outcome {outcome.outcome_id}."]
            context = service.steering.build_task_context(task.task_id, outcome.outcome_id)
        lines = [
            f"Claimed: task_id={task.task_id} worker_id={worker.worker_id} title={task.title}",
        ]
        if context:
            lines.extend(["", context])
        return lines

    def complete_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.require_task(command.task_id)
            if not repository.mark_task_completed(command.task_id):
                raise ValueError(f"Task {command.task_id} could not be completed")
        return [f"Task completed: {command.task_id}"]

    def fail_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.record_task_failure(command.task_id)
        return [
            f"Task failure recorded: task_id={task.task_id} status={task.status.value} "
            f"attempts={task.attempts}/{task.max_attempts}",
        ]

    def task_context(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            task = repository.require_task(command.task_id)
            context = service.steering.build_task_context(task.task_id, task.outcome_id)
        return [context] if context else [f"No HOMR context for task {task.task_id}."]

    # -- escalations -----------------------------------------------------------

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = EscalationStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            escalations = repository.list_escalations(
                outcome_id=command.outcome_id,
                status=status,
                limit=command.limit,
            )
        if not escalations:
            return ["No escalations found."]
        return [
            f"{escalation.escalation_id} status={escalation.status.value} "
            f"outcome={escalation.outcome_id} trigger={escalation.trigger_type} "
            f"question={escalation.question_text}"
            for escalation in escalations
        ]

    def show_escalation(self, command: EscalationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            escalation = repository.get_escalation(command.escalation_id)
        if escalation is None:
            raise ValueError(f"Escalation not found: {command.escalation_id}")
        lines = [
            f"Escalation: {escalation.escalation_id}",
            f"Outcome: {escalation.outcome_id}",
            f"Status: {escalation.status.value}",
            f"Trigger: {escalation.trigger_type} (task {escalation.trigger_task_id or '-'})",
            f"Question: {escalation.question_text}",
            f"Context: {escalation.question_context}",
            "Options:",
        ]
        for option in escalation.options:
            action = f" [{option.action.value}]" if option.action is not None else ""
            lines.append(f"  {option.id}: {option.label}{action}")
            if option.description:
                lines.append(f"      {option.description}")
        if escalation.affected_tasks:
            lines.append(f"Affected tasks: {', '.join(escalation.affected_tasks)}")
        if escalation.answer_option:
            lines.append(f"Answer: {escalation.answer_option}")
        if escalation.answer_context:
            lines.append(f"Answer context: {escalation.answer_context}")
        return lines

    def answer_escalation(self, command: EscalationAnswerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            resolution = service.escalator.resolve_escalation(
                command.escalation_id,
                EscalationAnswer(
                    selected_option=command.option_id,
                    additional_context=command.additional_context,
                ),
            )
        lines = [
            f"Escalation resolved: {resolution.escalation_id} "
            f"option={resolution.selected_option.id}",
            f"Resumed tasks: {', '.join(resolution.resumed_tasks) or '-'}",
        ]
        for result in resolution.applied_actions:
            status = "ok" if result.success else f"failed ({result.error})"
            lines.append(f"  {result.action.value} {result.task_id}: {status}")
        return lines

    def dismiss_escalation(self, command: EscalationDismissCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            resumed = service.escalator.dismiss_escalation(command.escalation_id, command.reason)
        return [
            f"Escalation dismissed: {command.escalation_id}",
            f"Resumed tasks: {', '.join(resumed) or '-'}",
        ]

    # -- status & activity -----------------------------------------------------

    def status(self, command: OutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = self._service(settings, repository).get_status(command.outcome_id)
        stats = status.stats
        lines = [
            f"HOMR status for {status.outcome_id}: "
            f"{'enabled' if status.enabled else 'disabled'}",
            f"Context: discoveries={status.discoveries} decisions={status.decisions} "
            f"constraints={status.constraints}",
            f"Stats: tasks_observed={stats.tasks_observed} "
            f"discoveries_extracted={stats.discoveries_extracted} "
            f"escalations_created={stats.escalations_created} "
            f"steering_actions={stats.steering_actions}",
            f"Pending escalations: {status.pending_escalations}",
        ]
        if status.recent_activity:
            lines.append("Recent activity:")
            lines.extend(
                f"  {entry.created_at.isoformat()} [{entry.type.value}] {entry.summary}"
                for entry in status.recent_activity
            )
        return lines

    def activity(self, command: ActivityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        types = [ActivityType(value) for value in command.types] or None
        with _repository(settings) as repository:
            entries = repository.list_activity(
                command.outcome_id,
                types=types,
                limit=command.limit,
                offset=command.offset,
            )
        if not entries:
            return ["No activity found."]
        return [
            f"{entry.created_at.isoformat()} [{entry.type.value}] {entry.event.value}: "
            f"{entry.summary}"
            for entry in entries
        ]

    # -- auto-resolve ----------------------------------------------------------

    def show_auto_resolve(self, command: OutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.require_outcome(command.outcome_id)
            config = self._service(settings, repository).auto_resolver.get_config(
                command.outcome_id,
            )
        return [
            f"Auto-resolve for {command.outcome_id}: mode={config.mode.value} "
            f"threshold={config.confidence_threshold:.2f}",
        ]

    def set_auto_resolve(self, command: AutoResolveSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            current = repository.require_outcome(command.outcome_id)
            threshold = (
                command.threshold
                if command.threshold is not None
                else current.auto_resolve_threshold
            )
            repository.update_auto_resolve_config(
                command.outcome_id,
                mode=AutoResolveMode(command.mode),
                threshold=threshold,
            )
        return [
            f"Auto-resolve updated for {command.outcome_id}: mode={command.mode} "
            f"threshold={threshold:.2f}",
        ]

    def run_auto_resolve(self, command: OutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.require_outcome(command.outcome_id)
            resolver = self._service(settings, repository).auto_resolver
            config = resolver.get_config(command.outcome_id)
            if config.mode == AutoResolveMode.MANUAL:
                config = AutoResolveConfig(
                    mode=AutoResolveMode.FULL_AUTO,
                    confidence_threshold=config.confidence_threshold,
                )
            result = resolver.auto_resolve_all_pending(command.outcome_id, config)
        lines = [
            f"Auto-resolve: total={result.total} resolved={result.resolved} "
            f"deferred={result.deferred}",
        ]
        lines.extend(
            f"  {item.escalation_id}: {'resolved' if item.resolved else 'deferred'} - "
            f"{item.reasoning}"
            for item in result.results
        )
        return lines

    # -- improvement analysis --------------------------------------------------

    def start_analysis(self, command: AnalysisStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.outcome_id is not None:
                repository.require_outcome(command.outcome_id)
            runner = self._runner(settings, repository)
            runner.recover_stale_jobs()
            job_id = runner.start_background_analysis(
                outcome_id=command.outcome_id,
                lookback_days=command.lookback_days,
                max_proposals=command.max_proposals,
            )
            if not command.wait:
                return [f"Analysis job started: {job_id}"]
            job = runner.wait(job_id, timeout=command.timeout_seconds)
        if job is None:
            raise ValueError(f"Analysis job not found: {job_id}")
        return _job_lines(job)

    def analysis_status(self, command: AnalysisJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_analysis_job(command.job_id)
        if job is None:
            raise ValueError(f"Analysis job not found: {command.job_id}")
        return _job_lines(job)

    def active_analyses(self, command: AnalysisListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = self._runner(settings, repository).get_active_analysis_jobs()
        if not jobs:
            return ["No active analysis jobs."]
        return [_job_summary(job) for job in jobs]

    def recent_analyses(self, command: AnalysisListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = self._runner(settings, repository).get_recent_analysis_jobs(
                limit=command.limit,
            )
        if not jobs:
            return ["No analysis jobs found."]
        return [_job_summary(job) for job in jobs]

    # -- observation -----------------------------------------------------------

    def observe(self, command: ObserveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = self._service(settings, repository)
            task = repository.require_task(command.task_id)
            if command.quick:
                observation = service.quick_observe(task, success=not command.failed)
                if observation is None:
                    return [f"HOMR is disabled for outcome {task.outcome_id}."]
                return [
                    f"Quick observation: task_id={task.task_id} "
                    f"quality={observation.quality.value} "
                    f"alignment={observation.alignment_score}",
                ]

            if command.output_file is None:
                raise ValueError("--output-file is required unless --quick is used")
            full_output = command.output_file.read_text(encoding="utf-8")
            result = service.observe_and_process(
                task,
                full_output,
                worker_id=command.worker_id,
            )

        if result.observation is None:
            return [f"No observation recorded for task {task.task_id}."]
        observation = result.observation
        lines = [
            f"Observation: task_id={task.task_id} on_track={observation.on_track} "
            f"alignment={observation.alignment_score} quality={observation.quality.value}",
            f"Discoveries: {len(observation.discoveries)} drift: {len(observation.drift)} "
            f"issues: {len(observation.issues)}",
        ]
        if result.failure_pattern_detected:
            lines.append(
                f"Failure pattern detected; escalation {result.escalation_id} created, "
                f"workers paused={result.workers_paused}",
            )
        elif result.escalated:
            lines.append(f"Escalation created: {result.escalation_id}")
        elif result.steered:
            lines.append("Steering actions applied.")
        return lines

    def _service(self, settings: Settings, repository: HomrRepository) -> HomrService:
        return HomrService(
            repository=repository,
            backend=self._backend_factory(settings),
            settings=settings,
        )

    def _runner(self, settings: Settings, repository: HomrRepository) -> AnalysisJobRunner:
        backend = self._backend_factory(settings)
        analysis = settings.analysis
        return AnalysisJobRunner(
            repository,
            analyzer_factory=lambda repo: CompletionImprovementAnalyzer(
                repo,
                backend,
                cluster_timeout_seconds=analysis.cluster_timeout_seconds,
                proposal_timeout_seconds=analysis.proposal_timeout_seconds,
            ),
            settings=analysis,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )


def _cli_backend(settings: Settings) -> CompletionBackend:
    settings.validate_completion()
    return CliCompletionBackend(
        command_template=settings.completion.command_template,
        model=settings.completion.model,
    )


def _task_line(task: TaskView) -> str:
    paused = " paused" if task.is_paused else ""
    depends = f" depends_on={','.join(task.depends_on)}" if task.depends_on else ""
    return (
        f"{task.task_id} status={task.status.value}{paused} priority={task.priority} "
        f"attempts={task.attempts}/{task.max_attempts}{depends} title={task.title}"
    )


def _job_summary(job: AnalysisJobView) -> str:
    return (
        f"{job.job_id} status={job.status.value} outcome={job.outcome_id or '*'} "
        f"created={job.created_at.isoformat()} progress={job.progress_message or '-'}"
    )


def _job_lines(job: AnalysisJobView) -> list[str]:
    lines = [_job_summary(job)]
    if job.error:
        lines.append(f"Error: {job.error}")
    if job.result is None:
        return lines
    lines.append(str(job.result.get("message", "")))
    for cluster in job.result.get("clusters", []):
        lines.append(
            f"  cluster {cluster['id']} [{cluster['severity']}] "
            f"{cluster['root_cause']} ({cluster['escalation_count']} escalations)",
        )
    for proposal in job.result.get("proposals", []):
        lines.append(
            f"  proposal {proposal['outcome_name']}: "
            f"{len(proposal['proposed_tasks'])} task(s) for {proposal['root_cause']}",
        )
    if job.result.get("outcomes_created"):
        lines.append(json.dumps(job.result["outcomes_created"], ensure_ascii=False))
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[HomrRepository]:
    repository = HomrRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
