"""CLI entrypoint for HOMR."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from homr import __version__
from homr.orchestrator.controllers import (
    ActivityCommand,
    AnalysisJobCommand,
    AnalysisListCommand,
    AnalysisStartCommand,
    AutoResolveSetCommand,
    EscalationAnswerCommand,
    EscalationCommand,
    EscalationDismissCommand,
    EscalationListCommand,
    HomrCliController,
    ObserveCommand,
    OutcomeCommand,
    OutcomeCreateCommand,
    OutcomeListCommand,
    TaskAddCommand,
    TaskClaimCommand,
    TaskCommand,
    TaskDependencyCommand,
    TaskListCommand,
)

click.rich_click.USE_MARKDOWN = True
HOMR_CONTROLLER = HomrCliController()

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to HOMR_DB_PATH or .homr.db.",
)


@click.group()
@click.version_option(version=__version__, prog_name="homr")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def homr(log_level: str) -> None:
    """HOMR supervisory control loop for autonomous coding workers."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -- outcomes -------------------------------------------------------------------


@homr.group()
def outcome() -> None:
    """Outcome commands."""


@outcome.command("create")
@db_path_option
@click.option("--name", required=True, help="Outcome name.")
@click.option("--intent", "intent_summary", default=None, help="Intent summary.")
@click.option(
    "--item",
    "intent_items",
    multiple=True,
    help="Intent item title. Can be repeated.",
)
@click.option(
    "--success-criterion",
    "success_criteria",
    multiple=True,
    help="Success criterion. Can be repeated.",
)
@click.option("--design-approach", default=None, help="Design approach text.")
@click.option(
    "--homr/--no-homr",
    "homr_enabled",
    default=True,
    show_default=True,
    help="Supervise this outcome with HOMR.",
)
def outcome_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    intent_summary: str | None,
    intent_items: tuple[str, ...],
    success_criteria: tuple[str, ...],
    design_approach: str | None,
    homr_enabled: bool,
) -> None:
    """Create an outcome with optional intent and design approach."""

    _run(
        HOMR_CONTROLLER.create_outcome,
        OutcomeCreateCommand(
            db_path=db_path,
            name=name,
            intent_summary=intent_summary,
            intent_items=intent_items,
            success_criteria=success_criteria,
            design_approach=design_approach,
            homr_enabled=homr_enabled,
        ),
    )


@outcome.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(["active", "completed", "archived"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def outcome_list(db_path: Path | None, status: str | None) -> None:
    """List outcomes."""

    _run(
        HOMR_CONTROLLER.list_outcomes,
        OutcomeListCommand(db_path=db_path, status=status.lower() if status else None),
    )


@outcome.command("show")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def outcome_show(db_path: Path | None, outcome_id: str) -> None:
    """Show one outcome with its tasks."""

    _run(HOMR_CONTROLLER.show_outcome, OutcomeCommand(db_path=db_path, outcome_id=outcome_id))


@outcome.command("enable")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def outcome_enable(db_path: Path | None, outcome_id: str) -> None:
    """Enable HOMR supervision for an outcome."""

    _emit_lines(
        _guard(
            lambda: HOMR_CONTROLLER.set_homr_enabled(
                OutcomeCommand(db_path=db_path, outcome_id=outcome_id),
                enabled=True,
            ),
        ),
    )


@outcome.command("disable")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def outcome_disable(db_path: Path | None, outcome_id: str) -> None:
    """Disable HOMR supervision for an outcome."""

    _emit_lines(
        _guard(
            lambda: HOMR_CONTROLLER.set_homr_enabled(
                OutcomeCommand(db_path=db_path, outcome_id=outcome_id),
                enabled=False,
            ),
        ),
    )


# -- tasks ----------------------------------------------------------------------


@homr.group()
def task() -> None:
    """Task commands."""


@task.command("add")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option("--priority", type=int, default=100, show_default=True, help="Lower runs first.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Attempt budget before the task fails.",
)
@click.option(
    "--depends-on",
    multiple=True,
    help="Task id this task waits for. Can be repeated.",
)
@click.option("--phase", default="execution", show_default=True, help="Task phase.")
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    outcome_id: str,
    title: str,
    description: str,
    priority: int,
    max_attempts: int,
    depends_on: tuple[str, ...],
    phase: str,
) -> None:
    """Add a task to an outcome."""

    _run(
        HOMR_CONTROLLER.add_task,
        TaskAddCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            title=title,
            description=description,
            priority=priority,
            max_attempts=max_attempts,
            depends_on=depends_on,
            phase=phase,
        ),
    )


@task.command("list")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(
        ["pending", "claimed", "running", "completed", "failed"],
        case_sensitive=False,
    ),
    help="Status filter. Can be repeated.",
)
def task_list(db_path: Path | None, outcome_id: str, statuses: tuple[str, ...]) -> None:
    """List tasks of an outcome in scheduling order."""

    _run(
        HOMR_CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            statuses=tuple(status.lower() for status in statuses),
        ),
    )


@task.command("depend")
@db_path_option
@click.option("--task", "task_id", required=True, help="Dependent task id.")
@click.option("--on", "depends_on_task_id", required=True, help="Task id to wait for.")
def task_depend(db_path: Path | None, task_id: str, depends_on_task_id: str) -> None:
    """Add a dependency edge; cycles are rejected."""

    _run(
        HOMR_CONTROLLER.add_dependency,
        TaskDependencyCommand(
            db_path=db_path,
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
        ),
    )


@task.command("undepend")
@db_path_option
@click.option("--task", "task_id", required=True, help="Dependent task id.")
@click.option("--on", "depends_on_task_id", required=True, help="Dependency task id.")
def task_undepend(db_path: Path | None, task_id: str, depends_on_task_id: str) -> None:
    """Remove a dependency edge."""

    _run(
        HOMR_CONTROLLER.remove_dependency,
        TaskDependencyCommand(
            db_path=db_path,
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
        ),
    )


@task.command("claim")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
@click.option("--worker", "worker_id", default=None, help="Worker id; generated when omitted.")
def task_claim(db_path: Path | None, outcome_id: str, worker_id: str | None) -> None:
    """Claim the next runnable task and print its HOMR context."""

    _run(
        HOMR_CONTROLLER.claim_task,
        TaskClaimCommand(db_path=db_path, outcome_id=outcome_id, worker_id=worker_id),
    )


@task.command("complete")
@db_path_option
@click.option("--task", "task_id", required=True, help="Task id.")
def task_complete(db_path: Path | None, task_id: str) -> None:
    """Mark a task completed."""

    _run(HOMR_CONTROLLER.complete_task, TaskCommand(db_path=db_path, task_id=task_id))


@task.command("fail")
@db_path_option
@click.option("--task", "task_id", required=True, help="Task id.")
def task_fail(db_path: Path | None, task_id: str) -> None:
    """Record a failed attempt; the task fails once its attempts are spent."""

    _run(HOMR_CONTROLLER.fail_task, TaskCommand(db_path=db_path, task_id=task_id))


@task.command("context")
@db_path_option
@click.option("--task", "task_id", required=True, help="Task id.")
def task_context(db_path: Path | None, task_id: str) -> None:
    """Print the HOMR context block for a task."""

    _run(HOMR_CONTROLLER.task_context, TaskCommand(db_path=db_path, task_id=task_id))


# -- escalations ----------------------------------------------------------------


@homr.group()
def escalations() -> None:
    """Escalation commands."""


@escalations.command("list")
@db_path_option
@click.option("--outcome", "outcome_id", default=None, help="Optional outcome filter.")
@click.option(
    "--status",
    type=click.Choice(["pending", "answered", "dismissed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max escalations to print.",
)
def escalations_list(
    db_path: Path | None,
    outcome_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List escalations, newest first."""

    _run(
        HOMR_CONTROLLER.list_escalations,
        EscalationListCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            status=status.lower() if status else None,
            limit=limit,
        ),
    )


@escalations.command("show")
@db_path_option
@click.option("--id", "escalation_id", required=True, help="Escalation id.")
def escalations_show(db_path: Path | None, escalation_id: str) -> None:
    """Show one escalation with its options."""

    _run(
        HOMR_CONTROLLER.show_escalation,
        EscalationCommand(db_path=db_path, escalation_id=escalation_id),
    )


@escalations.command("answer")
@db_path_option
@click.option("--id", "escalation_id", required=True, help="Escalation id.")
@click.option("--option", "option_id", required=True, help="Selected option id.")
@click.option("--context", "additional_context", default=None, help="Additional context.")
def escalations_answer(
    db_path: Path | None,
    escalation_id: str,
    option_id: str,
    additional_context: str | None,
) -> None:
    """Answer a pending escalation and resume its tasks."""

    _run(
        HOMR_CONTROLLER.answer_escalation,
        EscalationAnswerCommand(
            db_path=db_path,
            escalation_id=escalation_id,
            option_id=option_id,
            additional_context=additional_context,
        ),
    )


@escalations.command("dismiss")
@db_path_option
@click.option("--id", "escalation_id", required=True, help="Escalation id.")
@click.option("--reason", default=None, help="Why the escalation is dismissed.")
def escalations_dismiss(db_path: Path | None, escalation_id: str, reason: str | None) -> None:
    """Dismiss a pending escalation without applying an action."""

    _run(
        HOMR_CONTROLLER.dismiss_escalation,
        EscalationDismissCommand(db_path=db_path, escalation_id=escalation_id, reason=reason),
    )


# -- status & activity ----------------------------------------------------------


@homr.command("status")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def status(db_path: Path | None, outcome_id: str) -> None:
    """Show HOMR context, counters, and recent activity for an outcome."""

    _run(HOMR_CONTROLLER.status, OutcomeCommand(db_path=db_path, outcome_id=outcome_id))


@homr.command("activity")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
@click.option(
    "--type",
    "types",
    multiple=True,
    type=click.Choice(
        [
            "observation",
            "steering",
            "escalation",
            "resolution",
            "auto_resolved",
            "auto_resolve_deferred",
            "analysis",
        ],
        case_sensitive=False,
    ),
    help="Activity category filter. Can be repeated.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Page size.",
)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def activity(
    db_path: Path | None,
    outcome_id: str,
    types: tuple[str, ...],
    limit: int,
    offset: int,
) -> None:
    """Show the outcome activity feed, newest first."""

    _run(
        HOMR_CONTROLLER.activity,
        ActivityCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            types=tuple(value.lower() for value in types),
            limit=limit,
            offset=offset,
        ),
    )


# -- auto-resolve ---------------------------------------------------------------


@homr.group("auto-resolve")
def auto_resolve() -> None:
    """Auto-resolve commands."""


@auto_resolve.command("show")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def auto_resolve_show(db_path: Path | None, outcome_id: str) -> None:
    """Show the auto-resolve mode and confidence threshold."""

    _run(
        HOMR_CONTROLLER.show_auto_resolve,
        OutcomeCommand(db_path=db_path, outcome_id=outcome_id),
    )


@auto_resolve.command("set")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
@click.option(
    "--mode",
    type=click.Choice(["manual", "semi-auto", "full-auto"], case_sensitive=False),
    required=True,
    help="Auto-resolve mode.",
)
@click.option(
    "--threshold",
    type=click.FloatRange(min=0.0, max=1.0),
    default=None,
    help="Confidence threshold in [0, 1]; keeps the current value when omitted.",
)
def auto_resolve_set(
    db_path: Path | None,
    outcome_id: str,
    mode: str,
    threshold: float | None,
) -> None:
    """Update the auto-resolve configuration."""

    _run(
        HOMR_CONTROLLER.set_auto_resolve,
        AutoResolveSetCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            mode=mode.lower(),
            threshold=threshold,
        ),
    )


@auto_resolve.command("run")
@db_path_option
@click.option("--outcome", "outcome_id", required=True, help="Outcome id.")
def auto_resolve_run(db_path: Path | None, outcome_id: str) -> None:
    """Try to auto-resolve every pending escalation of an outcome."""

    _run(
        HOMR_CONTROLLER.run_auto_resolve,
        OutcomeCommand(db_path=db_path, outcome_id=outcome_id),
    )


# -- improvement analysis -------------------------------------------------------


@homr.group()
def analysis() -> None:
    """Improvement analysis commands."""


@analysis.command("start")
@db_path_option
@click.option("--outcome", "outcome_id", default=None, help="Limit analysis to one outcome.")
@click.option(
    "--lookback-days",
    type=click.IntRange(min=1, max=365),
    default=None,
    help="Escalation window; defaults to HOMR_ANALYSIS_LOOKBACK_DAYS.",
)
@click.option(
    "--max-proposals",
    type=click.IntRange(min=1, max=10),
    default=None,
    help="Proposal cap; defaults to HOMR_ANALYSIS_MAX_PROPOSALS.",
)
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Block until the job finishes. A detached job stops when this process exits.",
)
def analysis_start(
    db_path: Path | None,
    outcome_id: str | None,
    lookback_days: int | None,
    max_proposals: int | None,
    wait: bool,
) -> None:
    """Cluster recent escalations and propose improvement outcomes."""

    _run(
        HOMR_CONTROLLER.start_analysis,
        AnalysisStartCommand(
            db_path=db_path,
            outcome_id=outcome_id,
            lookback_days=lookback_days,
            max_proposals=max_proposals,
            wait=wait,
        ),
    )


@analysis.command("status")
@db_path_option
@click.option("--job", "job_id", required=True, help="Analysis job id.")
def analysis_status(db_path: Path | None, job_id: str) -> None:
    """Show one analysis job with its result."""

    _run(HOMR_CONTROLLER.analysis_status, AnalysisJobCommand(db_path=db_path, job_id=job_id))


@analysis.command("active")
@db_path_option
def analysis_active(db_path: Path | None) -> None:
    """List pending and running analysis jobs."""

    _run(HOMR_CONTROLLER.active_analyses, AnalysisListCommand(db_path=db_path))


@analysis.command("recent")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="Max jobs to print.",
)
def analysis_recent(db_path: Path | None, limit: int) -> None:
    """List recent analysis jobs."""

    _run(HOMR_CONTROLLER.recent_analyses, AnalysisListCommand(db_path=db_path, limit=limit))


# -- observation ----------------------------------------------------------------


@homr.command("observe")
@db_path_option
@click.option("--task", "task_id", required=True, help="Completed task id.")
@click.option(
    "--output-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File holding the worker's full output.",
)
@click.option("--quick", is_flag=True, help="Record a quick observation without a model call.")
@click.option("--failed", is_flag=True, help="With --quick: the task failed.")
@click.option("--worker", "worker_id", default=None, help="Reporting worker id.")
def observe(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    output_file: Path | None,
    quick: bool,
    failed: bool,
    worker_id: str | None,
) -> None:
    """Observe a completed task, then escalate or steer."""

    _run(
        HOMR_CONTROLLER.observe,
        ObserveCommand(
            db_path=db_path,
            task_id=task_id,
            output_file=output_file,
            quick=quick,
            failed=failed,
            worker_id=worker_id,
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    _emit_lines(_guard(lambda: handler(command)))


def _guard(produce: Callable[[], list[str]]) -> list[str]:
    try:
        return produce()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    homr()
