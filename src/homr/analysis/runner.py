"""Background improvement analysis jobs with poll-based status."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from homr.analysis.analyzer import AnalysisResult, ImprovementAnalyzer
from homr.config import AnalysisSettings
from homr.orchestrator.models import ActivityEvent, AnalysisJobView
from homr.orchestrator.repository import HomrRepository

logger = logging.getLogger(__name__)

STALE_JOB_ERROR = "Analysis process exited before the job finished"

AnalyzerFactory = Callable[[HomrRepository], ImprovementAnalyzer]


class AnalysisJobRunner:
    """Own the job lifecycle; clustering itself is delegated to the analyzer."""

    def __init__(
        self,
        repository: HomrRepository,
        *,
        analyzer_factory: AnalyzerFactory,
        settings: AnalysisSettings | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self._repository = repository
        self._analyzer_factory = analyzer_factory
        self._settings = settings or AnalysisSettings()
        self._sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._threads: dict[str, threading.Thread] = {}
        self._threads_lock = threading.Lock()

    def start_background_analysis(
        self,
        *,
        outcome_id: str | None = None,
        lookback_days: int | None = None,
        max_proposals: int | None = None,
    ) -> str:
        """Persist a pending job and run it on a daemon thread; returns the job id."""

        job = self._repository.create_analysis_job(
            outcome_id=outcome_id,
            lookback_days=self._settings.lookback_days if lookback_days is None else lookback_days,
            max_proposals=self._settings.max_proposals if max_proposals is None else max_proposals,
            progress_message="Queued for analysis...",
        )
        thread = threading.Thread(
            target=self._run_job,
            args=(job,),
            daemon=True,
            name=f"homr-analysis-{job.job_id}",
        )
        with self._threads_lock:
            self._threads[job.job_id] = thread
        thread.start()
        logger.info("Started analysis job %s", job.job_id)
        return job.job_id

    def _run_job(self, job: AnalysisJobView) -> None:
        repo = HomrRepository(
            self._repository.db_path,
            sqlite_busy_timeout_ms=self._sqlite_busy_timeout_ms,
        )
        try:
            self._execute(repo, job)
        except Exception as error:  # noqa: BLE001
            logger.exception("Analysis job %s failed", job.job_id)
            repo.fail_analysis_job(job.job_id, error=str(error) or type(error).__name__)
            if job.outcome_id is not None:
                repo.log_activity(
                    job.outcome_id,
                    event=ActivityEvent.ANALYSIS_FAILED,
                    summary=f"Improvement analysis failed: {error}",
                    details={"job_id": job.job_id},
                )
        finally:
            repo.close()
            with self._threads_lock:
                self._threads.pop(job.job_id, None)

    def _execute(self, repo: HomrRepository, job: AnalysisJobView) -> None:
        repo.start_analysis_job(job.job_id, progress_message="Initializing analysis...")
        if job.outcome_id is not None:
            repo.log_activity(
                job.outcome_id,
                event=ActivityEvent.ANALYSIS_STARTED,
                summary=f"Improvement analysis started (last {job.lookback_days} days)",
                details={"job_id": job.job_id},
            )

        def report(message: str) -> None:
            repo.update_analysis_job_progress(job.job_id, progress_message=message)

        report(f"Fetching escalations from the last {job.lookback_days} days...")
        analyzer = self._analyzer_factory(repo)
        result = analyzer.analyze(
            lookback_days=job.lookback_days,
            outcome_id=job.outcome_id,
            max_proposals=job.max_proposals,
            on_progress=report,
        )
        summary = summarize_result(result)
        repo.complete_analysis_job(job.job_id, result=summary)
        logger.info("Analysis job %s completed: %s", job.job_id, summary["message"])
        if job.outcome_id is not None:
            repo.log_activity(
                job.outcome_id,
                event=ActivityEvent.ANALYSIS_COMPLETED,
                summary=summary["message"],
                details={
                    "job_id": job.job_id,
                    "clusters": len(result.clusters),
                    "proposals": len(result.proposals),
                },
            )

    def get_job_status(self, job_id: str) -> AnalysisJobView | None:
        return self._repository.get_analysis_job(job_id)

    def get_active_analysis_jobs(self) -> list[AnalysisJobView]:
        return self._repository.list_active_analysis_jobs()

    def get_recent_analysis_jobs(self, *, limit: int = 10) -> list[AnalysisJobView]:
        return self._repository.list_recent_analysis_jobs(limit=limit)

    def has_active_analysis(self, outcome_id: str | None = None) -> bool:
        return any(
            outcome_id is None or job.outcome_id == outcome_id
            for job in self.get_active_analysis_jobs()
        )

    def wait(self, job_id: str, *, timeout: float | None = None) -> AnalysisJobView | None:
        """Block until the job thread started by this runner exits, then read the job."""

        with self._threads_lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.get_job_status(job_id)

    def recover_stale_jobs(self) -> int:
        """Fail pending/running jobs; only safe when no runner thread is alive."""

        with self._threads_lock:
            if self._threads:
                return 0
        recovered = self._repository.mark_stale_analysis_jobs_failed(error=STALE_JOB_ERROR)
        if recovered:
            logger.warning("Marked %d stale analysis job(s) as failed", recovered)
        return recovered


def summarize_result(result: AnalysisResult) -> dict[str, Any]:
    """JSON-ready job result: clusters, proposals, timestamp and a summary message."""

    clusters = [
        {
            "id": cluster.cluster_id,
            "root_cause": cluster.root_cause,
            "pattern_description": cluster.pattern_description,
            "problem_statement": cluster.problem_statement,
            "severity": cluster.severity.value,
            "escalation_count": len(cluster.escalations),
            "trigger_types": sorted(
                {escalation.trigger_type for escalation in cluster.escalations},
            ),
        }
        for cluster in result.clusters
    ]
    proposals = [
        {
            "cluster_id": proposal.cluster.cluster_id,
            "root_cause": proposal.cluster.root_cause,
            "escalation_count": len(proposal.cluster.escalations),
            "problem_summary": proposal.cluster.problem_statement,
            "outcome_name": proposal.outcome_name,
            "proposed_tasks": [
                {"title": task.title, "description": task.description, "priority": task.priority}
                for task in proposal.tasks
            ],
            "intent": {
                "summary": proposal.intent.summary,
                "item_count": len(proposal.intent.items),
                "success_criteria": proposal.intent.success_criteria,
            },
            "approach": {
                "summary": proposal.approach.summary,
                "step_count": len(proposal.approach.steps),
                "risks": proposal.approach.risks,
            },
        }
        for proposal in result.proposals
    ]
    summary: dict[str, Any] = {
        "escalations_analyzed": result.escalations_analyzed,
        "clusters": clusters,
        "proposals": proposals,
        "analyzed_at": result.analyzed_at.isoformat(),
        "message": result_message(result),
    }
    if result.outcomes_created:
        summary["outcomes_created"] = [
            {"id": outcome.outcome_id, "name": outcome.name}
            for outcome in result.outcomes_created
        ]
    return summary


def result_message(result: AnalysisResult) -> str:
    if result.escalations_analyzed == 0:
        return (
            "No escalations found for analysis. "
            "System is running smoothly or HOMR is not enabled."
        )
    if not result.clusters:
        return (
            f"Analyzed {result.escalations_analyzed} escalation(s) "
            "but no recurring patterns were identified."
        )
    if not result.proposals:
        return (
            f"Identified {len(result.clusters)} cluster(s) from "
            f"{result.escalations_analyzed} escalation(s), "
            "but could not generate improvement proposals."
        )
    created = (
        f" Created {len(result.outcomes_created)} improvement outcome(s)."
        if result.outcomes_created
        else ""
    )
    return (
        f"Analyzed {result.escalations_analyzed} escalation(s), "
        f"identified {len(result.clusters)} pattern cluster(s), "
        f"and generated {len(result.proposals)} improvement proposal(s).{created}"
    )
