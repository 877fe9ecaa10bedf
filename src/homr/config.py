"""Runtime configuration for the HOMR supervisory loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMPLETION_COMMAND_TEMPLATE = (
    "claude -p {prompt} --append-system-prompt {system_prompt} "
    "--max-turns {max_turns} --model {model}"
)


@dataclass(slots=True)
class HomrSettings:
    """Observation, compaction and model-call limits."""

    output_max_chars: int = 50_000
    max_discoveries: int = 50
    observe_timeout_seconds: int = 60
    question_timeout_seconds: int = 30
    auto_resolve_timeout_seconds: int = 30
    decompose_timeout_seconds: int = 90


@dataclass(slots=True)
class FailurePatternSettings:
    """Thresholds for multi-observation failure detection."""

    lookback: int = 5
    consecutive_failure_threshold: int = 3
    healthy_alignment: int = 50


@dataclass(slots=True)
class CompletionSettings:
    """External completion command settings."""

    command_template: str = DEFAULT_COMPLETION_COMMAND_TEMPLATE
    model: str = "sonnet"


@dataclass(slots=True)
class AnalysisSettings:
    """Improvement analysis job defaults."""

    lookback_days: int = 30
    max_proposals: int = 5
    cluster_timeout_seconds: int = 60
    proposal_timeout_seconds: int = 90


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".homr.db")
    sqlite_busy_timeout_ms: int = 5_000
    homr: HomrSettings = field(default_factory=HomrSettings)
    failure_patterns: FailurePatternSettings = field(default_factory=FailurePatternSettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("HOMR_DB_PATH", ".homr.db")),
            sqlite_busy_timeout_ms=int(os.getenv("HOMR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            homr=HomrSettings(
                output_max_chars=int(os.getenv("HOMR_OUTPUT_MAX_CHARS", "50000")),
                max_discoveries=int(os.getenv("HOMR_MAX_DISCOVERIES", "50")),
                observe_timeout_seconds=int(os.getenv("HOMR_OBSERVE_TIMEOUT_SECONDS", "60")),
                question_timeout_seconds=int(os.getenv("HOMR_QUESTION_TIMEOUT_SECONDS", "30")),
                auto_resolve_timeout_seconds=int(
                    os.getenv("HOMR_AUTO_RESOLVE_TIMEOUT_SECONDS", "30"),
                ),
                decompose_timeout_seconds=int(
                    os.getenv("HOMR_DECOMPOSE_TIMEOUT_SECONDS", "90"),
                ),
            ),
            failure_patterns=FailurePatternSettings(
                lookback=int(os.getenv("HOMR_FAILURE_LOOKBACK", "5")),
                consecutive_failure_threshold=int(os.getenv("HOMR_FAILURE_THRESHOLD", "3")),
                healthy_alignment=int(os.getenv("HOMR_HEALTHY_ALIGNMENT", "50")),
            ),
            completion=CompletionSettings(
                command_template=os.getenv(
                    "HOMR_COMPLETION_COMMAND_TEMPLATE",
                    DEFAULT_COMPLETION_COMMAND_TEMPLATE,
                ),
                model=os.getenv("HOMR_COMPLETION_MODEL", "sonnet"),
            ),
            analysis=AnalysisSettings(
                lookback_days=int(os.getenv("HOMR_ANALYSIS_LOOKBACK_DAYS", "30")),
                max_proposals=int(os.getenv("HOMR_ANALYSIS_MAX_PROPOSALS", "5")),
                cluster_timeout_seconds=int(
                    os.getenv("HOMR_ANALYSIS_CLUSTER_TIMEOUT_SECONDS", "60"),
                ),
                proposal_timeout_seconds=int(
                    os.getenv("HOMR_ANALYSIS_PROPOSAL_TIMEOUT_SECONDS", "90"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("HOMR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        positive_limits = {
            "HOMR_OUTPUT_MAX_CHARS": self.homr.output_max_chars,
            "HOMR_MAX_DISCOVERIES": self.homr.max_discoveries,
            "HOMR_OBSERVE_TIMEOUT_SECONDS": self.homr.observe_timeout_seconds,
            "HOMR_QUESTION_TIMEOUT_SECONDS": self.homr.question_timeout_seconds,
            "HOMR_AUTO_RESOLVE_TIMEOUT_SECONDS": self.homr.auto_resolve_timeout_seconds,
            "HOMR_DECOMPOSE_TIMEOUT_SECONDS": self.homr.decompose_timeout_seconds,
            "HOMR_FAILURE_LOOKBACK": self.failure_patterns.lookback,
            "HOMR_FAILURE_THRESHOLD": self.failure_patterns.consecutive_failure_threshold,
            "HOMR_ANALYSIS_LOOKBACK_DAYS": self.analysis.lookback_days,
            "HOMR_ANALYSIS_MAX_PROPOSALS": self.analysis.max_proposals,
            "HOMR_ANALYSIS_CLUSTER_TIMEOUT_SECONDS": self.analysis.cluster_timeout_seconds,
            "HOMR_ANALYSIS_PROPOSAL_TIMEOUT_SECONDS": self.analysis.proposal_timeout_seconds,
        }
        for name, value in positive_limits.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if not 0 <= self.failure_patterns.healthy_alignment <= 100:  # noqa: PLR2004
            raise ValueError("HOMR_HEALTHY_ALIGNMENT must be within [0, 100].")
        self.validate_completion()

    def validate_completion(self) -> None:
        """Raise configuration error if the completion command cannot be rendered."""

        template = self.completion.command_template.strip()
        if not template:
            raise ValueError("HOMR_COMPLETION_COMMAND_TEMPLATE must not be empty.")
        if "{prompt}" not in template:
            raise ValueError("HOMR_COMPLETION_COMMAND_TEMPLATE must include {prompt}.")
