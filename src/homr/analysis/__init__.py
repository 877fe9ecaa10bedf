"""Improvement analysis: escalation clustering and background jobs."""

from homr.analysis.analyzer import (
    AnalysisResult,
    CompletionImprovementAnalyzer,
    EscalationCluster,
    ImprovementAnalyzer,
    ImprovementProposal,
)
from homr.analysis.runner import AnalysisJobRunner, summarize_result

__all__ = [
    "AnalysisJobRunner",
    "AnalysisResult",
    "CompletionImprovementAnalyzer",
    "EscalationCluster",
    "ImprovementAnalyzer",
    "ImprovementProposal",
    "summarize_result",
]
