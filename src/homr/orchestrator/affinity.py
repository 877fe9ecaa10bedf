"""Strategies deciding which pending tasks share an escalation's ambiguity."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Protocol

from homr.orchestrator.models import TaskView

STOPWORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been",
        "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "as",
    },
)  # fmt: skip

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


class TaskAffinity(Protocol):
    """Protocol for task relatedness strategies."""

    def related_tasks(self, trigger: TaskView, candidates: Sequence[TaskView]) -> list[str]:
        """Return ids of candidates related to the trigger task."""


def extract_keywords(text: str) -> set[str]:
    """Lower-cased alphanumeric tokens longer than two characters, minus stopwords."""

    cleaned = _NON_ALNUM_RE.sub(" ", text.lower())
    return {word for word in cleaned.split() if len(word) > 2 and word not in STOPWORDS}


class KeywordOverlapAffinity:
    """Related means at least ``min_overlap`` shared keywords in title plus description."""

    def __init__(self, *, min_overlap: int = 2) -> None:
        self.min_overlap = min_overlap

    def related_tasks(self, trigger: TaskView, candidates: Sequence[TaskView]) -> list[str]:
        keywords = extract_keywords(f"{trigger.title} {trigger.description}")
        related: list[str] = []
        for candidate in candidates:
            if candidate.task_id == trigger.task_id:
                continue
            overlap = keywords & extract_keywords(f"{candidate.title} {candidate.description}")
            if len(overlap) >= self.min_overlap:
                related.append(candidate.task_id)
        return related
