"""Deterministic ambiguity detection over raw worker output."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass

from homr.orchestrator.models import AmbiguitySignal, AmbiguityType

EVIDENCE_WINDOW_CHARS = 50


@dataclass(slots=True, frozen=True)
class AmbiguityPattern:
    pattern: re.Pattern[str]
    type: AmbiguityType
    description: str


def _compile(expression: str) -> re.Pattern[str]:
    return re.compile(expression, re.IGNORECASE)


AMBIGUITY_PATTERNS: tuple[AmbiguityPattern, ...] = (
    AmbiguityPattern(
        _compile(r"I('m| am) (not sure|unsure|uncertain)"),
        AmbiguityType.UNCLEAR_REQUIREMENT,
        "Worker expressed uncertainty",
    ),
    AmbiguityPattern(
        _compile(r"assuming (that|this)"),
        AmbiguityType.UNCLEAR_REQUIREMENT,
        "Worker made assumptions",
    ),
    AmbiguityPattern(
        _compile(r"need(s)? clarification"),
        AmbiguityType.UNCLEAR_REQUIREMENT,
        "Worker requested clarification",
    ),
    AmbiguityPattern(
        _compile(r"could (go either|be done|approach)"),
        AmbiguityType.MULTIPLE_APPROACHES,
        "Multiple valid approaches identified",
    ),
    AmbiguityPattern(
        _compile(r"which (approach|method|way)"),
        AmbiguityType.MULTIPLE_APPROACHES,
        "Decision needed between approaches",
    ),
    AmbiguityPattern(
        _compile(r"Option (A|B|1|2)"),
        AmbiguityType.MULTIPLE_APPROACHES,
        "Options listed without resolution",
    ),
    AmbiguityPattern(
        _compile(r"blocked (by|on|waiting)"),
        AmbiguityType.BLOCKING_DECISION,
        "Work is blocked",
    ),
    AmbiguityPattern(
        _compile(r"can('t| not) proceed"),
        AmbiguityType.BLOCKING_DECISION,
        "Cannot proceed without decision",
    ),
    AmbiguityPattern(
        _compile(r"need(s)? (a |to )?(decision|input)"),
        AmbiguityType.BLOCKING_DECISION,
        "Decision needed to proceed",
    ),
    AmbiguityPattern(
        _compile(r"contradict(s|ing)?"),
        AmbiguityType.CONTRADICTING_INFO,
        "Contradiction detected",
    ),
    AmbiguityPattern(
        _compile(r"conflict(s|ing)? with"),
        AmbiguityType.CONTRADICTING_INFO,
        "Conflicting information",
    ),
    AmbiguityPattern(
        _compile(r"inconsistent"),
        AmbiguityType.CONTRADICTING_INFO,
        "Inconsistent requirements",
    ),
)

# Most specific first; breaks ties between equally frequent types.
TYPE_SPECIFICITY: tuple[AmbiguityType, ...] = (
    AmbiguityType.BLOCKING_DECISION,
    AmbiguityType.MULTIPLE_APPROACHES,
    AmbiguityType.CONTRADICTING_INFO,
    AmbiguityType.UNCLEAR_REQUIREMENT,
)

SUGGESTED_QUESTIONS: dict[AmbiguityType, str] = {
    AmbiguityType.UNCLEAR_REQUIREMENT: "What is the expected behavior for this requirement?",
    AmbiguityType.MULTIPLE_APPROACHES: "Which approach should be used?",
    AmbiguityType.BLOCKING_DECISION: "How should we proceed with this blocking issue?",
    AmbiguityType.CONTRADICTING_INFO: "Which information should take precedence?",
}
DEFAULT_SUGGESTED_QUESTION = "How should we handle this ambiguity?"


def suggested_question(ambiguity_type: AmbiguityType) -> str:
    return SUGGESTED_QUESTIONS.get(ambiguity_type, DEFAULT_SUGGESTED_QUESTION)


def detect_ambiguity_patterns(output: str) -> AmbiguitySignal | None:
    """Scan output with the pattern table and pick the dominant ambiguity type.

    Each pattern contributes at most one match. Evidence is the match plus
    ``EVIDENCE_WINDOW_CHARS`` of surrounding text on each side.
    """

    matches: list[tuple[AmbiguityPattern, str]] = []
    for entry in AMBIGUITY_PATTERNS:
        match = entry.pattern.search(output)
        if match is None:
            continue
        start = max(0, match.start() - EVIDENCE_WINDOW_CHARS)
        end = min(len(output), match.end() + EVIDENCE_WINDOW_CHARS)
        matches.append((entry, output[start:end].strip()))

    if not matches:
        return None

    counts = Counter(entry.type for entry, _ in matches)
    primary = max(
        counts,
        key=lambda ambiguity_type: (
            counts[ambiguity_type],
            -TYPE_SPECIFICITY.index(ambiguity_type),
        ),
    )
    description = next(entry.description for entry, _ in matches if entry.type == primary)
    return AmbiguitySignal(
        type=primary,
        description=description,
        evidence=[evidence for _, evidence in matches],
        affected_tasks=[],
        suggested_question=suggested_question(primary),
    )
