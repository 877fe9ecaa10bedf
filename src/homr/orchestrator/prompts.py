"""Prompt templates and response parsers for HOMR model calls."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from homr.orchestrator.contracts import drift_from_payload, issue_from_payload, option_from_payload
from homr.orchestrator.models import (
    AmbiguitySignal,
    AutoResolveDecision,
    ContextSnapshot,
    DriftItem,
    EscalationView,
    OutcomeIntent,
    OutcomeView,
    Quality,
    QualityIssue,
    QuestionOption,
    TaskView,
)

logger = logging.getLogger(__name__)

OUTPUT_TRUNCATION_MARKER = "\n\n[Output truncated due to length...]"
DESIGN_SUMMARY_CHARS = 500
MIN_QUESTION_OPTIONS = 2
MAX_QUESTION_OPTIONS = 4
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

OBSERVER_SYSTEM_PROMPT = (
    "You are HOMR, an intelligent orchestration layer that observes task outputs. "
    "Respond only with valid JSON."
)
QUESTION_SYSTEM_PROMPT = (
    "You are HOMR, generating clear questions for human decision-making. "
    "Respond only with valid JSON."
)

OBSERVATION_PROMPT = """\
# Task Observation Analysis

You are HOMR, an intelligent orchestration layer that observes completed task outputs \
and extracts learnings. Your job is to analyze this completed task against the outcome \
intent and design.

## Outcome Context

**Intent Summary:** {intent_summary}

**PRD Items:**
{intent_items}

**Design Approach:**
{design_summary}

## Prior Context (from other tasks)
{context_summary}

## Task Information

**Task ID:** {task_id}
**Task Title:** {task_title}
**Task Description:** {task_description}

## Task Output

```
{task_output}
```

## Analysis Required

Analyze this task output and provide:

1. **Alignment Check** (0-100 score)
   - Does this work align with the intent?
   - Does it follow the design approach?
   - Any scope creep or wrong direction?

2. **Quality Assessment** (good | needs_work | off_rails)
   - Is the work well-executed?
   - Any obvious issues or shortcuts?

3. **Drift Detection**
   - Look for: scope_creep, wrong_direction, missed_requirement, contradicts_design
   - Include evidence (quote from output)

4. **Discovery Extraction**
   - What did this task learn that other tasks should know?
   - Types: constraint, dependency, pattern, decision, blocker
   - Which tasks would benefit? (use task IDs or '*' for all)

5. **Ambiguity Detection**
   - Does the output show uncertainty?
   - Are there unresolved decisions?
   - Would a human want to know about something before continuing?
   - Types: unclear_requirement, multiple_approaches, blocking_decision, contradicting_info

## Response Format

Respond with a JSON object (no markdown code block):

{{
  "onTrack": boolean,
  "alignmentScore": number,
  "quality": "good" | "needs_work" | "off_rails",
  "drift": [
    {{
      "type": "scope_creep" | "wrong_direction" | "missed_requirement" | "contradicts_design",
      "description": "what drifted",
      "severity": "low" | "medium" | "high",
      "evidence": "quote from output"
    }}
  ],
  "discoveries": [
    {{
      "type": "constraint" | "dependency" | "pattern" | "decision" | "blocker",
      "content": "what was discovered",
      "relevantTasks": ["task_ids"] or ["*"]
    }}
  ],
  "issues": [
    {{
      "type": "type of issue",
      "description": "description",
      "severity": "low" | "medium" | "high"
    }}
  ],
  "ambiguity": {{
    "detected": boolean,
    "type": "unclear_requirement" | "multiple_approaches" | "blocking_decision" | \
"contradicting_info",
    "description": "what is ambiguous",
    "evidence": ["quotes from output"],
    "suggestedQuestion": "question for human"
  }} | null,
  "summary": "Brief 1-2 sentence summary of the observation"
}}"""

ESCALATION_QUESTION_PROMPT = """\
# Escalation Question Generation

You are HOMR, helping to formulate a clear question for a human when ambiguity is detected.

## Context

**Task:** {task_title}
**Task Description:** {task_description}

**Outcome Intent:** {intent_summary}

## Detected Ambiguity

**Type:** {ambiguity_type}
**Description:** {ambiguity_description}

**Evidence from task output:**
{evidence}

## Requirements

Generate a clear, actionable question with 2-4 concrete options. Each option should:
- Have a short, clear label
- Include a description of what it means
- Explain the implications of choosing it

The question should be specific enough that the answer directly resolves the ambiguity.

## Response Format

Respond with a JSON object (no markdown code block):

{{
  "questionText": "The main question to ask",
  "questionContext": "Brief context about why this needs to be decided",
  "options": [
    {{
      "id": "option_a",
      "label": "Short Label",
      "description": "What this option means",
      "implications": "What happens if this is chosen"
    }}
  ]
}}"""

AUTO_RESOLVE_PROMPT = """\
You are evaluating an escalation to decide if it can be automatically resolved or needs \
human input.

ESCALATION:
Question: {question}
Options:
{options}

TASK CONTEXT:
Title: {task_title}
Description: {task_description}
Attempts so far: {attempts}
Max attempts: {max_attempts}

OUTCOME CONTEXT:
Name: {outcome_name}
Past decisions in this outcome: {past_decisions}

INSTRUCTIONS:
1. Analyze the escalation and available options
2. Consider the task context and past decisions
3. Decide if this can be safely auto-resolved or needs human judgment

RESPOND IN THIS EXACT JSON FORMAT:
{{
  "shouldAutoResolve": true/false,
  "selectedOption": "option_id or null if shouldAutoResolve is false",
  "reasoning": "Brief explanation of your decision",
  "confidence": 0.0-1.0
}}

GUIDELINES:
- Complexity/turn limit issues → usually safe to auto-resolve with decomposition
- Ambiguous requirements → needs human
- Security/destructive operations → NEVER auto-resolve
- Repeated failures → human should review
- If unsure, set shouldAutoResolve to false"""

DECOMPOSITION_PROMPT = """\
You are decomposing a complex software task into smaller, independently completable subtasks.

ORIGINAL TASK
Title: {task_title}
Description: {task_description}
{context_info}

CONSTRAINTS
- Create between 2 and {max_subtasks} subtasks
- Each subtask should be independently completable
- Subtasks can depend on earlier subtasks only (0-based indices)
- Subtask with index 0 is the first subtask and cannot depend on anything

Respond with a JSON object (no markdown code block):

{{
  "reasoning": "Why you split it this way and the dependency chain",
  "subtasks": [
    {{
      "title": "Clear, actionable title",
      "description": "What needs to be done",
      "depends_on": [0]
    }}
  ]
}}

Guidelines for splitting:
- Natural boundaries: setup -> implementation -> integration -> testing
- Technical layers: database -> API -> UI
- Each subtask should have clear deliverables
- Avoid circular dependencies"""

CLUSTER_PROMPT = """\
Analyze these escalations from an AI worker management system to identify recurring \
patterns and root causes.

ESCALATIONS:
{escalations}

Your task is to:
1. Identify clusters of escalations with the same root cause
2. Each cluster should have at least {min_cluster_size} related escalations
3. Name each root cause clearly (e.g., "unclear_requirements", "missing_context", \
"ambiguous_priorities")
4. Write a concise problem statement for each cluster
5. Assess severity based on frequency and impact (low/medium/high/critical)

Return your analysis as JSON in this exact format:
{{
  "clusters": [
    {{
      "root_cause": "string - short snake_case identifier",
      "pattern_description": "string - detailed description of the pattern",
      "problem_statement": "string - the core problem to solve",
      "severity": "low|medium|high|critical",
      "escalation_indices": [0, 1, 2]
    }}
  ]
}}

If no clear clusters can be identified, return: {{"clusters": []}}

Only output the JSON, nothing else."""

PROPOSAL_PROMPT = """\
Create an improvement outcome to fix this recurring issue in an AI worker management system.

ROOT CAUSE: {root_cause}
PATTERN: {pattern_description}
PROBLEM: {problem_statement}
SEVERITY: {severity}
OCCURRENCE COUNT: {occurrences}

EXAMPLE ESCALATIONS:
{examples}

Generate a complete improvement plan including:
1. A clear outcome name (action-oriented, e.g., "Improve requirement clarity for worker tasks")
2. An intent/PRD with specific items and acceptance criteria
3. An approach with concrete steps to implement the fix
4. A set of tasks to execute the improvement

Return as JSON in this exact format:
{{
  "outcome_name": "string",
  "intent": {{
    "summary": "string - what we're trying to achieve",
    "items": [
      {{
        "title": "string",
        "description": "string",
        "acceptance_criteria": ["string"],
        "priority": "critical|high|medium|low"
      }}
    ],
    "success_criteria": ["string - how we'll know the problem is solved"]
  }},
  "approach": {{
    "summary": "string - how we'll solve this",
    "steps": ["string"],
    "risks": ["string"],
    "dependencies": ["string"]
  }},
  "tasks": [
    {{
      "title": "string",
      "description": "string",
      "priority": 1
    }}
  ]
}}

Only output the JSON, nothing else."""


@dataclass(slots=True)
class ObservationResponse:
    """Validated observation fields returned by the model."""

    on_track: bool
    alignment_score: int
    quality: Quality
    summary: str
    drift: list[DriftItem] = field(default_factory=list)
    discoveries: list[dict[str, Any]] = field(default_factory=list)
    issues: list[QualityIssue] = field(default_factory=list)
    ambiguity: dict[str, Any] | None = None


@dataclass(slots=True)
class QuestionResponse:
    """Validated escalation question returned by the model."""

    question_text: str
    question_context: str
    options: list[QuestionOption]


def build_observation_prompt(
    *,
    task: TaskView,
    full_output: str,
    intent: OutcomeIntent | None,
    design_approach: str | None,
    snapshot: ContextSnapshot | None,
    output_max_chars: int = 50_000,
) -> str:
    """Render the observation prompt for one completed task."""

    intent_summary = intent.summary if intent is not None and intent.summary else None
    intent_items = (
        "\n".join(
            f"- {item.title}: {item.description} [{item.priority}]" for item in intent.items
        )
        if intent is not None and intent.items
        else None
    )
    return OBSERVATION_PROMPT.format(
        intent_summary=intent_summary or "No specific intent defined.",
        intent_items=intent_items or "No items defined.",
        design_summary=extract_design_summary(design_approach)
        if design_approach
        else "No design document.",
        context_summary=build_context_summary(snapshot)
        if snapshot is not None
        else "No prior context.",
        task_id=task.task_id,
        task_title=task.title,
        task_description=task.description or "No description",
        task_output=truncate_output(full_output, max_chars=output_max_chars),
    )


def truncate_output(full_output: str, *, max_chars: int) -> str:
    if len(full_output) <= max_chars:
        return full_output
    return full_output[:max_chars] + OUTPUT_TRUNCATION_MARKER


def extract_design_summary(design_doc: str) -> str:
    """Prefer a JSON design doc's summary or architecture, else its first characters."""

    try:
        parsed = json.loads(design_doc)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        if parsed.get("summary"):
            return str(parsed["summary"])
        if parsed.get("architecture"):
            return f"Architecture: {parsed['architecture']}"
    suffix = "..." if len(design_doc) > DESIGN_SUMMARY_CHARS else ""
    return design_doc[:DESIGN_SUMMARY_CHARS] + suffix


def build_context_summary(snapshot: ContextSnapshot) -> str:
    parts: list[str] = []
    if snapshot.discoveries:
        parts.append("**Recent Discoveries:**")
        for discovery in snapshot.discoveries[-5:]:
            parts.append(
                f"- [{discovery.type.value}] {discovery.content} (from: {discovery.source})",
            )
    if snapshot.decisions:
        parts.append("\n**Recent Decisions:**")
        for decision in snapshot.decisions[-3:]:
            parts.append(f"- {decision.content} (by: {decision.made_by.value})")
    active = [constraint for constraint in snapshot.constraints if constraint.active]
    if active:
        parts.append("\n**Active Constraints:**")
        for constraint in active:
            parts.append(f"- [{constraint.type}] {constraint.content}")
    if not parts:
        return "No prior context from other tasks."
    return "\n".join(parts)


def build_escalation_question_prompt(
    *,
    signal: AmbiguitySignal,
    task: TaskView,
    intent: OutcomeIntent | None,
) -> str:
    return ESCALATION_QUESTION_PROMPT.format(
        task_title=task.title,
        task_description=task.description or "No description",
        intent_summary=intent.summary
        if intent is not None and intent.summary
        else "No specific intent defined.",
        ambiguity_type=signal.type.value,
        ambiguity_description=signal.description,
        evidence="\n".join(f'- "{item}"' for item in signal.evidence),
    )


def strip_code_fences(response: str) -> str:
    text = response.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_observation_response(response: str) -> ObservationResponse | None:
    """Validate the observer's JSON answer; malformed answers yield ``None``."""

    try:
        parsed = json.loads(strip_code_fences(response))
    except json.JSONDecodeError as error:
        logger.warning("Failed to parse observation response: %s", error)
        return None
    if not isinstance(parsed, dict):
        logger.warning("Observation response is not a JSON object")
        return None

    on_track = parsed.get("onTrack")
    score = parsed.get("alignmentScore")
    quality_raw = parsed.get("quality")
    summary = parsed.get("summary")
    valid_qualities = {quality.value for quality in Quality}
    if (
        not isinstance(on_track, bool)
        or isinstance(score, bool)
        or not isinstance(score, (int, float))
        or quality_raw not in valid_qualities
        or not isinstance(summary, str)
    ):
        logger.warning("Invalid observation response: missing required fields")
        return None

    ambiguity = parsed.get("ambiguity")
    return ObservationResponse(
        on_track=on_track,
        alignment_score=int(max(0, min(100, score))),
        quality=Quality(quality_raw),
        summary=summary,
        drift=[drift_from_payload(item) for item in _object_list(parsed.get("drift"))],
        discoveries=_object_list(parsed.get("discoveries")),
        issues=[issue_from_payload(item) for item in _object_list(parsed.get("issues"))],
        ambiguity=ambiguity
        if isinstance(ambiguity, dict) and ambiguity.get("detected")
        else None,
    )


def parse_escalation_question_response(response: str) -> QuestionResponse | None:
    """Validate a generated question; fewer than two options yields ``None``.

    Options past the fourth are dropped.
    """

    try:
        parsed = json.loads(strip_code_fences(response))
    except json.JSONDecodeError as error:
        logger.warning("Failed to parse escalation question response: %s", error)
        return None
    if not isinstance(parsed, dict):
        return None
    question_text = parsed.get("questionText")
    question_context = parsed.get("questionContext")
    options = parsed.get("options")
    if (
        not isinstance(question_text, str)
        or not isinstance(question_context, str)
        or not isinstance(options, list)
        or len(options) < MIN_QUESTION_OPTIONS
    ):
        logger.warning("Invalid escalation question response")
        return None
    return QuestionResponse(
        question_text=question_text,
        question_context=question_context,
        options=[
            option_from_payload(option if isinstance(option, dict) else {}, index=index)
            for index, option in enumerate(options[:MAX_QUESTION_OPTIONS])
        ],
    )


def build_auto_resolve_prompt(
    *,
    escalation: EscalationView,
    task: TaskView | None,
    outcome: OutcomeView | None,
    past_decisions: list[str],
) -> str:
    return AUTO_RESOLVE_PROMPT.format(
        question=escalation.question_text,
        options="\n".join(
            f"- {option.id}: {option.label} - {option.description}"
            for option in escalation.options
        ),
        task_title=task.title if task is not None else "Unknown",
        task_description=(task.description[:500] if task is not None else "") or "No description",
        attempts=task.attempts if task is not None else 0,
        max_attempts=task.max_attempts if task is not None else 3,
        outcome_name=outcome.name if outcome is not None else "Unknown",
        past_decisions="; ".join(past_decisions[-5:]) if past_decisions else "None",
    )


def parse_auto_resolve_response(response: str) -> AutoResolveDecision:
    """Read the first JSON object; anything unusable becomes a zero-confidence deferral."""

    match = _JSON_OBJECT_RE.search(response)
    if match is None:
        logger.warning("Failed to parse auto-resolve response as JSON")
        return AutoResolveDecision(
            should_auto_resolve=False,
            selected_option=None,
            reasoning="Failed to parse auto-resolve decision",
            confidence=0.0,
        )
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as error:
        logger.warning("Failed to parse auto-resolve response: %s", error)
        parsed = None
    if not isinstance(parsed, dict):
        return AutoResolveDecision(
            should_auto_resolve=False,
            selected_option=None,
            reasoning="Failed to parse auto-resolve decision",
            confidence=0.0,
        )

    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.0
    selected = parsed.get("selectedOption")
    return AutoResolveDecision(
        should_auto_resolve=parsed.get("shouldAutoResolve") is True,
        selected_option=selected if isinstance(selected, str) and selected else None,
        reasoning=str(parsed.get("reasoning") or ""),
        confidence=float(max(0.0, min(1.0, confidence))),
    )


@dataclass(slots=True)
class SubtaskPlan:
    """One subtask proposed by the decomposition model."""

    title: str
    description: str
    depends_on: list[int] = field(default_factory=list)


@dataclass(slots=True)
class DecompositionPlan:
    reasoning: str
    subtasks: list[SubtaskPlan]


def build_decomposition_prompt(
    *,
    task: TaskView,
    intent: OutcomeIntent | None,
    approach: str | None,
    max_subtasks: int,
) -> str:
    context_lines: list[str] = []
    if intent is not None:
        context_lines.append(f"OUTCOME SUMMARY: {intent.summary}")
        if intent.success_criteria:
            context_lines.append(f"SUCCESS CRITERIA: {', '.join(intent.success_criteria)}")
    if approach:
        context_lines.append(f"APPROACH: {extract_design_summary(approach)}")
    return DECOMPOSITION_PROMPT.format(
        task_title=task.title,
        task_description=task.description or "No description provided",
        context_info="\n".join(context_lines),
        max_subtasks=max_subtasks,
    )


def parse_decomposition_response(response: str, *, max_subtasks: int) -> DecompositionPlan | None:
    """Validate subtasks; a dependency on a later or unknown index rejects the plan."""

    try:
        parsed = json.loads(strip_code_fences(response))
    except json.JSONDecodeError as error:
        logger.warning("Failed to parse decomposition response: %s", error)
        return None
    if not isinstance(parsed, dict):
        return None

    subtasks: list[SubtaskPlan] = []
    for raw in _object_list(parsed.get("subtasks")):
        title = str(raw.get("title") or "").strip()
        if not title:
            continue
        depends_on = raw.get("depends_on")
        subtasks.append(
            SubtaskPlan(
                title=title,
                description=str(raw.get("description") or "").strip() or title,
                depends_on=[
                    index
                    for index in (depends_on if isinstance(depends_on, list) else [])
                    if isinstance(index, int) and not isinstance(index, bool)
                ],
            ),
        )

    for position, subtask in enumerate(subtasks):
        for index in subtask.depends_on:
            if index < 0 or index >= position:
                logger.warning(
                    "Subtask %d cannot depend on subtask %d (earlier subtasks only)",
                    position,
                    index,
                )
                return None

    subtasks = subtasks[:max_subtasks]
    if len(subtasks) < 2:  # noqa: PLR2004
        logger.warning("Decomposition produced fewer than 2 subtasks")
        return None
    return DecompositionPlan(reasoning=str(parsed.get("reasoning") or ""), subtasks=subtasks)


def _object_list(raw: object) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]
