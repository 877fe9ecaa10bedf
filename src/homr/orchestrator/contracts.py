"""JSON payload contracts for structured fields stored in SQLite text columns."""

from __future__ import annotations

import json
import logging
from typing import Any

from homr.orchestrator.models import (
    AmbiguitySignal,
    AmbiguityType,
    Constraint,
    ContextInjection,
    Decision,
    DecisionMaker,
    Discovery,
    DiscoveryType,
    DriftItem,
    EscalationAction,
    InjectionPriority,
    InjectionType,
    IntentItem,
    OutcomeIntent,
    QualityIssue,
    QuestionOption,
    Severity,
)
from homr.storage.database import parse_timestamp

logger = logging.getLogger(__name__)

CONTEXT_SCHEMA_VERSION = 1


def dump_json(payload: Any) -> str:
    """Serialize payload using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def load_json_list(raw: str | None) -> list[Any]:
    """Parse a JSON array column, treating malformed content as empty."""

    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON array column: %.100s", raw)
        return []
    if not isinstance(parsed, list):
        return []
    return parsed


def load_json_object(raw: str | None) -> dict[str, Any] | None:
    """Parse a JSON object column, treating malformed content as missing."""

    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON object column: %.100s", raw)
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def intent_to_payload(intent: OutcomeIntent) -> dict[str, Any]:
    return {
        "summary": intent.summary,
        "items": [
            {"title": item.title, "description": item.description, "priority": item.priority}
            for item in intent.items
        ],
        "success_criteria": list(intent.success_criteria),
    }


def intent_from_payload(raw: dict[str, Any]) -> OutcomeIntent:
    items_raw = raw.get("items")
    items = [
        IntentItem(
            title=str(item.get("title", "")),
            description=str(item.get("description", "")),
            priority=str(item.get("priority", "medium")),
        )
        for item in (items_raw if isinstance(items_raw, list) else [])
        if isinstance(item, dict)
    ]
    criteria_raw = raw.get("success_criteria")
    return OutcomeIntent(
        summary=str(raw.get("summary", "")),
        items=items,
        success_criteria=[str(value) for value in criteria_raw]
        if isinstance(criteria_raw, list)
        else [],
    )


def drift_to_payload(item: DriftItem) -> dict[str, Any]:
    return {
        "type": item.type,
        "description": item.description,
        "severity": item.severity.value,
        "evidence": item.evidence,
    }


def drift_from_payload(raw: dict[str, Any]) -> DriftItem:
    return DriftItem(
        type=str(raw.get("type", "unknown")),
        description=str(raw.get("description", "")),
        severity=Severity.parse(raw.get("severity")),
        evidence=str(raw.get("evidence", "")),
    )


def issue_to_payload(issue: QualityIssue) -> dict[str, Any]:
    return {
        "type": issue.type,
        "description": issue.description,
        "severity": issue.severity.value,
    }


def issue_from_payload(raw: dict[str, Any]) -> QualityIssue:
    return QualityIssue(
        type=str(raw.get("type", "unknown")),
        description=str(raw.get("description", "")),
        severity=Severity.parse(raw.get("severity")),
    )


def discovery_to_payload(discovery: Discovery) -> dict[str, Any]:
    return {
        "type": discovery.type.value,
        "content": discovery.content,
        "relevant_tasks": list(discovery.relevant_tasks),
        "source": discovery.source,
    }


def discovery_from_payload(raw: dict[str, Any], *, entry_id: str | None = None) -> Discovery:
    relevant = raw.get("relevant_tasks")
    return Discovery(
        type=DiscoveryType.parse(raw.get("type")),
        content=str(raw.get("content", "")),
        relevant_tasks=[str(task_id) for task_id in relevant] if isinstance(relevant, list) else [],
        source=str(raw.get("source", "")),
        entry_id=entry_id,
    )


def decision_to_payload(decision: Decision) -> dict[str, Any]:
    return {
        "decision_id": decision.decision_id,
        "content": decision.content,
        "made_by": decision.made_by.value,
        "made_at": decision.made_at.isoformat(),
        "context": decision.context,
        "affected_areas": list(decision.affected_areas),
    }


def decision_from_payload(raw: dict[str, Any]) -> Decision:
    areas = raw.get("affected_areas")
    return Decision(
        decision_id=str(raw["decision_id"]),
        content=str(raw.get("content", "")),
        made_by=DecisionMaker(raw.get("made_by", DecisionMaker.HOMR.value)),
        made_at=parse_timestamp(str(raw["made_at"])),
        context=str(raw.get("context", "")),
        affected_areas=[str(area) for area in areas] if isinstance(areas, list) else [],
    )


def constraint_to_payload(constraint: Constraint) -> dict[str, Any]:
    return {
        "constraint_id": constraint.constraint_id,
        "type": constraint.type,
        "content": constraint.content,
        "source": constraint.source,
        "discovered_at": constraint.discovered_at.isoformat(),
        "active": constraint.active,
    }


def constraint_from_payload(raw: dict[str, Any]) -> Constraint:
    return Constraint(
        constraint_id=str(raw["constraint_id"]),
        type=str(raw.get("type", "")),
        content=str(raw.get("content", "")),
        source=str(raw.get("source", "")),
        discovered_at=parse_timestamp(str(raw["discovered_at"])),
        active=bool(raw.get("active", True)),
    )


def injection_to_payload(injection: ContextInjection) -> dict[str, Any]:
    return {
        "injection_id": injection.injection_id,
        "type": injection.type.value,
        "content": injection.content,
        "source": injection.source,
        "priority": injection.priority.value,
        "target_task_id": injection.target_task_id,
        "created_at": injection.created_at.isoformat(),
    }


def injection_from_payload(raw: dict[str, Any]) -> ContextInjection:
    return ContextInjection(
        injection_id=str(raw["injection_id"]),
        type=InjectionType(raw.get("type", InjectionType.DISCOVERY.value)),
        content=str(raw.get("content", "")),
        source=str(raw.get("source", "")),
        priority=InjectionPriority(raw.get("priority", InjectionPriority.NICE_TO_KNOW.value)),
        target_task_id=str(raw.get("target_task_id", "*")),
        created_at=parse_timestamp(str(raw["created_at"])),
    )


def option_to_payload(option: QuestionOption) -> dict[str, Any]:
    return {
        "id": option.id,
        "label": option.label,
        "description": option.description,
        "implications": option.implications,
        "action": option.action.value if option.action is not None else None,
    }


def option_from_payload(raw: dict[str, Any], *, index: int = 0) -> QuestionOption:
    """Build an option, tagging its action from the id when the payload carries none."""

    option_id = str(raw.get("id") or f"option_{index}")
    action_raw = raw.get("action")
    action: EscalationAction | None
    if isinstance(action_raw, str):
        try:
            action = EscalationAction(action_raw)
        except ValueError:
            action = EscalationAction.infer(option_id)
    elif "action" in raw:
        action = None
    else:
        action = EscalationAction.infer(option_id)
    return QuestionOption(
        id=option_id,
        label=str(raw.get("label") or f"Option {index + 1}"),
        description=str(raw.get("description") or ""),
        implications=str(raw.get("implications") or ""),
        action=action,
    )


def ambiguity_to_payload(signal: AmbiguitySignal) -> dict[str, Any]:
    return {
        "detected": True,
        "type": signal.type.value,
        "description": signal.description,
        "evidence": list(signal.evidence),
        "affected_tasks": list(signal.affected_tasks),
        "suggested_question": signal.suggested_question,
        "options": [option_to_payload(option) for option in signal.options],
    }


def ambiguity_from_payload(raw: dict[str, Any]) -> AmbiguitySignal | None:
    try:
        ambiguity_type = AmbiguityType(raw.get("type"))
    except ValueError:
        return None
    evidence = raw.get("evidence")
    affected = raw.get("affected_tasks")
    options = raw.get("options")
    return AmbiguitySignal(
        type=ambiguity_type,
        description=str(raw.get("description", "")),
        evidence=[str(value) for value in evidence] if isinstance(evidence, list) else [],
        affected_tasks=[str(value) for value in affected] if isinstance(affected, list) else [],
        suggested_question=str(raw.get("suggested_question", "")),
        options=[
            option_from_payload(option, index=index)
            for index, option in enumerate(options if isinstance(options, list) else [])
            if isinstance(option, dict)
        ],
    )
