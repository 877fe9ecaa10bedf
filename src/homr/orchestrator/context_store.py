"""Per-outcome cross-task knowledge base on top of the typed context entry log."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import uuid4

from homr.orchestrator.contracts import (
    constraint_from_payload,
    constraint_to_payload,
    decision_from_payload,
    decision_to_payload,
    discovery_from_payload,
    discovery_to_payload,
    injection_from_payload,
    injection_to_payload,
)
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    WILDCARD,
    AnswerPattern,
    Constraint,
    ContextEntryKind,
    ContextInjection,
    ContextSnapshot,
    Decision,
    DecisionMaker,
    Discovery,
    DiscoveryType,
    InjectionPriority,
    InjectionType,
    TaskContext,
)
from homr.orchestrator.repository import HomrRepository
from homr.storage.database import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISCOVERIES = 50
COMPACTION_SOURCE = "HOMR Compaction"

DISCOVERY_TYPE_PRIORITY: dict[DiscoveryType, int] = {
    DiscoveryType.BLOCKER: 100,
    DiscoveryType.CONSTRAINT: 80,
    DiscoveryType.DEPENDENCY: 70,
    DiscoveryType.DECISION: 60,
    DiscoveryType.PATTERN: 40,
    DiscoveryType.OTHER: 30,
}
RECENCY_BONUS_MAX = 50
WILDCARD_BONUS = 20

_DISCOVERY_DISPLAY_ORDER: tuple[DiscoveryType, ...] = (
    DiscoveryType.BLOCKER,
    DiscoveryType.CONSTRAINT,
    DiscoveryType.DEPENDENCY,
    DiscoveryType.DECISION,
    DiscoveryType.PATTERN,
    DiscoveryType.OTHER,
)
_INJECTION_TIERS: tuple[tuple[InjectionPriority, str], ...] = (
    (InjectionPriority.MUST_KNOW, "Must know"),
    (InjectionPriority.SHOULD_KNOW, "Should know"),
    (InjectionPriority.NICE_TO_KNOW, "Nice to know"),
)
_PATTERN_COUNT_RE = re.compile(r"count:(\d+)")


@dataclass(slots=True)
class CompactionResult:
    """Discovery counts around one compaction pass."""

    before: int
    after: int
    compacted: int


def answer_pattern_key(trigger_type: str, option_id: str) -> str:
    return f"answer_pattern:{trigger_type}:{option_id}"


def score_discovery(discovery: Discovery, *, index: int, total: int) -> float:
    """Relevance score used to decide which discoveries survive compaction."""

    score = float(DISCOVERY_TYPE_PRIORITY.get(discovery.type, 30))
    if total > 0:
        score += index / total * RECENCY_BONUS_MAX
    if discovery.is_wildcard:
        score += WILDCARD_BONUS
    return score


class ContextStore:
    """Discoveries, decisions, constraints and injections of each outcome."""

    def __init__(self, repository: HomrRepository, locks: OutcomeLockRegistry) -> None:
        self.repository = repository
        self.locks = locks

    # Writes

    def add_discovery(self, outcome_id: str, discovery: Discovery) -> Discovery:
        with self.locks.hold(outcome_id):
            entry_id = self.repository.append_context_entry(
                outcome_id,
                ContextEntryKind.DISCOVERY,
                discovery_to_payload(discovery),
                count_stat="discoveries_extracted",
            )
        return Discovery(
            type=discovery.type,
            content=discovery.content,
            relevant_tasks=list(discovery.relevant_tasks),
            source=discovery.source,
            entry_id=entry_id,
        )

    def add_discoveries(self, outcome_id: str, discoveries: Sequence[Discovery]) -> int:
        for discovery in discoveries:
            self.add_discovery(outcome_id, discovery)
        return len(discoveries)

    def record_decision(
        self,
        outcome_id: str,
        *,
        content: str,
        made_by: DecisionMaker,
        context: str = "",
        affected_areas: Sequence[str] = (),
    ) -> Decision:
        decision = Decision(
            decision_id=f"dec_{uuid4().hex[:16]}",
            content=content,
            made_by=made_by,
            made_at=utc_now(),
            context=context,
            affected_areas=list(affected_areas),
        )
        with self.locks.hold(outcome_id):
            self.repository.append_context_entry(
                outcome_id,
                ContextEntryKind.DECISION,
                decision_to_payload(decision),
                entry_id=decision.decision_id,
            )
        logger.info(
            "Recorded %s decision %s for outcome %s",
            made_by.value,
            decision.decision_id,
            outcome_id,
        )
        return decision

    def record_constraint(
        self,
        outcome_id: str,
        *,
        constraint_type: str,
        content: str,
        source: str,
    ) -> Constraint:
        constraint = Constraint(
            constraint_id=f"con_{uuid4().hex[:16]}",
            type=constraint_type,
            content=content,
            source=source,
            discovered_at=utc_now(),
        )
        with self.locks.hold(outcome_id):
            self.repository.append_context_entry(
                outcome_id,
                ContextEntryKind.CONSTRAINT,
                constraint_to_payload(constraint),
                entry_id=constraint.constraint_id,
            )
        return constraint

    def deactivate_constraint(self, outcome_id: str, constraint_id: str) -> bool:
        """Mark one constraint inactive; returns False for unknown ids."""

        with self.locks.hold(outcome_id):
            for entry_id, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.CONSTRAINT,
            ):
                if payload.get("constraint_id") != constraint_id:
                    continue
                payload["active"] = False
                return self.repository.update_context_entry(entry_id, payload)
        return False

    def add_injection(
        self,
        outcome_id: str,
        *,
        injection_type: InjectionType,
        content: str,
        source: str,
        priority: InjectionPriority,
        target_task_id: str = WILDCARD,
    ) -> ContextInjection:
        injection = ContextInjection(
            injection_id=f"inj_{uuid4().hex[:16]}",
            type=injection_type,
            content=content,
            source=source,
            priority=priority,
            target_task_id=target_task_id,
            created_at=utc_now(),
        )
        with self.locks.hold(outcome_id):
            self.repository.append_context_entry(
                outcome_id,
                ContextEntryKind.INJECTION,
                injection_to_payload(injection),
                entry_id=injection.injection_id,
            )
        return injection

    def record_answer_pattern(
        self,
        outcome_id: str,
        *,
        trigger_type: str,
        option_id: str,
        question: str,
    ) -> AnswerPattern:
        """Count how often a human picked this option for this trigger type."""

        key = answer_pattern_key(trigger_type, option_id)
        with self.locks.hold(outcome_id):
            count = 1
            existing_entry: str | None = None
            existing_payload: dict | None = None
            for entry_id, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.DISCOVERY,
            ):
                content = str(payload.get("content", ""))
                if payload.get("type") == DiscoveryType.PATTERN.value and content.startswith(
                    f"{key}|",
                ):
                    match = _PATTERN_COUNT_RE.search(content)
                    count = int(match.group(1)) + 1 if match else 1
                    existing_entry, existing_payload = entry_id, payload
                    break

            content = f"{key}|count:{count}|last:{utc_now().isoformat()}"
            if existing_entry is not None and existing_payload is not None:
                existing_payload["content"] = content
                existing_payload["relevant_tasks"] = [WILDCARD]
                self.repository.update_context_entry(existing_entry, existing_payload)
            else:
                self.repository.append_context_entry(
                    outcome_id,
                    ContextEntryKind.DISCOVERY,
                    discovery_to_payload(
                        Discovery(
                            type=DiscoveryType.PATTERN,
                            content=content,
                            relevant_tasks=[WILDCARD],
                            source=f"Escalation answer: {question[:50]}...",
                        ),
                    ),
                )
        logger.info("Stored answer pattern %s -> %s (count: %d)", trigger_type, option_id, count)
        return AnswerPattern(trigger_type=trigger_type, option_id=option_id, count=count)

    def compact(
        self,
        outcome_id: str,
        *,
        max_discoveries: int = DEFAULT_MAX_DISCOVERIES,
    ) -> CompactionResult:
        """Keep the highest scoring discoveries and fold the rest into one summary."""

        with self.locks.hold(outcome_id):
            discoveries = self.list_discoveries(outcome_id)
            total = len(discoveries)
            if total <= max_discoveries:
                return CompactionResult(before=total, after=total, compacted=0)

            ranked = sorted(
                enumerate(discoveries),
                key=lambda pair: score_discovery(pair[1], index=pair[0], total=total),
                reverse=True,
            )
            dropped = [discovery for _, discovery in ranked[max_discoveries:]]
            preview = "; ".join(discovery.content[:50] for discovery in dropped[:3])
            summary = Discovery(
                type=DiscoveryType.PATTERN,
                content=f"[Compacted {len(dropped)} earlier discoveries] Including: {preview}...",
                relevant_tasks=[WILDCARD],
                source=COMPACTION_SOURCE,
            )
            self.repository.truncate_context_entries(
                outcome_id,
                ContextEntryKind.DISCOVERY,
                drop_entry_ids=[
                    discovery.entry_id for discovery in dropped if discovery.entry_id is not None
                ],
                summary_payload=discovery_to_payload(summary),
            )
        after = max_discoveries + 1
        logger.info(
            "Compacted %d discoveries for outcome %s (%d -> %d)",
            len(dropped),
            outcome_id,
            total,
            after,
        )
        return CompactionResult(before=total, after=after, compacted=len(dropped))

    # Reads

    def list_discoveries(self, outcome_id: str) -> list[Discovery]:
        return [
            discovery_from_payload(payload, entry_id=entry_id)
            for entry_id, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.DISCOVERY,
            )
        ]

    def list_decisions(self, outcome_id: str) -> list[Decision]:
        return [
            decision_from_payload(payload)
            for _, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.DECISION,
            )
        ]

    def list_constraints(self, outcome_id: str, *, active_only: bool = False) -> list[Constraint]:
        constraints = [
            constraint_from_payload(payload)
            for _, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.CONSTRAINT,
            )
        ]
        if active_only:
            return [constraint for constraint in constraints if constraint.active]
        return constraints

    def list_injections(self, outcome_id: str) -> list[ContextInjection]:
        return [
            injection_from_payload(payload)
            for _, payload in self.repository.list_context_entries(
                outcome_id,
                ContextEntryKind.INJECTION,
            )
        ]

    def get_snapshot(self, outcome_id: str) -> ContextSnapshot:
        return ContextSnapshot(
            outcome_id=outcome_id,
            discoveries=self.list_discoveries(outcome_id),
            decisions=self.list_decisions(outcome_id),
            constraints=self.list_constraints(outcome_id),
            injections=self.list_injections(outcome_id),
            stats=self.repository.get_context_stats(outcome_id),
        )

    def get_task_context(self, task_id: str, outcome_id: str) -> TaskContext:
        """Entries relevant to one task: its own targets plus wildcard ones."""

        return TaskContext(
            discoveries=[
                discovery
                for discovery in self.list_discoveries(outcome_id)
                if task_id in discovery.relevant_tasks or discovery.is_wildcard
            ],
            injections=[
                injection
                for injection in self.list_injections(outcome_id)
                if injection.target_task_id in (task_id, WILDCARD)
            ],
            decisions=self.list_decisions(outcome_id),
            constraints=self.list_constraints(outcome_id, active_only=True),
        )

    def build_task_context(self, task_id: str, outcome_id: str) -> str:
        """Render the markdown block prepended to a worker's task prompt."""

        context = self.get_task_context(task_id, outcome_id)
        if not (
            context.discoveries or context.decisions or context.constraints or context.injections
        ):
            return ""

        lines = ["## HOMR Context (Cross-Task Learnings)", ""]

        if context.discoveries:
            lines.extend(["### Discoveries from Prior Tasks", ""])
            ordered = sorted(
                context.discoveries,
                key=lambda discovery: _DISCOVERY_DISPLAY_ORDER.index(discovery.type),
            )
            for discovery in ordered:
                lines.append(f"**[{discovery.type.value.upper()}]** {discovery.content}")
                lines.append(f"_Discovered by: {discovery.source}_")
                lines.append("")

        if context.decisions:
            lines.extend(["### Decisions Made", ""])
            for decision in context.decisions:
                lines.append(f"- **{decision.content}**")
                if decision.context:
                    lines.append(f"  _Context: {decision.context}_")
            lines.append("")

        if context.constraints:
            lines.extend(["### Active Constraints", ""])
            for constraint in context.constraints:
                lines.append(f"- [{constraint.type}] {constraint.content}")
            lines.append("")

        if context.injections:
            lines.extend(["### Injected Context", ""])
            for priority, label in _INJECTION_TIERS:
                tier = [item for item in context.injections if item.priority == priority]
                if not tier:
                    continue
                lines.append(f"**{label}:**")
                for injection in tier:
                    lines.append(f"- {injection.content} _(from {injection.source})_")
                lines.append("")

        lines.extend(["---", ""])
        return "\n".join(lines)
