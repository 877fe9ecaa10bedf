import json
import threading

import allure
import pytest
from conftest import RendezvousBackend, ScriptedBackend

from homr.orchestrator.backend.decomposer import CompletionTaskDecomposer
from homr.orchestrator.dependency_graph import DependencyGraphManager
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import PAUSED_MARKER, OutcomeView, TaskCreate, TaskStatus, TaskView
from homr.orchestrator.prompts import parse_decomposition_response
from homr.orchestrator.repository import HomrRepository

pytestmark = [
    allure.epic("Escalation"),
    allure.feature("Task Decomposition"),
]

PLAN = {
    "reasoning": "Schema first, then the API on top of it",
    "subtasks": [
        {"title": "Orders schema", "description": "Tables and migrations", "depends_on": []},
        {"title": "Orders API", "description": "CRUD endpoints", "depends_on": [0]},
        {"title": "Orders docs", "description": "", "depends_on": [0, 1]},
    ],
}


def _decomposer(repository: HomrRepository, backend: ScriptedBackend) -> CompletionTaskDecomposer:
    graph = DependencyGraphManager(repository, OutcomeLockRegistry())
    return CompletionTaskDecomposer(repository, graph, backend, max_subtasks=4)


def _parent(repository: HomrRepository, outcome: OutcomeView) -> TaskView:
    return repository.create_task(
        TaskCreate(
            outcome_id=outcome.outcome_id,
            title="Orders feature",
            description=f"{PAUSED_MARKER} Paused by HOMR: waiting\n\n---\n\nBuild orders",
            priority=5,
            max_attempts=4,
            phase="build",
        ),
    )


def test_decompose_creates_ordered_dependent_subtasks(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    parent = _parent(repository, outcome)
    backend.push(PLAN)

    result = _decomposer(repository, backend).decompose(
        parent,
        intent=outcome.intent,
        approach=outcome.design_approach,
    )

    assert result.success is True
    assert result.reasoning == "Schema first, then the API on top of it"
    schema, api, docs = (repository.require_task(task_id) for task_id in result.created_task_ids)
    assert [schema.title, api.title, docs.title] == [
        "[1/3] Orders schema",
        "[2/3] Orders API",
        "[3/3] Orders docs",
    ]
    assert [schema.priority, api.priority, docs.priority] == [5, 6, 7]
    assert (schema.max_attempts, schema.phase) == (4, "build")
    assert schema.decomposed_from_task_id == parent.task_id
    assert api.depends_on == [schema.task_id]
    assert sorted(docs.depends_on) == sorted([schema.task_id, api.task_id])
    assert 'Part 2 of 3 subtasks from: "Orders feature"' in api.description
    assert "Depends on completing: subtask(s) 1" in api.description
    assert docs.description.startswith("Orders docs")

    closed = repository.require_task(parent.task_id)
    assert closed.status == TaskStatus.COMPLETED
    assert closed.description.startswith("Build orders")
    assert closed.description.endswith(
        f"[DECOMPOSED into 3 subtasks: {', '.join(result.created_task_ids)}]",
    )
    assert "Ship a checkout API with card payments" in backend.requests[0].prompt


def test_decompose_returns_existing_subtasks(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    parent = _parent(repository, outcome)
    decomposer = _decomposer(repository, backend)
    backend.push(PLAN)
    first = decomposer.decompose(parent, intent=None, approach=None)

    second = decomposer.decompose(parent, intent=None, approach=None)

    assert second.success is True
    assert second.created_task_ids == first.created_task_ids
    assert second.reasoning == "Returning existing subtasks"
    assert len(backend.requests) == 1
    assert len(repository.list_tasks(outcome.outcome_id)) == 4


def test_decompose_reports_failed_completion(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    parent = _parent(repository, outcome)

    result = _decomposer(repository, backend).decompose(parent, intent=None, approach=None)

    assert result.success is False
    assert result.error == "no scripted response"
    assert repository.require_task(parent.task_id).status == TaskStatus.PENDING


def test_decompose_rejects_unusable_plan(
    repository: HomrRepository,
    outcome: OutcomeView,
    backend: ScriptedBackend,
) -> None:
    parent = _parent(repository, outcome)
    backend.push({"reasoning": "single", "subtasks": [{"title": "Everything"}]})

    result = _decomposer(repository, backend).decompose(parent, intent=None, approach=None)

    assert result.success is False
    assert result.reasoning == "Failed to parse decomposition response"
    assert repository.list_subtasks(parent.task_id) == []


@pytest.mark.parametrize(
    "depends_on",
    [[1], [5], [-1]],
)
def test_parse_decomposition_rejects_forward_or_unknown_dependencies(depends_on: list[int]) -> None:
    response = json.dumps(
        {"subtasks": [{"title": "First", "depends_on": depends_on}, {"title": "Second"}]},
    )

    assert parse_decomposition_response(response, max_subtasks=6) is None


def test_parse_decomposition_caps_subtasks_and_skips_untitled() -> None:
    response = (
        "```json\n"
        '{"reasoning": "r", "subtasks": [{"title": ""}, {"title": "A"}, {"title": "B"}, '
        '{"title": "C", "depends_on": [true, 0]}]}\n'
        "```"
    )

    plan = parse_decomposition_response(response, max_subtasks=2)

    assert plan is not None
    assert [subtask.title for subtask in plan.subtasks] == ["A", "B"]
    assert plan.subtasks[0].description == "A"


def test_concurrent_decompositions_create_one_set_of_subtasks(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    parent = _parent(repository, outcome)
    graph = DependencyGraphManager(repository, OutcomeLockRegistry())
    decomposer = CompletionTaskDecomposer(repository, graph, RendezvousBackend(2, PLAN))
    results = []

    def run() -> None:
        results.append(decomposer.decompose(parent, intent=None, approach=None))

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert [result.success for result in results] == [True, True]
    assert sorted(results[0].created_task_ids) == sorted(results[1].created_task_ids)
    assert len(repository.list_subtasks(parent.task_id)) == 3
    assert len(repository.list_tasks(outcome.outcome_id)) == 4
