import threading
from collections.abc import Callable
from typing import Any

import allure
from conftest import RendezvousBackend

from homr.config import HomrSettings, Settings
from homr.orchestrator.context_store import ContextStore
from homr.orchestrator.dependency_graph import DependencyGraphManager
from homr.orchestrator.locks import OutcomeLockRegistry
from homr.orchestrator.models import (
    WILDCARD,
    Discovery,
    DiscoveryType,
    OutcomeView,
    TaskCreate,
    TaskView,
)
from homr.orchestrator.repository import HomrRepository
from homr.orchestrator.services import HomrService

pytestmark = [
    allure.epic("Supervision"),
    allure.feature("Per-outcome Serialization"),
]


def _run_together(*targets: Callable[[], None]) -> None:
    threads = [threading.Thread(target=target) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert not any(thread.is_alive() for thread in threads)


def test_parallel_completions_in_one_outcome_keep_stats_and_bound(
    repository: HomrRepository,
    outcome: OutcomeView,
    observation_payload: Callable[..., dict[str, Any]],
) -> None:
    backend = RendezvousBackend(
        2,
        observation_payload(
            discoveries=[
                {"type": "pattern", "content": "Reuse the money helper", "relevantTasks": ["*"]},
            ],
        ),
    )
    service = HomrService(
        repository=repository,
        backend=backend,
        settings=Settings(homr=HomrSettings(max_discoveries=3)),
    )
    tasks = [
        repository.create_task(TaskCreate(outcome_id=outcome.outcome_id, title=f"Endpoint {index}"))
        for index in range(6)
    ]
    results = []

    def worker(owned: list[TaskView]) -> Callable[[], None]:
        def run() -> None:
            for task in owned:
                results.append(service.observe_and_process(task, "Implemented the endpoint."))

        return run

    _run_together(worker(tasks[0::2]), worker(tasks[1::2]))

    assert len(results) == 6
    assert all(result.steered for result in results)
    stats = repository.get_context_stats(outcome.outcome_id)
    assert stats.tasks_observed == 6
    assert stats.discoveries_extracted == 6
    assert stats.steering_actions == 6
    assert len(service.context_store.list_discoveries(outcome.outcome_id)) <= 4


def test_opposite_edges_added_in_parallel_never_form_a_cycle(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    graph = DependencyGraphManager(repository, OutcomeLockRegistry())

    for index in range(5):
        first, second = (
            repository.create_task(
                TaskCreate(outcome_id=outcome.outcome_id, title=f"Step {index}{suffix}"),
            )
            for suffix in ("a", "b")
        )
        start = threading.Barrier(2)
        results = []

        def link(dependent: str, dependency: str) -> Callable[[], None]:
            def run() -> None:
                start.wait(timeout=10)
                results.append(graph.add_dependency(dependent, dependency))

            return run

        _run_together(
            link(first.task_id, second.task_id),
            link(second.task_id, first.task_id),
        )

        assert sorted(result.success for result in results) == [False, True]
        rejected = next(result for result in results if not result.success)
        assert rejected.reason is not None
        assert "circular" in rejected.reason
        edges = [
            repository.require_task(first.task_id).depends_on,
            repository.require_task(second.task_id).depends_on,
        ]
        assert sorted(len(depends_on) for depends_on in edges) == [0, 1]


def test_parallel_discoveries_and_compaction_keep_blockers(
    repository: HomrRepository,
    outcome: OutcomeView,
) -> None:
    store = ContextStore(repository, OutcomeLockRegistry())
    store.add_discovery(
        outcome.outcome_id,
        Discovery(
            type=DiscoveryType.BLOCKER,
            content="Payment sandbox is down",
            relevant_tasks=[WILDCARD],
        ),
    )
    start = threading.Barrier(3)

    def writer(name: str) -> Callable[[], None]:
        def run() -> None:
            start.wait(timeout=10)
            for index in range(8):
                store.add_discovery(
                    outcome.outcome_id,
                    Discovery(type=DiscoveryType.OTHER, content=f"{name} note {index}"),
                )
                store.compact(outcome.outcome_id, max_discoveries=5)

        return run

    _run_together(writer("alpha"), writer("beta"), writer("gamma"))

    discoveries = store.list_discoveries(outcome.outcome_id)
    assert len(discoveries) <= 6
    assert "Payment sandbox is down" in [discovery.content for discovery in discoveries]
    assert repository.get_context_stats(outcome.outcome_id).discoveries_extracted == 25
