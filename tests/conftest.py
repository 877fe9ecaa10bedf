"""Shared test fixtures."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from homr.orchestrator.backend.base import CompletionRequest, CompletionResult
from homr.orchestrator.models import IntentItem, OutcomeCreate, OutcomeIntent, OutcomeView
from homr.orchestrator.repository import HomrRepository


class ScriptedBackend:
    """Completion backend replaying queued responses in order.

    A queued ``str`` becomes a successful completion, a ``CompletionResult``
    is returned as is, and an exception instance is raised. An empty queue
    answers with a failed completion.
    """

    def __init__(self) -> None:
        self.responses: list[str | CompletionResult | Exception] = []
        self.requests: list[CompletionRequest] = []

    def push(self, *responses: str | dict[str, Any] | CompletionResult | Exception) -> None:
        for response in responses:
            self.responses.append(json.dumps(response) if isinstance(response, dict) else response)

    def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        if not self.responses:
            return CompletionResult(success=False, error="no scripted response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, CompletionResult):
            return response
        return CompletionResult(success=True, text=response)


class RendezvousBackend:
    """Answers only once every caller is waiting, so their model calls overlap."""

    def __init__(self, parties: int, response: str | dict[str, Any]) -> None:
        self.barrier = threading.Barrier(parties)
        self.text = json.dumps(response) if isinstance(response, dict) else response

    def complete(self, request: CompletionRequest) -> CompletionResult:
        self.barrier.wait(timeout=10)
        return CompletionResult(success=True, text=self.text)


@pytest.fixture()
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[HomrRepository]:
    repo = HomrRepository(tmp_path / "homr.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def outcome(repository: HomrRepository) -> OutcomeView:
    return repository.create_outcome(
        OutcomeCreate(
            name="Checkout service",
            intent=OutcomeIntent(
                summary="Ship a checkout API with card payments",
                items=[IntentItem(title="Card payments", description="Accept Visa and MC")],
                success_criteria=["Orders can be paid end to end"],
            ),
            design_approach=json.dumps({"summary": "FastAPI service backed by Postgres"}),
        ),
    )


@pytest.fixture()
def observation_payload() -> Callable[..., dict[str, Any]]:
    """Factory for a well-formed observer answer; keyword overrides replace top-level fields."""

    def build(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "onTrack": True,
            "alignmentScore": 85,
            "quality": "good",
            "drift": [],
            "discoveries": [],
            "issues": [],
            "ambiguity": None,
            "summary": "Implemented the payment endpoint.",
        }
        payload.update(overrides)
        return payload

    return build