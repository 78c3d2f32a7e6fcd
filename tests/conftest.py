from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from turn_pipeline.adapters.diagnostics import RecordingDiagnosticsSink
from turn_pipeline.adapters.generation import ScriptedTextGenerator
from turn_pipeline.adapters.state_store import InMemoryStateStore
from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import (
    CandidateSource,
    CandidateText,
    ConversationState,
    StatePatch,
    StateStoreUnavailable,
    TurnAnalysis,
    TurnInput,
)


class FlakyStateStore(InMemoryStateStore):
    """In-memory store whose reads and writes can be made to fail a fixed number of times."""

    def __init__(self, *, read_failures: int = 0, write_failures: int = 0) -> None:
        super().__init__()
        self.read_failures = read_failures
        self.write_failures = write_failures
        self.write_attempts = 0

    def get(self, user_id: str) -> ConversationState | None:
        if self.read_failures > 0:
            self.read_failures -= 1
            raise StateStoreUnavailable("read refused")
        return super().get(user_id)

    def upsert(self, user_id: str, patch: StatePatch) -> ConversationState:
        self.write_attempts += 1
        if self.write_failures > 0:
            self.write_failures -= 1
            raise StateStoreUnavailable("write refused")
        return super().upsert(user_id, patch)


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sink() -> RecordingDiagnosticsSink:
    return RecordingDiagnosticsSink()


@pytest.fixture
def make_flaky_store() -> Callable[..., FlakyStateStore]:
    def _make_flaky_store(*, read_failures: int = 0, write_failures: int = 0) -> FlakyStateStore:
        return FlakyStateStore(read_failures=read_failures, write_failures=write_failures)

    return _make_flaky_store


@pytest.fixture
def make_generator() -> Callable[..., ScriptedTextGenerator]:
    def _make_generator(*outputs: Any) -> ScriptedTextGenerator:
        return ScriptedTextGenerator(list(outputs))

    return _make_generator


@pytest.fixture
def make_turn_input() -> Callable[..., TurnInput]:
    def _make_turn_input(
        *,
        user_id: str = "user:test",
        user_text: str = "I had a long day.",
        requested_mode: str | None = None,
        history: list[dict[str, str]] | None = None,
        **analysis: Any,
    ) -> TurnInput:
        return TurnInput(
            user_id=user_id,
            user_text=user_text,
            requested_mode=requested_mode,
            history=history or [],
            analysis=TurnAnalysis.model_validate(analysis),
        )

    return _make_turn_input


@pytest.fixture
def make_candidates() -> Callable[..., list[CandidateText]]:
    def _make_candidates(**texts: str) -> list[CandidateText]:
        return [CandidateText(source=CandidateSource(name), text=text) for name, text in texts.items()]

    return _make_candidates
