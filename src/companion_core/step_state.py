from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from turn_pipeline.adapters.diagnostics import RecordingDiagnosticsSink
from turn_pipeline.adapters.state_store import InMemoryStateStore


@dataclass
class DecisionStepState:
    spin: Any = None
    gate: Any = None
    frame: Any = None
    slot_plan: Any = None
    inputs: dict[str, Any] = field(default_factory=dict)


@dataclass
class RenderStepState:
    config_overrides: dict[str, Any] = field(default_factory=dict)
    source: Any = None
    classification: Any = None
    blocks: list[str] = field(default_factory=list)
    first_output: str | None = None
    second_output: str | None = None
    result: Any = None


@dataclass
class TurnStepState:
    store: InMemoryStateStore = field(default_factory=InMemoryStateStore)
    sink: RecordingDiagnosticsSink = field(default_factory=RecordingDiagnosticsSink)
    generator_script: list[Any] = field(default_factory=list)
    outcomes: list[Any] = field(default_factory=list)


def get_decision_step_state(context: Any) -> DecisionStepState:
    state = getattr(context, "_decision_step_state", None)
    if not isinstance(state, DecisionStepState):
        state = DecisionStepState()
        setattr(context, "_decision_step_state", state)
    return state


def get_render_step_state(context: Any) -> RenderStepState:
    state = getattr(context, "_render_step_state", None)
    if not isinstance(state, RenderStepState):
        state = RenderStepState()
        setattr(context, "_render_step_state", state)
    return state


def get_turn_step_state(context: Any) -> TurnStepState:
    state = getattr(context, "_turn_step_state", None)
    if not isinstance(state, TurnStepState):
        state = TurnStepState()
        setattr(context, "_turn_step_state", state)
    return state
