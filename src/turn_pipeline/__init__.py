"""Conversational-state driven reply rendering core."""

from turn_pipeline.config import PipelineConfig, load_pipeline_config
from turn_pipeline.contracts import (
    CandidateSource,
    CandidateText,
    ConversationState,
    DepthStage,
    DescentGate,
    EmotionalCode,
    Frame,
    GenerationResult,
    InputKind,
    Phase,
    RenderResult,
    Resolution,
    SlotKey,
    SlotPlan,
    SpinLoop,
    StatePatch,
    TurnAnalysis,
    TurnClassification,
    TurnFlags,
    TurnInput,
    TurnOutcome,
)
from turn_pipeline.descent_gate import decide_descent_gate
from turn_pipeline.engine import TurnEngine, run_turn
from turn_pipeline.frames import build_slot_plan, select_frame
from turn_pipeline.render import render_reply, render_text, run_render_pipeline
from turn_pipeline.resolver import resolve_candidates
from turn_pipeline.rotation import compute_spin_state

__all__ = [
    "CandidateSource",
    "CandidateText",
    "ConversationState",
    "DepthStage",
    "DescentGate",
    "EmotionalCode",
    "Frame",
    "GenerationResult",
    "InputKind",
    "Phase",
    "PipelineConfig",
    "RenderResult",
    "Resolution",
    "SlotKey",
    "SlotPlan",
    "SpinLoop",
    "StatePatch",
    "TurnAnalysis",
    "TurnClassification",
    "TurnEngine",
    "TurnFlags",
    "TurnInput",
    "TurnOutcome",
    "build_slot_plan",
    "compute_spin_state",
    "decide_descent_gate",
    "load_pipeline_config",
    "render_reply",
    "render_text",
    "resolve_candidates",
    "run_render_pipeline",
    "run_turn",
    "select_frame",
]
