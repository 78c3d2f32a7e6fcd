from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from turn_pipeline.adapters.diagnostics import RecordingDiagnosticsSink
from turn_pipeline.adapters.generation import ScriptedTextGenerator
from turn_pipeline.adapters.state_store import InMemoryStateStore
from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import (
    CandidateSource,
    DiagnosticsEventKind,
    TurnInput,
    UpstreamGenerationFailure,
)
from turn_pipeline.engine import TurnEngine
from turn_pipeline.invariants import REGISTRY

_FALLBACK_SOURCES = frozenset(
    {
        CandidateSource.SLOT_PLAN,
        CandidateSource.SPEECH_SKIPPED,
        CandidateSource.RAW_MODEL,
        CandidateSource.EXTRACTED_MODEL,
        CandidateSource.LAST_GOOD,
        CandidateSource.NEUTRAL,
    }
)


@dataclass(frozen=True)
class TurnExecution:
    turn_index: int
    frame: str
    descent_gate: str
    descent_gate_reason: str
    spin_loop: str
    spin_step: int
    output_from: str
    out_len: int
    invariant_failures: list[str]
    generation_failed: bool
    outcome: str
    text: str


@dataclass(frozen=True)
class SessionExecution:
    context: str
    session_id: str
    user_id: str
    turns: list[TurnExecution]
    events: list[dict[str, Any]]


def load_scenario_packs(packs_dir: Path) -> list[dict[str, Any]]:
    packs: list[dict[str, Any]] = []
    for path in sorted(packs_dir.glob("*.json")):
        payload = json.loads(path.read_text(encoding="utf-8"))
        payload["_source"] = str(path)
        packs.append(payload)
    return packs


def _script_item(raw: Any) -> Any:
    if isinstance(raw, dict) and "error" in raw:
        return UpstreamGenerationFailure(str(raw["error"]))
    return raw


def run_session(pack: dict[str, Any], *, config: Optional[PipelineConfig] = None) -> SessionExecution:
    cfg = config or PipelineConfig.from_mapping(pack.get("config", {}))
    user_id = str(pack.get("user_id") or pack["session_id"])
    initial = pack.get("initial_state")
    store = InMemoryStateStore({user_id: initial} if isinstance(initial, dict) else None)
    turns_raw = list(pack.get("turns", []))
    generator = ScriptedTextGenerator([_script_item(turn.get("generator")) for turn in turns_raw])
    sink = RecordingDiagnosticsSink()
    engine = TurnEngine(store=store, generator=generator, config=cfg, diagnostics=sink)

    turns: list[TurnExecution] = []
    for turn_index, turn in enumerate(turns_raw, start=1):
        outcome = engine.run_turn(
            TurnInput.model_validate(
                {
                    "user_id": user_id,
                    "user_text": turn.get("user_text", ""),
                    "history": turn.get("history", []),
                    "analysis": turn.get("analysis", {}),
                    "requested_mode": turn.get("requested_mode"),
                    "turn_id": f"{pack['session_id']}:{turn_index}",
                }
            )
        )
        diag = outcome.diagnostics
        if outcome.invariant_failures:
            label = "issue"
        elif outcome.generation_failed or diag.output_from in _FALLBACK_SOURCES:
            label = "fallback"
        else:
            label = "ok"
        turns.append(
            TurnExecution(
                turn_index=turn_index,
                frame=outcome.frame.value,
                descent_gate=outcome.descent_gate.value,
                descent_gate_reason=outcome.descent_gate_reason,
                spin_loop=outcome.spin_loop.value,
                spin_step=outcome.spin_step,
                output_from=diag.output_from.value,
                out_len=diag.out_len,
                invariant_failures=list(outcome.invariant_failures),
                generation_failed=outcome.generation_failed,
                outcome=label,
                text=outcome.text,
            )
        )

    events = [
        {"kind": event.kind.value, "turn_id": event.turn_id}
        for event in sink.events
        if event.kind is not DiagnosticsEventKind.RENDER_COMPLETED
    ]
    return SessionExecution(
        context=str(pack.get("context", "")),
        session_id=str(pack["session_id"]),
        user_id=user_id,
        turns=turns,
        events=events,
    )


def summarize(executions: list[SessionExecution]) -> dict[str, float]:
    total_turns = 0
    failed_checks = 0
    fallback_turns = 0
    generation_failures = 0
    gate_transitions = 0

    for execution in executions:
        previous_gate: Optional[str] = None
        for turn in execution.turns:
            total_turns += 1
            failed_checks += len(turn.invariant_failures)
            if turn.outcome == "fallback":
                fallback_turns += 1
            if turn.generation_failed:
                generation_failures += 1
            if previous_gate is not None and turn.descent_gate != previous_gate:
                gate_transitions += 1
            previous_gate = turn.descent_gate

    total_checks = total_turns * len(REGISTRY)
    invariant_pass_rate = ((total_checks - failed_checks) / total_checks) if total_checks else 0.0
    fallback_rate = (fallback_turns / total_turns) if total_turns else 0.0
    generation_failure_rate = (generation_failures / total_turns) if total_turns else 0.0

    return {
        "invariant_pass_rate": round(invariant_pass_rate, 4),
        "fallback_rate": round(fallback_rate, 4),
        "generation_failure_rate": round(generation_failure_rate, 4),
        "gate_transitions": float(gate_transitions),
    }


def run_packs(packs_dir: Path) -> dict[str, Any]:
    packs = load_scenario_packs(packs_dir)
    executions = [run_session(pack) for pack in packs]
    return {
        "sessions": [
            {
                "context": execution.context,
                "session_id": execution.session_id,
                "user_id": execution.user_id,
                "turns": [
                    {
                        "turn_index": turn.turn_index,
                        "frame": turn.frame,
                        "descent_gate": turn.descent_gate,
                        "descent_gate_reason": turn.descent_gate_reason,
                        "spin": f"{turn.spin_loop}/{turn.spin_step}",
                        "output_from": turn.output_from,
                        "out_len": turn.out_len,
                        "invariant_failures": turn.invariant_failures,
                        "outcome": turn.outcome,
                        "text": turn.text,
                    }
                    for turn in execution.turns
                ],
                "events": execution.events,
            }
            for execution in executions
        ],
        "summary_metrics": summarize(executions),
    }
