# turn_pipeline/engine.py
from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Mapping
from typing import Any, Optional

from turn_pipeline.adapters.diagnostics import DiagnosticsSink, NullDiagnosticsSink
from turn_pipeline.adapters.generation import TextGenerator, call_generator
from turn_pipeline.adapters.state_store import StateStore, first_turn_state, merge_state_patch
from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import (
    AnchorEvent,
    ContinuityCounters,
    ConversationState,
    DiagnosticsEvent,
    DiagnosticsEventKind,
    EmotionalCode,
    GenerationRequest,
    GenerationResult,
    NoDeltaKind,
    RenderResult,
    SpeechAct,
    StatePatch,
    StateStoreUnavailable,
    TurnAnalysis,
    TurnFlags,
    TurnInput,
    TurnOutcome,
    UpstreamGenerationFailure,
)
from turn_pipeline.descent_gate import DescentGateDecision, decide_descent_gate, normalize_target_kind
from turn_pipeline.frames import (
    build_frame_reason,
    build_slot_fallback_text,
    build_slot_plan,
    classify_input_kind,
    detect_no_delta,
    select_frame,
)
from turn_pipeline.invariants import default_check_context, run_checkers
from turn_pipeline.render import render_reply
from turn_pipeline.resolver import candidates_from_generation, resolve_candidates
from turn_pipeline.rotation import SpinState, compute_spin_state
from turn_pipeline.sanitize import find_leak

logger = logging.getLogger(__name__)

DIAGNOSTIC_MODES = frozenset({"ir", "diagnostic", "diagnosis", "diag"})
_META_ANCHOR = re.compile(r"^\s*[A-Za-z_]+\s*[=:]\s*\S+\s*$")


def _new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


def is_diagnostic_mode(requested_mode: Optional[str]) -> bool:
    if not requested_mode:
        return False
    return requested_mode.strip().lower() in DIAGNOSTIC_MODES


def is_meta_anchor(text: Optional[str]) -> bool:
    """Anchor text that is really an echoed key/value or directive, not a user intention."""
    s = (text or "").strip()
    if not s:
        return True
    return bool(find_leak(s) or _META_ANCHOR.match(s))


# ------------------------------------------------------------------------------
# Continuity counters
# ------------------------------------------------------------------------------


def decide_primary_code(counts: Mapping[EmotionalCode, int], latest: Optional[EmotionalCode]) -> Optional[EmotionalCode]:
    """Most frequent code, except the latest one wins when it is within one count of the best."""
    if not counts:
        return latest
    best = max(counts.values())
    if latest is not None and counts.get(latest, 0) >= best - 1:
        return latest
    for code in EmotionalCode:
        if counts.get(code, 0) == best:
            return code
    return latest


def advance_continuity(
    previous: ContinuityCounters,
    *,
    emotional_code: Optional[EmotionalCode],
    no_delta: Optional[NoDeltaKind],
) -> ContinuityCounters:
    counts = dict(previous.emotional_code_counts)
    streak_code = previous.streak_code
    streak_length = previous.streak_length
    if emotional_code is not None:
        counts[emotional_code] = counts.get(emotional_code, 0) + 1
        if emotional_code is streak_code:
            streak_length += 1
        else:
            streak_code = emotional_code
            streak_length = 1

    return ContinuityCounters(
        turn_count=previous.turn_count + 1,
        emotional_code_counts=counts,
        primary_emotional_code=decide_primary_code(counts, emotional_code) or previous.primary_emotional_code,
        streak_code=streak_code,
        streak_length=streak_length,
        no_delta_streak=previous.no_delta_streak + 1 if no_delta is not None else 0,
    )


# ------------------------------------------------------------------------------
# State patch
# ------------------------------------------------------------------------------


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    s = (text or "").strip()
    return s[:limit] if s else None


def build_state_patch(
    *,
    snapshot: ConversationState,
    analysis: TurnAnalysis,
    user_text: str,
    spin: SpinState,
    gate: DescentGateDecision,
    no_delta: Optional[NoDeltaKind],
    rendered: RenderResult,
    config: PipelineConfig,
) -> StatePatch:
    """Only fields carrying new information this turn are set on the patch."""
    fields: dict[str, Any] = {
        "spin_loop": spin.spin_loop,
        "spin_step": spin.spin_step,
        "descent_gate": gate.gate,
        "continuity": advance_continuity(
            snapshot.continuity,
            emotional_code=analysis.emotional_code,
            no_delta=no_delta,
        ),
    }
    if analysis.depth_stage is not None:
        fields["depth_stage"] = analysis.depth_stage
    if analysis.emotional_code is not None:
        fields["emotional_code"] = analysis.emotional_code
    if analysis.self_acceptance is not None:
        fields["self_acceptance"] = analysis.self_acceptance
    if analysis.phase is not None:
        fields["phase"] = analysis.phase
    if analysis.intent_layer:
        fields["intent_layer"] = analysis.intent_layer

    if analysis.anchor_event is AnchorEvent.RESET:
        fields["intent_anchor_key"] = None
    elif analysis.anchor_event is AnchorEvent.SET and not is_meta_anchor(analysis.intent_anchor):
        fields["intent_anchor_key"] = (analysis.intent_anchor or "").strip()

    situation = _truncate(analysis.situation_summary, config.summary_max_chars)
    if situation is not None:
        fields["situation_summary"] = situation
    topic = _truncate(analysis.situation_topic, config.summary_max_chars)
    if topic is not None:
        fields["situation_topic"] = topic
    summary = situation or _truncate(user_text, config.summary_max_chars)
    if summary is not None:
        fields["summary"] = summary

    if rendered.text and rendered.text != config.neutral_acknowledgement.strip():
        fields["last_good_reply"] = rendered.text

    return StatePatch(**fields)


# ------------------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------------------


class TurnEngine:
    """One user turn: snapshot read, decisions, one generation call, render, one commit."""

    def __init__(
        self,
        *,
        store: StateStore,
        generator: Optional[TextGenerator] = None,
        config: Optional[PipelineConfig] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.config = config or PipelineConfig()
        self.diagnostics: DiagnosticsSink = diagnostics or NullDiagnosticsSink()

    # -- ports -----------------------------------------------------------------

    def _emit(self, kind: DiagnosticsEventKind, *, user_id: str, turn_id: str, **payload: Any) -> None:
        self.diagnostics.emit(DiagnosticsEvent(kind=kind, user_id=user_id, turn_id=turn_id, payload=payload))

    def _read_snapshot(self, user_id: str, turn_id: str) -> tuple[ConversationState, bool]:
        try:
            state = self.store.get(user_id)
        except StateStoreUnavailable as exc:
            logger.warning("state read failed for user=%s; using first-turn snapshot: %s", user_id, exc)
            self._emit(DiagnosticsEventKind.STATE_READ_FAILED, user_id=user_id, turn_id=turn_id, reason=str(exc))
            return first_turn_state(user_id), False
        return (state if state is not None else first_turn_state(user_id)), True

    def _generate(self, request: GenerationRequest, turn_id: str) -> tuple[Optional[GenerationResult], bool]:
        if self.generator is None:
            return None, False
        try:
            return call_generator(self.generator, request, timeout_s=self.config.generation_timeout_s), False
        except UpstreamGenerationFailure as exc:
            logger.warning("upstream generation failed for user=%s: %s", request.user_id, exc.reason)
            self._emit(
                DiagnosticsEventKind.UPSTREAM_GENERATION_FAILURE,
                user_id=request.user_id,
                turn_id=turn_id,
                reason=exc.reason,
            )
            return None, True

    def _commit(
        self,
        user_id: str,
        patch: StatePatch,
        snapshot: ConversationState,
        turn_id: str,
    ) -> tuple[ConversationState, bool]:
        attempts = 1 + self.config.state_write_retries
        last_error: Optional[StateStoreUnavailable] = None
        for attempt in range(1, attempts + 1):
            try:
                return self.store.upsert(user_id, patch), True
            except StateStoreUnavailable as exc:
                last_error = exc
                logger.warning("state write attempt %d/%d failed for user=%s: %s", attempt, attempts, user_id, exc)

        logger.error("dropping state write for user=%s after %d attempt(s): %s", user_id, attempts, last_error)
        self._emit(
            DiagnosticsEventKind.STATE_WRITE_FAILED,
            user_id=user_id,
            turn_id=turn_id,
            attempts=attempts,
            reason=str(last_error),
        )
        return merge_state_patch(snapshot, patch, user_id=user_id), False

    # -- turn ------------------------------------------------------------------

    def run_turn(self, turn: TurnInput) -> TurnOutcome:
        cfg = self.config
        user_id = turn.user_id
        turn_id = turn.turn_id or _new_id("turn:")

        snapshot, snapshot_ok = self._read_snapshot(user_id, turn_id)
        history = turn.history[-cfg.history_limit :] if cfg.history_limit else []
        analysis = turn.analysis

        depth = analysis.depth_stage or snapshot.depth_stage
        code = analysis.emotional_code or snapshot.emotional_code
        sa = analysis.self_acceptance if analysis.self_acceptance is not None else snapshot.self_acceptance
        phase = analysis.phase or snapshot.phase
        diagnostic = is_diagnostic_mode(turn.requested_mode)
        input_kind = analysis.input_kind or classify_input_kind(turn.user_text)

        spin = compute_spin_state(
            depth_stage=depth,
            emotional_code=code,
            phase=phase,
            last_spin_loop=snapshot.spin_loop,
            last_spin_step=snapshot.spin_step,
            last_phase=snapshot.phase,
            suppress=diagnostic,
        )
        gate = decide_descent_gate(
            emotional_code=code,
            self_acceptance=sa,
            depth_stage=depth,
            target_kind=normalize_target_kind(analysis.target_kind) if analysis.target_kind else None,
            prev_gate=snapshot.descent_gate,
            user_text=turn.user_text,
            thresholds=cfg.descent,
        )

        frame = select_frame(depth, gate.gate, input_kind)
        no_delta = detect_no_delta(
            turn.user_text,
            input_kind,
            rotation_held=spin.step_held and snapshot.depth_stage == depth,
        )
        slot_plan = build_slot_plan(
            frame,
            descent_gate=gate.gate,
            spin_loop=spin.spin_loop,
            no_delta=no_delta,
            reason=build_frame_reason(frame, input_kind, depth, gate.gate),
        )
        logger.debug("turn=%s %s slots=%s", turn_id, slot_plan.reason, [k.value for k in slot_plan.slot_keys()])

        request = GenerationRequest(
            user_id=user_id,
            user_text=turn.user_text,
            history=tuple(history),
            frame=frame,
            slot_plan=slot_plan,
            spin_loop=spin.spin_loop,
            spin_step=spin.spin_step,
            descent_gate=gate.gate,
            depth_stage=depth,
            emotional_code=code,
            diagnostic=diagnostic,
        )
        result, generation_failed = self._generate(request, turn_id)

        flags = TurnFlags(
            diagnostic=diagnostic,
            silence=result is not None and result.speech_act is SpeechAct.SILENCE,
            speech_skipped=result is not None and result.speech_skipped,
            input_kind=input_kind,
        )
        resolution = resolve_candidates(
            candidates_from_generation(result, slot_fallback_text=build_slot_fallback_text(slot_plan)),
            flags,
            external_blocks=result.rephrase_blocks if result is not None else None,
            derived_blocks=result.derived_blocks if result is not None else None,
            multi_section_threshold=cfg.multi_section_block_threshold,
            rephrase_blocks_enabled=cfg.rephrase_blocks_enabled,
        )
        rendered = render_reply(resolution, cfg, last_good_text=snapshot.last_good_reply)
        diag = rendered.diagnostics

        if diag.leak_rewrites:
            self._emit(
                DiagnosticsEventKind.DIRECTIVE_LEAK_REWRITTEN,
                user_id=user_id,
                turn_id=turn_id,
                rewrites=diag.leak_rewrites,
            )
        self._emit(
            DiagnosticsEventKind.RENDER_COMPLETED,
            user_id=user_id,
            turn_id=turn_id,
            blocks_count=diag.blocks_count,
            picked_from=diag.picked_from.value,
            fallback_from=diag.fallback_from.value,
            output_from=diag.output_from.value,
            applied_line_budget=diag.applied_line_budget,
            out_len=diag.out_len,
        )

        outcomes = run_checkers(
            default_check_context(
                scope=user_id,
                output_text=rendered.text,
                line_budget=diag.applied_line_budget,
                spin_loop=spin.spin_loop,
                spin_step=spin.spin_step,
                descent_gate=gate.gate,
                descent_gate_reason=gate.reason,
            )
        )
        failures = [o for o in outcomes if not o.passed]
        for failure in failures:
            logger.warning("invariant %s failed: %s", failure.invariant_id.value, failure.reason)
            self._emit(
                DiagnosticsEventKind.INVARIANT_VIOLATION,
                user_id=user_id,
                turn_id=turn_id,
                invariant_id=failure.invariant_id.value,
                code=failure.code,
            )

        patch = build_state_patch(
            snapshot=snapshot,
            analysis=analysis,
            user_text=turn.user_text,
            spin=spin,
            gate=gate,
            no_delta=no_delta,
            rendered=rendered,
            config=cfg,
        )
        if snapshot_ok:
            state, committed = self._commit(user_id, patch, snapshot, turn_id)
        else:
            # A substitute snapshot is never written back.
            logger.error("skipping state commit for user=%s: snapshot was unavailable", user_id)
            state, committed = merge_state_patch(snapshot, patch, user_id=user_id), False

        logger.info(
            "turn=%s user=%s frame=%s gate=%s spin=%s/%d out_from=%s committed=%s",
            turn_id,
            user_id,
            frame.value,
            gate.gate.value,
            spin.spin_loop.value,
            spin.spin_step,
            diag.output_from.value,
            committed,
        )
        return TurnOutcome(
            turn_id=turn_id,
            text=rendered.text,
            diagnostics=diag,
            state=state,
            frame=frame,
            slot_plan=slot_plan,
            input_kind=input_kind,
            descent_gate=gate.gate,
            descent_gate_reason=gate.reason,
            spin_loop=spin.spin_loop,
            spin_step=spin.spin_step,
            state_committed=committed,
            generation_failed=generation_failed,
            invariant_failures=[f.invariant_id.value for f in failures],
        )


def run_turn(
    turn: TurnInput,
    *,
    store: StateStore,
    generator: Optional[TextGenerator] = None,
    config: Optional[PipelineConfig] = None,
    diagnostics: Optional[DiagnosticsSink] = None,
) -> TurnOutcome:
    return TurnEngine(store=store, generator=generator, config=config, diagnostics=diagnostics).run_turn(turn)


__all__ = [
    "TurnEngine",
    "advance_continuity",
    "build_state_patch",
    "decide_primary_code",
    "is_diagnostic_mode",
    "is_meta_anchor",
    "run_turn",
]
