from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from conftest import FlakyStateStore
from turn_pipeline.adapters.diagnostics import RecordingDiagnosticsSink
from turn_pipeline.adapters.generation import ScriptedTextGenerator
from turn_pipeline.adapters.state_store import InMemoryStateStore
from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import (
    CandidateSource,
    ContinuityCounters,
    DepthStage,
    DescentGate,
    DiagnosticsEventKind,
    EmotionalCode,
    Frame,
    InputKind,
    NoDeltaKind,
    SlotKey,
    SpinLoop,
    TurnInput,
    UpstreamGenerationFailure,
)
from turn_pipeline.engine import (
    TurnEngine,
    advance_continuity,
    decide_primary_code,
    is_diagnostic_mode,
    is_meta_anchor,
    run_turn,
)
from turn_pipeline.frames import SAFE_OFFERED, build_slot_fallback_text
from turn_pipeline.render import count_visible_lines

MakeTurn = Callable[..., TurnInput]
MakeGenerator = Callable[..., ScriptedTextGenerator]


def _engine(
    store: Any,
    generator: ScriptedTextGenerator | None,
    sink: RecordingDiagnosticsSink,
    config: PipelineConfig | None = None,
) -> TurnEngine:
    return TurnEngine(store=store, generator=generator, config=config, diagnostics=sink)


def test_full_turn_renders_reply_and_commits_once(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    generator = make_generator("Hello! It's good to hear from you.")
    turn = make_turn_input(depth_stage="R1", emotional_code="Q2", self_acceptance=0.6, phase="Inner")

    outcome = _engine(store, generator, sink).run_turn(turn)

    assert outcome.text == "Hello! It's good to hear from you."
    assert outcome.diagnostics.output_from is CandidateSource.CONTENT
    assert outcome.input_kind is InputKind.CHAT
    assert outcome.frame is Frame.R
    assert outcome.slot_plan.slot_keys() == [SlotKey.OBS, SlotKey.SHIFT, SlotKey.NEXT]
    assert (outcome.spin_loop, outcome.spin_step) == (SpinLoop.SRI, 1)
    assert outcome.descent_gate is DescentGate.CLOSED
    assert outcome.descent_gate_reason.startswith("stable:")
    assert outcome.state_committed is True
    assert outcome.invariant_failures == []
    assert store.writes == 1

    saved = store.get("user:test")
    assert saved is not None
    assert saved.depth_stage is DepthStage.R1
    assert saved.spin_loop is SpinLoop.SRI
    assert saved.last_good_reply == outcome.text
    assert saved.continuity.turn_count == 1

    request = generator.requests[0]
    assert request.frame is Frame.R
    assert request.slot_plan == outcome.slot_plan
    assert DiagnosticsEventKind.RENDER_COMPLETED in sink.kinds()


def test_history_is_trimmed_to_limit(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    generator = make_generator("ok then")
    history = [{"role": "user", "content": f"message {i}"} for i in range(15)]

    _engine(store, generator, sink, PipelineConfig(history_limit=4)).run_turn(make_turn_input(history=history))

    assert [m.text for m in generator.requests[0].history] == [f"message {i}" for i in range(11, 15)]


def test_read_failure_uses_first_turn_snapshot_and_skips_commit(
    make_flaky_store: Callable[..., FlakyStateStore],
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    flaky = make_flaky_store(read_failures=1)

    outcome = _engine(flaky, make_generator("Still here."), sink).run_turn(make_turn_input(depth_stage="S1"))

    assert outcome.text == "Still here."
    assert outcome.state_committed is False
    assert flaky.write_attempts == 0
    assert outcome.state.depth_stage is DepthStage.S1
    assert DiagnosticsEventKind.STATE_READ_FAILED in sink.kinds()


def test_write_failure_is_retried_once(
    make_flaky_store: Callable[..., FlakyStateStore],
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    flaky = make_flaky_store(write_failures=1)

    outcome = _engine(flaky, make_generator("Hi."), sink).run_turn(make_turn_input())

    assert outcome.state_committed is True
    assert flaky.write_attempts == 2
    assert flaky.get("user:test") is not None
    assert DiagnosticsEventKind.STATE_WRITE_FAILED not in sink.kinds()


def test_persistent_write_failure_still_returns_reply(
    make_flaky_store: Callable[..., FlakyStateStore],
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    flaky = make_flaky_store(write_failures=5)

    outcome = _engine(flaky, make_generator("Hi."), sink).run_turn(make_turn_input())

    assert outcome.text == "Hi."
    assert outcome.state_committed is False
    assert flaky.write_attempts == 2
    assert flaky.get("user:test") is None
    assert outcome.state.spin_loop is SpinLoop.SRI
    assert DiagnosticsEventKind.STATE_WRITE_FAILED in sink.kinds()


@pytest.mark.parametrize("failure", [UpstreamGenerationFailure("timeout"), RuntimeError("connection reset")])
def test_generation_failure_falls_back_to_slot_plan_text(
    failure: BaseException,
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    outcome = _engine(store, make_generator(failure), sink).run_turn(make_turn_input(depth_stage="R1"))

    assert outcome.generation_failed is True
    assert outcome.text == build_slot_fallback_text(outcome.slot_plan)
    assert outcome.diagnostics.output_from is CandidateSource.SLOT_PLAN
    assert outcome.state_committed is True
    assert DiagnosticsEventKind.UPSTREAM_GENERATION_FAILURE in sink.kinds()


def test_fully_internal_reply_uses_last_good_reply(
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    seeded = InMemoryStateStore({"user:test": {"lastGoodReply": "We were talking about your week."}})

    outcome = _engine(seeded, make_generator("@OBS internal only\nFRAME=R"), sink).run_turn(make_turn_input())

    assert outcome.text == "We were talking about your week."
    assert outcome.diagnostics.output_from is CandidateSource.LAST_GOOD


def test_neutral_acknowledgement_is_not_stored_as_last_good(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    outcome = _engine(store, make_generator("@OBS internal only"), sink).run_turn(make_turn_input())

    assert outcome.text == PipelineConfig().neutral_acknowledgement
    assert outcome.diagnostics.output_from is CandidateSource.NEUTRAL
    assert outcome.state.last_good_reply is None


def test_leaked_directive_is_rewritten_and_reported(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    outcome = _engine(store, make_generator('Sure @NEXT {"text": "rest a little"}'), sink).run_turn(make_turn_input())

    assert outcome.text == "Sure rest a little"
    assert DiagnosticsEventKind.DIRECTIVE_LEAK_REWRITTEN in sink.kinds()
    assert outcome.invariant_failures == []


def test_rephrase_blocks_rebuild_the_reply(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    generator = make_generator({"content": "single string", "rephraseBlocks": ["First part.", "Second part."]})

    outcome = _engine(store, generator, sink).run_turn(make_turn_input())

    assert outcome.text == "First part.\n\nSecond part."
    assert outcome.diagnostics.output_from is CandidateSource.REPHRASE
    assert outcome.diagnostics.picked_from is CandidateSource.CONTENT


def test_diagnostic_mode_raises_line_budget(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    long_reply = "\n".join(f"detail {i}" for i in range(1, 21))
    generator = make_generator(long_reply, long_reply)
    engine = _engine(store, generator, sink)

    normal = engine.run_turn(make_turn_input(user_id="a", user_text="tell me everything you see in my week"))
    diagnostic = engine.run_turn(make_turn_input(user_id="b", user_text="/debug", requested_mode="diag"))

    assert count_visible_lines(normal.text) == 8
    assert count_visible_lines(diagnostic.text) == 16
    assert diagnostic.frame is Frame.C
    assert generator.requests[1].diagnostic is True


def test_descent_gate_offers_holds_and_recovers_across_turns(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    engine = _engine(store, make_generator("one", "two", "three"), sink)
    text = "I keep messing everything up."

    first = engine.run_turn(
        make_turn_input(user_text=text, depth_stage="S2", emotional_code="Q3", self_acceptance=0.4, phase="Inner")
    )
    second = engine.run_turn(make_turn_input(user_text=text, emotional_code="Q2", self_acceptance=0.5))
    third = engine.run_turn(make_turn_input(user_text=text, emotional_code="Q1", self_acceptance=0.7))

    assert first.descent_gate is DescentGate.OFFERED
    assert first.frame is Frame.S
    assert first.slot_plan.directive(SlotKey.SAFE) == SAFE_OFFERED
    assert second.descent_gate is DescentGate.ACCEPTED
    assert third.descent_gate is DescentGate.CLOSED
    assert third.descent_gate_reason.startswith("recover:")
    saved = store.get("user:test")
    assert saved is not None and saved.descent_gate is DescentGate.CLOSED


def test_rotation_flips_when_phase_turns_outward(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    engine = _engine(store, make_generator("one", "two"), sink)

    first = engine.run_turn(make_turn_input(depth_stage="I1", emotional_code="Q2", phase="Inner"))
    second = engine.run_turn(make_turn_input(depth_stage="I2", emotional_code="Q5", phase="Outer"))

    assert first.spin_loop is SpinLoop.SRI
    assert first.spin_step == 2
    assert second.spin_loop is SpinLoop.TCF
    assert second.slot_plan.directive(SlotKey.SAFE) is not None


def test_anchor_events(
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    seeded = InMemoryStateStore({"user:test": {"intentAnchor": "career change"}})
    engine = _engine(seeded, make_generator("a", "b", "c"), sink)

    kept = engine.run_turn(make_turn_input(anchor_event="set", intent_anchor="depth=S2"))
    replaced = engine.run_turn(make_turn_input(anchor_event="set", intent_anchor="move abroad"))
    reset = engine.run_turn(make_turn_input(anchor_event="reset"))

    assert kept.state.intent_anchor_key == "career change"
    assert replaced.state.intent_anchor_key == "move abroad"
    assert reset.state.intent_anchor_key is None


def test_continuity_counters_accumulate(
    store: InMemoryStateStore,
    sink: RecordingDiagnosticsSink,
    make_generator: MakeGenerator,
    make_turn_input: MakeTurn,
) -> None:
    engine = _engine(store, make_generator("a", "b"), sink)

    engine.run_turn(make_turn_input(emotional_code="Q3"))
    outcome = engine.run_turn(make_turn_input(emotional_code="Q3"))

    counters = outcome.state.continuity
    assert counters.turn_count == 2
    assert counters.emotional_code_counts == {EmotionalCode.Q3: 2}
    assert counters.primary_emotional_code is EmotionalCode.Q3
    assert (counters.streak_code, counters.streak_length) == (EmotionalCode.Q3, 2)
    assert counters.no_delta_streak == 1
    assert outcome.slot_plan.no_delta is NoDeltaKind.STUCK


def test_module_level_run_turn_without_generator(store: InMemoryStateStore, make_turn_input: MakeTurn) -> None:
    outcome = run_turn(make_turn_input(user_text="hello"), store=store)

    assert outcome.frame is Frame.NONE
    assert outcome.text == "I hear you."
    assert outcome.diagnostics.output_from is CandidateSource.SLOT_PLAN
    assert outcome.generation_failed is False


def test_engine_helpers() -> None:
    assert is_diagnostic_mode(" IR ")
    assert not is_diagnostic_mode("chat")
    assert not is_diagnostic_mode(None)
    assert is_meta_anchor("spinLoop: SRI")
    assert is_meta_anchor("")
    assert not is_meta_anchor("finish my thesis")
    assert decide_primary_code({EmotionalCode.Q2: 3, EmotionalCode.Q4: 2}, EmotionalCode.Q4) is EmotionalCode.Q4
    assert decide_primary_code({EmotionalCode.Q2: 3, EmotionalCode.Q4: 1}, EmotionalCode.Q4) is EmotionalCode.Q2

    advanced = advance_continuity(
        ContinuityCounters(streak_code=EmotionalCode.Q1, streak_length=3, no_delta_streak=2),
        emotional_code=EmotionalCode.Q2,
        no_delta=None,
    )
    assert (advanced.streak_code, advanced.streak_length, advanced.no_delta_streak) == (EmotionalCode.Q2, 1, 0)
