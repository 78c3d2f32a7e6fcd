# features/steps/turn_steps.py
from __future__ import annotations

from typing import Any

from behave import given, then, when

from companion_core.step_state import TurnStepState, get_turn_step_state
from turn_pipeline.adapters.generation import ScriptedTextGenerator
from turn_pipeline.adapters.state_store import InMemoryStateStore
from turn_pipeline.contracts import TurnInput, UpstreamGenerationFailure
from turn_pipeline.engine import TurnEngine
from turn_pipeline.sanitize import has_leak


def _run(context: Any, user_id: str, text: str, analysis: dict[str, Any]) -> None:
    state = get_turn_step_state(context)
    engine = getattr(context, "_turn_engine", None)
    if engine is None:
        engine = TurnEngine(
            store=state.store,
            generator=ScriptedTextGenerator(state.generator_script),
            diagnostics=state.sink,
        )
        setattr(context, "_turn_engine", engine)
    turn = TurnInput(user_id=user_id, user_text=text, analysis=analysis)
    state.outcomes.append(engine.run_turn(turn))


def _last(state: TurnStepState) -> Any:
    assert state.outcomes, "no turn has run yet"
    return state.outcomes[-1]


@given("an empty state store")
def step_empty_store(context: Any) -> None:
    get_turn_step_state(context).store = InMemoryStateStore()


@given('the generator will reply "{text}"')
def step_generator_reply(context: Any, text: str) -> None:
    get_turn_step_state(context).generator_script.append(text)


@given('the generator will fail with "{reason}"')
def step_generator_failure(context: Any, reason: str) -> None:
    get_turn_step_state(context).generator_script.append(UpstreamGenerationFailure(reason))


@when('user "{user_id}" says "{text}" at depth "{depth}" with code "{code}"')
def step_user_turn(context: Any, user_id: str, text: str, depth: str, code: str) -> None:
    _run(context, user_id, text, {"depth_stage": depth, "emotional_code": code})


@when('user "{user_id}" says "{text}" at depth "{depth}" with code "{code}" and self-acceptance {sa:f}')
def step_user_turn_with_sa(context: Any, user_id: str, text: str, depth: str, code: str, sa: float) -> None:
    _run(context, user_id, text, {"depth_stage": depth, "emotional_code": code, "self_acceptance": sa})


@then('the reply is "{text}"')
def step_reply_is(context: Any, text: str) -> None:
    assert _last(get_turn_step_state(context)).text == text


@then("the reply is not empty")
def step_reply_not_empty(context: Any) -> None:
    assert _last(get_turn_step_state(context)).text.strip()


@then("the reply contains no directive markup")
def step_reply_no_leak(context: Any) -> None:
    assert not has_leak(_last(get_turn_step_state(context)).text.split("\n"))


@then('the state for "{user_id}" has spin loop "{loop}"')
def step_state_spin_loop(context: Any, user_id: str, loop: str) -> None:
    saved = get_turn_step_state(context).store.get(user_id)
    assert saved is not None and saved.spin_loop is not None
    assert saved.spin_loop.value == loop


@then("the turn was committed")
def step_turn_committed(context: Any) -> None:
    assert _last(get_turn_step_state(context)).state_committed is True


@then('the diagnostics include "{kind}"')
def step_diagnostics_include(context: Any, kind: str) -> None:
    kinds = [k.value for k in get_turn_step_state(context).sink.kinds()]
    assert kind in kinds, kinds


@then('the descent gates were "{gates}"')
def step_descent_gates(context: Any, gates: str) -> None:
    expected = [g.strip() for g in gates.split(",")]
    actual = [outcome.descent_gate.value for outcome in get_turn_step_state(context).outcomes]
    assert actual == expected, actual
