# features/steps/decision_steps.py
from __future__ import annotations

from typing import Any

from behave import given, then, when

from companion_core.step_state import get_decision_step_state
from turn_pipeline.contracts import (
    DescentGate,
    SpinLoop,
    parse_depth_stage,
    parse_emotional_code,
    parse_phase,
)
from turn_pipeline.descent_gate import decide_descent_gate
from turn_pipeline.rotation import compute_spin_state

# -------------------------
# Descent gate
# -------------------------


@given('the previous descent gate is "{previous}"')
def step_previous_gate(context: Any, previous: str) -> None:
    get_decision_step_state(context).inputs["prev_gate"] = previous


@given('the turn reads emotional code "{code}" at depth "{depth}" with self-acceptance {sa:f}')
def step_gate_inputs(context: Any, code: str, depth: str, sa: float) -> None:
    inputs = get_decision_step_state(context).inputs
    inputs["emotional_code"] = parse_emotional_code(code)
    inputs["depth_stage"] = parse_depth_stage(depth)
    inputs["self_acceptance"] = sa


@given('the user says "{text}"')
def step_user_says(context: Any, text: str) -> None:
    get_decision_step_state(context).inputs["user_text"] = text


@when("the descent gate is decided")
def step_decide_gate(context: Any) -> None:
    state = get_decision_step_state(context)
    state.gate = decide_descent_gate(**state.inputs)


@then('the descent gate is "{gate}"')
def step_gate_is(context: Any, gate: str) -> None:
    assert get_decision_step_state(context).gate.gate is DescentGate(gate)


@then('the gate reason starts with "{prefix}"')
def step_gate_reason(context: Any, prefix: str) -> None:
    reason = get_decision_step_state(context).gate.reason
    assert reason.startswith(prefix), reason


# -------------------------
# Rotation
# -------------------------


@given('the last rotation was "{loop}" step {step:d} in phase "{phase}"')
def step_last_rotation(context: Any, loop: str, step: int, phase: str) -> None:
    inputs = get_decision_step_state(context).inputs
    inputs["last_spin_loop"] = SpinLoop(loop)
    inputs["last_spin_step"] = step
    inputs["last_phase"] = parse_phase(phase)


@when('the turn arrives at depth "{depth}" with code "{code}" in phase "{phase}"')
def step_compute_rotation(context: Any, depth: str, code: str, phase: str) -> None:
    state = get_decision_step_state(context)
    state.spin = compute_spin_state(
        depth_stage=parse_depth_stage(depth),
        emotional_code=parse_emotional_code(code),
        phase=parse_phase(phase),
        **state.inputs,
    )


@then('the spin loop is "{loop}"')
def step_spin_loop_is(context: Any, loop: str) -> None:
    assert get_decision_step_state(context).spin.spin_loop is SpinLoop(loop)


@then("the spin step is {step:d}")
def step_spin_step_is(context: Any, step: int) -> None:
    assert get_decision_step_state(context).spin.spin_step == step


@then("the rotation flipped")
def step_rotation_flipped(context: Any) -> None:
    assert get_decision_step_state(context).spin.flipped is True


@then("the rotation did not flip")
def step_rotation_held(context: Any) -> None:
    assert get_decision_step_state(context).spin.flipped is False
