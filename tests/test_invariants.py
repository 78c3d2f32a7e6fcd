from __future__ import annotations

from turn_pipeline.contracts import DescentGate, SpinLoop
from turn_pipeline.invariants import (
    REGISTRY,
    Flow,
    InvariantCheckContext,
    InvariantId,
    Validity,
    check_descent_gate_reason_present,
    check_line_budget_respected,
    check_no_directive_leak,
    check_output_non_empty,
    check_spin_step_consistent,
    default_check_context,
    run_checkers,
)


def _ctx(**overrides: object) -> InvariantCheckContext:
    fields: dict[str, object] = {
        "scope": "user:test",
        "output_text": "I hear you.\nTake your time.",
        "line_budget": 8,
        "spin_loop": SpinLoop.SRI,
        "spin_step": 1,
        "descent_gate": DescentGate.CLOSED,
        "descent_gate_reason": "stable: sa=0.60, q=Q2, band=R",
    }
    fields.update(overrides)
    return default_check_context(**fields)  # type: ignore[arg-type]


def test_all_registered_invariants_pass_for_a_clean_turn() -> None:
    outcomes = run_checkers(_ctx())

    assert [o.invariant_id for o in outcomes] == list(REGISTRY)
    assert all(o.passed for o in outcomes)
    assert all(o.validity is Validity.VALID for o in outcomes)


def test_run_checkers_can_select_a_subset() -> None:
    outcomes = run_checkers(_ctx(output_text=""), [InvariantId.OUTPUT_NON_EMPTY])

    assert len(outcomes) == 1
    assert outcomes[0].code == "output_empty"


def test_output_non_empty_failure_has_deterministic_shape() -> None:
    outcome = check_output_non_empty(_ctx(output_text="  \n "))

    assert outcome.invariant_id is InvariantId.OUTPUT_NON_EMPTY
    assert outcome.passed is False
    assert outcome.flow is Flow.CONTINUE
    assert outcome.validity is Validity.DEGRADED
    assert isinstance(outcome.evidence, tuple)
    assert outcome.details["message"] == outcome.reason


def test_directive_leak_reports_offending_lines() -> None:
    outcome = check_no_directive_leak(_ctx(output_text="fine\n@NEXT go\n【META】"))

    assert outcome.passed is False
    assert [e["lineno"] for e in outcome.evidence] == [2, 3]


def test_line_budget_counts_visible_lines_only() -> None:
    within = check_line_budget_respected(_ctx(output_text="a\n\nb\n\nc", line_budget=3))
    exceeded = check_line_budget_respected(_ctx(output_text="a\nb\nc\nd", line_budget=3))
    unbudgeted = check_line_budget_respected(_ctx(output_text="a\nb\nc\nd", line_budget=0))

    assert within.passed is True
    assert exceeded.passed is False
    assert exceeded.details["visible_lines"] == 4
    assert unbudgeted.passed is True


def test_spin_step_needs_loop_and_range() -> None:
    assert check_spin_step_consistent(_ctx(spin_step=None, spin_loop=None)).code == "spin_step_not_applicable"
    assert check_spin_step_consistent(_ctx(spin_loop=None)).passed is False
    assert check_spin_step_consistent(_ctx(spin_step=3)).passed is False


def test_descent_gate_reason_must_be_present() -> None:
    outcome = check_descent_gate_reason_present(_ctx(descent_gate=DescentGate.OFFERED, descent_gate_reason=" "))

    assert outcome.passed is False
    assert outcome.details["descent_gate"] == "offered"
