from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from turn_pipeline.contracts import DescentGate, SpinLoop
from turn_pipeline.sanitize import find_leak


class InvariantId(str, Enum):
    OUTPUT_NON_EMPTY = "output_non_empty.v1"
    NO_DIRECTIVE_LEAK = "no_directive_leak.v1"
    LINE_BUDGET_RESPECTED = "line_budget_respected.v1"
    SPIN_STEP_CONSISTENT = "spin_step_consistent.v1"
    DESCENT_GATE_REASON_PRESENT = "descent_gate_reason_present.v1"


class Flow(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class Validity(str, Enum):
    VALID = "valid"
    DEGRADED = "degraded"
    INVALID = "invalid"


@dataclass(frozen=True)
class InvariantOutcome:
    invariant_id: InvariantId
    passed: bool
    reason: str
    flow: Flow
    validity: Validity
    code: str
    evidence: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    details: Mapping[str, Any] = field(default_factory=dict)


class CheckContext(Protocol):
    now_iso: str
    scope: str
    output_text: str
    line_budget: int
    spin_loop: Optional[SpinLoop]
    spin_step: Optional[int]
    descent_gate: DescentGate
    descent_gate_reason: str


@dataclass(frozen=True)
class InvariantCheckContext:
    now_iso: str
    scope: str
    output_text: str
    line_budget: int
    spin_loop: Optional[SpinLoop] = None
    spin_step: Optional[int] = None
    descent_gate: DescentGate = DescentGate.CLOSED
    descent_gate_reason: str = ""


Checker = Callable[[CheckContext], InvariantOutcome]


def _ok(invariant_id: InvariantId, code: str, details: Optional[Mapping[str, Any]] = None) -> InvariantOutcome:
    detail_map = dict(details or {})
    reason = str(detail_map.get("message") or code)
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=True,
        reason=reason,
        flow=Flow.CONTINUE,
        validity=Validity.VALID,
        code=code,
        details=detail_map,
    )


def _degraded(
    invariant_id: InvariantId,
    code: str,
    message: str,
    *,
    evidence: Sequence[Mapping[str, Any]] = (),
    details: Optional[Mapping[str, Any]] = None,
) -> InvariantOutcome:
    # Output invariants never stop a turn; a failure degrades the reply.
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=False,
        reason=message,
        flow=Flow.CONTINUE,
        validity=Validity.DEGRADED,
        code=code,
        evidence=tuple(evidence),
        details={"message": message, **dict(details or {})},
    )


def check_output_non_empty(ctx: CheckContext) -> InvariantOutcome:
    if ctx.output_text.strip():
        return _ok(InvariantId.OUTPUT_NON_EMPTY, "output_present", {"out_len": len(ctx.output_text)})
    return _degraded(
        InvariantId.OUTPUT_NON_EMPTY,
        "output_empty",
        "Rendered reply is empty.",
        evidence=({"kind": "scope", "value": ctx.scope},),
    )


def check_no_directive_leak(ctx: CheckContext) -> InvariantOutcome:
    leaked = [
        {"kind": "line", "lineno": idx, "value": line[:80]}
        for idx, line in enumerate(ctx.output_text.split("\n"), start=1)
        if find_leak(line) is not None
    ]
    if not leaked:
        return _ok(InvariantId.NO_DIRECTIVE_LEAK, "no_directive_leak")
    return _degraded(
        InvariantId.NO_DIRECTIVE_LEAK,
        "directive_leak",
        "Rendered reply contains directive or label markup.",
        evidence=leaked,
    )


def check_line_budget_respected(ctx: CheckContext) -> InvariantOutcome:
    visible = sum(1 for line in ctx.output_text.split("\n") if line.strip())
    if ctx.line_budget <= 0 or visible <= ctx.line_budget:
        return _ok(
            InvariantId.LINE_BUDGET_RESPECTED,
            "within_line_budget",
            {"visible_lines": visible, "line_budget": ctx.line_budget},
        )
    return _degraded(
        InvariantId.LINE_BUDGET_RESPECTED,
        "line_budget_exceeded",
        "Rendered reply exceeds its line budget.",
        details={"visible_lines": visible, "line_budget": ctx.line_budget},
    )


def check_spin_step_consistent(ctx: CheckContext) -> InvariantOutcome:
    if ctx.spin_step is None:
        return _ok(InvariantId.SPIN_STEP_CONSISTENT, "spin_step_not_applicable")
    if ctx.spin_loop is not None and ctx.spin_step in (0, 1, 2):
        return _ok(InvariantId.SPIN_STEP_CONSISTENT, "spin_step_consistent")
    return _degraded(
        InvariantId.SPIN_STEP_CONSISTENT,
        "spin_step_inconsistent",
        "Spin step must be 0..2 and paired with a spin loop.",
        details={"spin_loop": ctx.spin_loop.value if ctx.spin_loop else None, "spin_step": ctx.spin_step},
    )


def check_descent_gate_reason_present(ctx: CheckContext) -> InvariantOutcome:
    if ctx.descent_gate_reason.strip():
        return _ok(InvariantId.DESCENT_GATE_REASON_PRESENT, "descent_gate_explained")
    return _degraded(
        InvariantId.DESCENT_GATE_REASON_PRESENT,
        "descent_gate_unexplained",
        "Descent gate decisions must carry a reason.",
        details={"descent_gate": ctx.descent_gate.value},
    )


REGISTRY: dict[InvariantId, Checker] = {
    InvariantId.OUTPUT_NON_EMPTY: check_output_non_empty,
    InvariantId.NO_DIRECTIVE_LEAK: check_no_directive_leak,
    InvariantId.LINE_BUDGET_RESPECTED: check_line_budget_respected,
    InvariantId.SPIN_STEP_CONSISTENT: check_spin_step_consistent,
    InvariantId.DESCENT_GATE_REASON_PRESENT: check_descent_gate_reason_present,
}


def run_checkers(
    ctx: CheckContext,
    invariant_ids: Optional[Iterable[InvariantId]] = None,
) -> list[InvariantOutcome]:
    ids = list(invariant_ids) if invariant_ids is not None else list(REGISTRY)
    return [REGISTRY[invariant_id](ctx) for invariant_id in ids]


def default_check_context(
    *,
    scope: str,
    output_text: str,
    line_budget: int,
    spin_loop: Optional[SpinLoop] = None,
    spin_step: Optional[int] = None,
    descent_gate: DescentGate = DescentGate.CLOSED,
    descent_gate_reason: str = "",
) -> InvariantCheckContext:
    return InvariantCheckContext(
        now_iso=datetime.now(timezone.utc).isoformat(),
        scope=scope,
        output_text=output_text,
        line_budget=line_budget,
        spin_loop=spin_loop,
        spin_step=spin_step,
        descent_gate=descent_gate,
        descent_gate_reason=descent_gate_reason,
    )
