# turn_pipeline/frames.py
from __future__ import annotations

import re
from typing import Optional

from turn_pipeline.contracts import (
    DepthBand,
    DepthStage,
    DescentGate,
    Frame,
    InputKind,
    NoDeltaKind,
    SlotKey,
    SlotPlan,
    SpinLoop,
)

# ------------------------------------------------------------------------------
# Input classification (heuristic, not contractual)
# ------------------------------------------------------------------------------

GREETING_PATTERNS = (
    re.compile(r"^(hi|hello|hey|hiya|yo|good (morning|afternoon|evening)|morning|evening)\b[\s!.,~]*$", re.IGNORECASE),
)
MICRO_TOKENS = frozenset({"ok", "okay", "k", "yes", "no", "yeah", "yep", "nope", "hmm", "hm", "mm", "uh", "um", "..."})
DEBUG_PATTERN = re.compile(r"^\s*/(debug|diag|ir)\b|\bdiagnos(e|is|tic)\b", re.IGNORECASE)
REQUEST_PATTERN = re.compile(
    r"^\s*(please\s+)?(write|make|create|draft|list|give me|help me|show me|plan|fix|summari[sz]e|explain|tell me how)\b"
    r"|\b(can|could|would) you (please )?(write|make|create|draft|list|help|show|plan|fix|summari[sz]e|explain)\b",
    re.IGNORECASE,
)
_PUNCT_ONLY = re.compile(r"^[\W_]+$", re.UNICODE)


def classify_input_kind(text: Optional[str]) -> InputKind:
    t = (text or "").strip()
    if not t:
        return InputKind.UNKNOWN
    if DEBUG_PATTERN.search(t):
        return InputKind.DEBUG
    if any(p.match(t) for p in GREETING_PATTERNS):
        return InputKind.GREETING
    bare = t.lower().rstrip(".!?~ ")
    if bare in MICRO_TOKENS or _PUNCT_ONLY.match(t) or len(t) <= 3:
        return InputKind.MICRO
    if REQUEST_PATTERN.search(t):
        return InputKind.REQUEST
    if t.endswith("?"):
        return InputKind.QUESTION
    return InputKind.CHAT


# ------------------------------------------------------------------------------
# Frame selection
# ------------------------------------------------------------------------------

_BAND_FRAMES = {
    DepthBand.SELF: Frame.S,
    DepthBand.RESONANCE: Frame.R,
    DepthBand.CREATION: Frame.C,
    DepthBand.INTENTION: Frame.I,
    DepthBand.TRANSCEND: Frame.T,
    DepthBand.FORM: Frame.F,
}


def select_frame(
    depth_stage: Optional[DepthStage],
    descent_gate: DescentGate,
    input_kind: InputKind,
) -> Frame:
    """First match wins. Total over its inputs."""
    band = depth_stage.band if depth_stage is not None else None

    if descent_gate is not DescentGate.CLOSED:
        return Frame.S if band is DepthBand.SELF else Frame.MICRO

    if input_kind is InputKind.MICRO:
        return Frame.MICRO
    if input_kind is InputKind.GREETING:
        return Frame.NONE

    if input_kind in (InputKind.REQUEST, InputKind.DEBUG):
        return Frame.C

    if band is not None:
        return _BAND_FRAMES[band]

    return Frame.NONE


def build_frame_reason(
    frame: Frame,
    input_kind: InputKind,
    depth_stage: Optional[DepthStage],
    descent_gate: DescentGate,
) -> str:
    depth = depth_stage.value if depth_stage is not None else "null"
    return f"frame={frame.value} by inputKind={input_kind.value} depth={depth} descentGate={descent_gate.value}"


# ------------------------------------------------------------------------------
# No-delta detection
# ------------------------------------------------------------------------------

REPEAT_WARNING_PATTERN = re.compile(
    r"\b(again|same thing|keep (saying|telling)|over and over|nothing (changes|changed)|still the same|i know,? but)\b",
    re.IGNORECASE,
)


def detect_no_delta(
    text: Optional[str],
    input_kind: InputKind,
    *,
    rotation_held: bool,
) -> Optional[NoDeltaKind]:
    """Detect a conversation that is circling without movement."""
    t = (text or "").strip()
    if REPEAT_WARNING_PATTERN.search(t):
        return NoDeltaKind.REPEAT_WARNING
    if not rotation_held:
        return None
    if len(t) <= 8 and input_kind in (InputKind.CHAT, InputKind.QUESTION, InputKind.MICRO):
        return NoDeltaKind.SHORT_LOOP
    return NoDeltaKind.STUCK


# ------------------------------------------------------------------------------
# Slot plans
# ------------------------------------------------------------------------------

SAFE_OFFERED = "SAFE:offer-pause - slow down, name that it is fine not to go further right now"
SAFE_ACCEPTED = "SAFE:hold - stay beside the user, no new probing, keep it short and steady"
SAFE_SOFT = "SAFE:soft - keep footing steady while moving outward"

_FRAME_TABLE: dict[Frame, dict[SlotKey, Optional[str]]] = {
    Frame.S: {
        SlotKey.OBS: "OBS:reflect-self - mirror how the user is describing themselves",
        SlotKey.SHIFT: "SHIFT:one-angle - offer one gentler reading of the same feeling",
        SlotKey.NEXT: None,
    },
    Frame.R: {
        SlotKey.OBS: "OBS:reflect-relation - name what is happening between people",
        SlotKey.SHIFT: "SHIFT:one-angle - show the other side of the exchange",
        SlotKey.NEXT: "NEXT:small-step - one small thing to try in the relationship",
    },
    Frame.C: {
        SlotKey.OBS: "OBS:restate-task - restate what the user wants done",
        SlotKey.SHIFT: None,
        SlotKey.NEXT: "NEXT:action - concrete next action or the requested output",
    },
    Frame.I: {
        SlotKey.OBS: "OBS:reflect-intent - name the intention underneath",
        SlotKey.SHIFT: "SHIFT:reframe - connect the intention to a wider direction",
        SlotKey.NEXT: "NEXT:choice - one choice that honours the intention",
    },
    Frame.T: {
        SlotKey.OBS: "OBS:reflect-vision - acknowledge the larger picture",
        SlotKey.SHIFT: "SHIFT:widen - widen the frame beyond the current situation",
        SlotKey.NEXT: None,
    },
    Frame.F: {
        SlotKey.OBS: "OBS:reflect-form - name the concrete shape things are taking",
        SlotKey.SHIFT: "SHIFT:one-angle - one adjustment to the form",
        SlotKey.NEXT: "NEXT:small-step - a small practical step",
    },
    Frame.MICRO: {
        SlotKey.OBS: "OBS:acknowledge - short acknowledgement only",
        SlotKey.SHIFT: None,
        SlotKey.NEXT: None,
    },
    Frame.NONE: {
        SlotKey.OBS: "OBS:acknowledge - plain friendly reply",
        SlotKey.SHIFT: None,
        SlotKey.NEXT: None,
    },
}

NO_DELTA_SHIFT = {
    NoDeltaKind.REPEAT_WARNING: "SHIFT:break-loop - name the repetition kindly and try a different door",
    NoDeltaKind.SHORT_LOOP: "SHIFT:break-loop - ask one light question from a new angle",
    NoDeltaKind.STUCK: "SHIFT:break-loop - offer one fresh angle instead of repeating the last one",
}


def build_slot_plan(
    frame: Frame,
    *,
    descent_gate: DescentGate,
    spin_loop: Optional[SpinLoop],
    no_delta: Optional[NoDeltaKind] = None,
    reason: str = "",
) -> SlotPlan:
    slots: dict[SlotKey, Optional[str]] = dict(_FRAME_TABLE[frame])

    if descent_gate is DescentGate.OFFERED:
        slots[SlotKey.SAFE] = SAFE_OFFERED
    elif descent_gate is DescentGate.ACCEPTED:
        slots[SlotKey.SAFE] = SAFE_ACCEPTED
    elif spin_loop is SpinLoop.TCF:
        slots[SlotKey.SAFE] = SAFE_SOFT
    else:
        slots[SlotKey.SAFE] = None

    # Only frames that already carry a SHIFT get the loop-break variant.
    if no_delta is not None and slots.get(SlotKey.SHIFT) is not None:
        slots[SlotKey.SHIFT] = NO_DELTA_SHIFT[no_delta]

    return SlotPlan(frame=frame, slots=slots, reason=reason, no_delta=no_delta)


# ------------------------------------------------------------------------------
# Render fallback builder
# ------------------------------------------------------------------------------

_FALLBACK_SENTENCES: dict[str, str] = {
    "OBS:reflect-self": "It sounds like you are being hard on yourself right now.",
    "OBS:reflect-relation": "It sounds like something between you and someone else is weighing on you.",
    "OBS:restate-task": "Let's work on what you asked for.",
    "OBS:reflect-intent": "There seems to be something you really want underneath this.",
    "OBS:reflect-vision": "You are looking at something bigger than today.",
    "OBS:reflect-form": "Things are starting to take a concrete shape.",
    "OBS:acknowledge": "I hear you.",
    "SHIFT:one-angle": "Maybe there is another way to look at it too.",
    "SHIFT:reframe": "That intention can point somewhere wider than this moment.",
    "SHIFT:widen": "Let's step back and look at the wider picture.",
    "SHIFT:break-loop": "We keep coming back here, so let's try a different door this time.",
    "NEXT:small-step": "One small step could be enough for now.",
    "NEXT:action": "Tell me the first piece you want to start with.",
    "NEXT:choice": "What is one choice that would honour that?",
    "SAFE:offer-pause": "We don't have to go any further than feels okay.",
    "SAFE:hold": "I'm staying right here with you.",
    "SAFE:soft": "We can take this at whatever pace feels steady.",
}


def _directive_tag(directive: str) -> str:
    return directive.split(" - ", 1)[0].strip()


def build_slot_fallback_text(plan: SlotPlan) -> str:
    """Plain user-facing text for the present slots. Never contains directive markup."""
    lines: list[str] = []
    for key in plan.slot_keys():
        directive = plan.directive(key) or ""
        sentence = _FALLBACK_SENTENCES.get(_directive_tag(directive))
        if sentence and sentence not in lines:
            lines.append(sentence)
    return "\n".join(lines)


__all__ = [
    "build_frame_reason",
    "build_slot_fallback_text",
    "build_slot_plan",
    "classify_input_kind",
    "detect_no_delta",
    "select_frame",
]
