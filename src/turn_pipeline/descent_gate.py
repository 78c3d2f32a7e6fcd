# turn_pipeline/descent_gate.py
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

from turn_pipeline.config import DescentThresholds
from turn_pipeline.contracts import (
    HIGH_BANDS,
    LOW_BANDS,
    NEGATIVE_CODES,
    POSITIVE_CODES,
    DepthBand,
    DepthStage,
    DescentGate,
    EmotionalCode,
    coerce_descent_gate,
)

logger = logging.getLogger(__name__)

DEFENSIVE_TARGET_MARKERS = ("defend", "protect", "avoid", "block", "uncover", "shadow")

TARGET_KIND_ALIASES = {
    "enableaction": "expand",
    "enable_action": "expand",
    "action": "expand",
    "act": "expand",
    "create": "expand",
}

BOUNDARY_PATTERNS = (
    re.compile(r"\bleave me alone\b", re.IGNORECASE),
    re.compile(r"\bdon'?t (?:push|pry|dig|probe|ask)\b", re.IGNORECASE),
    re.compile(r"\bdo not (?:push|pry|dig|probe|ask)\b", re.IGNORECASE),
    re.compile(r"\bstop (?:asking|pushing|digging|prying)\b", re.IGNORECASE),
    re.compile(r"\b(?:i )?(?:don'?t|do not) want to talk about (?:it|this|that)\b", re.IGNORECASE),
    re.compile(r"\bnot ready to talk\b", re.IGNORECASE),
    re.compile(r"\bback off\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class DescentGateDecision:
    gate: DescentGate
    reason: str
    band: Optional[DepthBand]
    self_acceptance: float


def clamp01(value: Optional[float], *, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        x = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(x):
        return default
    return max(0.0, min(1.0, x))


def normalize_target_kind(raw: Optional[str]) -> str:
    s = (raw or "").strip().lower()
    if not s:
        return "stabilize"
    return TARGET_KIND_ALIASES.get(s, s)


def is_defensive_target(raw: Optional[str]) -> bool:
    s = (raw or "").strip().lower()
    return any(marker in s for marker in DEFENSIVE_TARGET_MARKERS)


def detect_boundary_request(text: Optional[str]) -> bool:
    """True when the user asks not to be probed further."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in BOUNDARY_PATTERNS)


def decide_descent_gate(
    *,
    emotional_code: Optional[EmotionalCode],
    self_acceptance: Optional[float],
    depth_stage: Optional[DepthStage],
    target_kind: Optional[str] = None,
    prev_gate: Any = DescentGate.CLOSED,
    user_text: Optional[str] = None,
    thresholds: Optional[DescentThresholds] = None,
) -> DescentGateDecision:
    """Hysteresis decision for the three-state descent gate.

    ``prev_gate`` goes through :func:`coerce_descent_gate`, so legacy boolean
    values are accepted here and nowhere further in.
    """
    th = thresholds or DescentThresholds()
    sa = clamp01(self_acceptance, default=th.neutral)
    band = depth_stage.band if depth_stage is not None else None
    prev = coerce_descent_gate(prev_gate) or DescentGate.CLOSED
    target = (target_kind or "").strip().lower()

    low_band = band in LOW_BANDS
    high_band = band in HIGH_BANDS
    q_drop = emotional_code in NEGATIVE_CODES
    q_rise = emotional_code in POSITIVE_CODES
    defensive = is_defensive_target(target)

    q_label = emotional_code.value if emotional_code is not None else "null"
    band_label = band.value if band is not None else "NA"

    if detect_boundary_request(user_text):
        if prev.is_down:
            decision = DescentGateDecision(
                gate=DescentGate.ACCEPTED,
                reason=f"boundary-hold: prev={prev.value}, sa={sa:.2f}, q={q_label}, band={band_label}",
                band=band,
                self_acceptance=sa,
            )
        else:
            decision = DescentGateDecision(
                gate=DescentGate.OFFERED,
                reason=f"boundary-offer: sa={sa:.2f}, q={q_label}, band={band_label}",
                band=band,
                self_acceptance=sa,
            )
        logger.debug("descent gate: %s", decision.reason)
        return decision

    if prev.is_down:
        if (sa >= th.recover and q_rise) or (sa >= th.recover_high_band and high_band):
            gate = DescentGate.CLOSED
            reason = f"recover: prev={prev.value}, sa={sa:.2f}, q={q_label}, band={band_label}"
        else:
            gate = DescentGate.ACCEPTED
            reason = f"hold: prev={prev.value}, sa={sa:.2f}, q={q_label}, band={band_label}"
    else:
        should_drop = (
            (sa <= th.drop and q_drop and (low_band or defensive))
            or (sa <= th.strong_drop and q_drop)
            or (sa <= th.defensive_drop and low_band and defensive)
        )
        if should_drop:
            gate = DescentGate.OFFERED
            reason = f"drop: sa={sa:.2f}, q={q_label}, band={band_label}, target={target or 'NA'}"
        else:
            gate = DescentGate.CLOSED
            reason = f"stable: sa={sa:.2f}, q={q_label}, band={band_label}"

    logger.debug("descent gate: %s", reason)
    return DescentGateDecision(gate=gate, reason=reason, band=band, self_acceptance=sa)


__all__ = [
    "DescentGateDecision",
    "clamp01",
    "decide_descent_gate",
    "detect_boundary_request",
    "is_defensive_target",
    "normalize_target_kind",
]
