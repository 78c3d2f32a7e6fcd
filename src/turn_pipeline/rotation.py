# turn_pipeline/rotation.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from turn_pipeline.contracts import (
    PIVOT_CODES,
    DepthBand,
    DepthStage,
    EmotionalCode,
    Phase,
    SpinLoop,
)

logger = logging.getLogger(__name__)

# Depth bands sitting next to the SRI -> TCF boundary.
OUTWARD_FLIP_BANDS = frozenset({DepthBand.INTENTION, DepthBand.TRANSCEND})

_SRI_BANDS = frozenset(SpinLoop.SRI.axes)
_TCF_BANDS = frozenset(SpinLoop.TCF.axes)


@dataclass(frozen=True)
class SpinState:
    spin_loop: SpinLoop
    spin_step: int
    lead_axis: DepthBand
    axis_order: tuple[DepthBand, DepthBand, DepthBand]
    next_spin_step: int
    reason: str
    flipped: bool = False
    step_held: bool = False
    suppressed: bool = False


def initial_spin_loop(depth_stage: Optional[DepthStage]) -> SpinLoop:
    if depth_stage is None:
        return SpinLoop.SRI
    if depth_stage.band in _TCF_BANDS:
        return SpinLoop.TCF
    return SpinLoop.SRI


def _step_for(loop: SpinLoop, depth_stage: Optional[DepthStage]) -> Optional[int]:
    if depth_stage is None:
        return None
    axes = loop.axes
    if depth_stage.band in axes:
        return axes.index(depth_stage.band)
    return None


def compute_spin_state(
    *,
    depth_stage: Optional[DepthStage],
    emotional_code: Optional[EmotionalCode],
    phase: Optional[Phase],
    last_spin_loop: Optional[SpinLoop],
    last_spin_step: Optional[int],
    last_phase: Optional[Phase],
    suppress: bool = False,
) -> SpinState:
    """Advance the rotation by one turn.

    The loop only flips on a phase transition backed by a depth or emotional
    signal; anything else keeps the previous loop. The step follows the depth
    axis inside the active loop and holds when depth does not map onto it.
    """
    flipped = False
    if last_spin_loop is None:
        loop = initial_spin_loop(depth_stage)
        reason = f"init:{loop.value}"
    else:
        loop = last_spin_loop
        reason = f"hold:{loop.value}"
        if (
            last_spin_loop is SpinLoop.SRI
            and last_phase is Phase.INNER
            and phase is Phase.OUTER
            and depth_stage is not None
            and depth_stage.band in OUTWARD_FLIP_BANDS
        ):
            loop = SpinLoop.TCF
            flipped = True
            reason = f"flip:SRI->TCF phase=Inner->Outer depth={depth_stage.value}"
        elif (
            last_spin_loop is SpinLoop.TCF
            and last_phase is Phase.OUTER
            and phase is Phase.INNER
            and emotional_code in PIVOT_CODES
        ):
            loop = SpinLoop.SRI
            flipped = True
            reason = f"flip:TCF->SRI phase=Outer->Inner q={emotional_code.value if emotional_code else 'NA'}"

    step = _step_for(loop, depth_stage)
    step_held = False
    if step is None:
        if last_spin_step is not None and last_spin_loop is not None:
            step = last_spin_step
            step_held = True
            reason += " step=held"
        else:
            step = 0
            reason += " step=first"
    else:
        reason += f" step={step}"

    axes = loop.axes
    # Axis order starting at the current step, e.g. R -> I -> S.
    axis_order = (axes[step], axes[(step + 1) % 3], axes[(step + 2) % 3])

    logger.debug("spin state: %s", reason)
    return SpinState(
        spin_loop=loop,
        spin_step=step,
        lead_axis=axes[step],
        axis_order=axis_order,
        next_spin_step=(step + 1) % 3,
        reason=reason,
        flipped=flipped,
        step_held=step_held,
        suppressed=suppress,
    )


__all__ = ["OUTWARD_FLIP_BANDS", "SpinState", "compute_spin_state", "initial_spin_loop"]
