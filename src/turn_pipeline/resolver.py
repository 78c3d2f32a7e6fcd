# turn_pipeline/resolver.py
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Optional, Union

from turn_pipeline.contracts import (
    BlocksOrigin,
    CandidateSource,
    CandidateText,
    GenerationResult,
    InputKind,
    Resolution,
    TurnClassification,
    TurnFlags,
)

logger = logging.getLogger(__name__)

PRECEDENCE: tuple[CandidateSource, ...] = (
    CandidateSource.CONTENT,
    CandidateSource.ASSISTANT_TEXT,
    CandidateSource.TEXT,
    CandidateSource.SLOT_PLAN,
)

# The picked candidate always heads the cascade.
FALLBACK_ORDER: tuple[CandidateSource, ...] = (
    CandidateSource.SPEECH_SKIPPED,
    CandidateSource.RAW_MODEL,
    CandidateSource.EXTRACTED_MODEL,
    CandidateSource.REPHRASE,
)

_SILENCE_TEXT = re.compile(r"^(?:…+|\.{3,}|・{3,})$")

BlockList = Union[Sequence[str], str, None]


def is_silence_text(text: Optional[str]) -> bool:
    t = (text or "").strip()
    return bool(t) and bool(_SILENCE_TEXT.match(t))


def _first_usable(candidates: Sequence[CandidateText], source: CandidateSource) -> Optional[CandidateText]:
    for candidate in candidates:
        if candidate.source is source and candidate.is_usable:
            return candidate
    return None


def _visible_blocks(blocks: BlockList) -> list[str]:
    if blocks is None:
        return []
    if isinstance(blocks, str):
        return [blocks] if blocks.strip() else []
    return [b for b in blocks if isinstance(b, str) and b.strip()]


def classify_turn(flags: TurnFlags, picked_text: str) -> TurnClassification:
    if flags.diagnostic:
        return TurnClassification.DIAGNOSTIC
    if flags.silence or flags.speech_skipped or is_silence_text(picked_text):
        return TurnClassification.SILENCE
    return TurnClassification.NORMAL


def should_force_rebuild(
    *,
    external_blocks: BlockList,
    classification: TurnClassification,
    derived_blocks: BlockList,
) -> bool:
    """All four conditions are required; flipping any one keeps the single-string path."""
    return (
        bool(_visible_blocks(external_blocks))
        and classification is not TurnClassification.DIAGNOSTIC
        and classification is not TurnClassification.SILENCE
        and not _visible_blocks(derived_blocks)
    )


def resolve_candidates(
    candidates: Sequence[CandidateText],
    flags: TurnFlags,
    *,
    external_blocks: BlockList = None,
    derived_blocks: BlockList = None,
    multi_section_threshold: int = 3,
    rephrase_blocks_enabled: bool = True,
) -> Resolution:
    picked: Optional[CandidateText] = None
    for source in PRECEDENCE:
        picked = _first_usable(candidates, source)
        if picked is not None:
            break

    picked_text = picked.text if picked is not None else ""
    picked_from = picked.source if picked is not None else CandidateSource.NONE

    chain: list[CandidateText] = []
    if picked is not None:
        chain.append(picked)
    for source in FALLBACK_ORDER:
        for candidate in candidates:
            if candidate.source is source and candidate.is_usable and candidate not in chain:
                chain.append(candidate)

    fallback = chain[0] if chain else None
    classification = classify_turn(flags, picked_text)

    external = _visible_blocks(external_blocks) if rephrase_blocks_enabled else []
    derived = _visible_blocks(derived_blocks)
    forced = should_force_rebuild(
        external_blocks=external,
        classification=classification,
        derived_blocks=derived,
    )
    if forced:
        blocks: tuple[str, ...] = tuple(external)
        blocks_from = BlocksOrigin.REPHRASE_BLOCKS
    elif derived:
        blocks = tuple(derived)
        blocks_from = BlocksOrigin.DERIVED
    else:
        blocks = ()
        blocks_from = BlocksOrigin.NONE

    multi_section = flags.multi_section or len(blocks) >= multi_section_threshold
    short_turn = classification is TurnClassification.SILENCE or flags.input_kind is InputKind.MICRO

    logger.debug(
        "resolved candidates: picked_from=%s fallback_from=%s blocks_from=%s classification=%s",
        picked_from.value,
        fallback.source.value if fallback else CandidateSource.NONE.value,
        blocks_from.value,
        classification.value,
    )
    return Resolution(
        picked_text=picked_text,
        picked_from=picked_from,
        fallback_text=fallback.text if fallback else "",
        fallback_from=fallback.source if fallback else CandidateSource.NONE,
        fallback_chain=tuple(chain),
        blocks=blocks,
        blocks_from=blocks_from,
        classification=classification,
        multi_section=multi_section,
        short_turn=short_turn,
        forced_rebuild=forced,
    )


def candidates_from_generation(
    result: Optional[GenerationResult],
    *,
    slot_fallback_text: Optional[str] = None,
) -> list[CandidateText]:
    """Flatten a generator reply (possibly absent) into the ordered candidate list."""
    out: list[CandidateText] = []
    if result is not None:
        pairs = (
            (CandidateSource.CONTENT, result.content),
            (CandidateSource.ASSISTANT_TEXT, result.assistant_text),
            (CandidateSource.TEXT, result.text),
            (CandidateSource.SPEECH_SKIPPED, result.speech_skipped_text),
            (CandidateSource.RAW_MODEL, result.raw_text),
            (CandidateSource.EXTRACTED_MODEL, result.extracted_text),
            (CandidateSource.REPHRASE, result.rephrase_text),
        )
        out.extend(CandidateText(source=source, text=text) for source, text in pairs if text)
        if result.rephrase_text is None and result.rephrase_blocks:
            joined = "\n\n".join(b for b in result.rephrase_blocks if b.strip())
            if joined:
                out.append(CandidateText(source=CandidateSource.REPHRASE, text=joined))
    if slot_fallback_text:
        out.append(CandidateText(source=CandidateSource.SLOT_PLAN, text=slot_fallback_text))
    return out


__all__ = [
    "FALLBACK_ORDER",
    "PRECEDENCE",
    "candidates_from_generation",
    "classify_turn",
    "is_silence_text",
    "resolve_candidates",
    "should_force_rebuild",
]
