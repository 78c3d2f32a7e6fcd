# turn_pipeline/render.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Optional, Union

from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import (
    BlocksOrigin,
    CandidateSource,
    RenderDiagnostics,
    RenderResult,
    RenderStage,
    Resolution,
    TurnClassification,
)
from turn_pipeline.sanitize import (
    find_leak,
    has_leak,
    is_effectively_empty,
    rewrite_leaked_line,
    strip_all,
)

logger = logging.getLogger(__name__)

HEADING_MAX_CHARS = 40

RenderSource = Union[str, Sequence[str]]
Block = list[str]

_MAX_GUARD_ROUNDS = 3


# ------------------------------------------------------------------------------
# Block helpers
# ------------------------------------------------------------------------------


def _raw_lines(source: RenderSource) -> list[str]:
    if isinstance(source, str):
        text = source
    else:
        text = "\n\n".join(block for block in source if isinstance(block, str))
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _lines_to_blocks(lines: Sequence[str], diagnostics: Optional[RenderDiagnostics] = None) -> list[Block]:
    blocks: list[Block] = []
    current: Block = []
    blank_run = 0
    for line in lines:
        if line.strip():
            if blank_run > 1 and diagnostics is not None:
                diagnostics.trimmed_blank_runs += 1
            blank_run = 0
            current.append(line)
            continue
        blank_run += 1
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def _blocks_to_lines(blocks: Sequence[Block]) -> list[str]:
    lines: list[str] = []
    for block in blocks:
        if lines:
            lines.append("")
        lines.extend(block)
    return lines


def _heading(block: Block) -> Optional[str]:
    if not block:
        return None
    first = block[0].strip()
    if not first or len(first) > HEADING_MAX_CHARS:
        return None
    return first


def count_visible_lines(text: str) -> int:
    return sum(1 for line in text.split("\n") if line.strip())


# ------------------------------------------------------------------------------
# NORMALIZE_BLOCKS
# ------------------------------------------------------------------------------


def normalize_blocks(blocks: Sequence[Block], diagnostics: Optional[RenderDiagnostics] = None) -> list[Block]:
    """Drop empty blocks, collapse consecutive duplicates, and fold repeated headings.

    Repeated until stable so a second pass never finds anything to do.
    """
    current = [list(b) for b in blocks if b]
    while True:
        out: list[Block] = []
        for block in current:
            if out and out[-1] == block:
                if diagnostics is not None:
                    diagnostics.removed_exact_dups += 1
                continue
            heading = _heading(block)
            if out and heading is not None and _heading(out[-1]) == heading:
                if diagnostics is not None:
                    diagnostics.merged_headings += 1
                out[-1] = out[-1] + block[1:]
                continue
            out.append(list(block))
        if out == current:
            return out
        current = out


# ------------------------------------------------------------------------------
# BUDGET_TRUNCATE
# ------------------------------------------------------------------------------


def compute_line_budget(
    classification: TurnClassification,
    *,
    config: PipelineConfig,
    multi_section: bool = False,
    short_turn: bool = False,
) -> int:
    configured = config.configured_max_lines
    if classification is TurnClassification.DIAGNOSTIC:
        return max(configured, config.diagnostic_min_lines)
    if short_turn or classification is TurnClassification.SILENCE:
        return config.short_turn_max_lines
    if multi_section:
        return max(configured, config.multi_section_min_lines)
    return configured


def apply_line_budget(blocks: Sequence[Block], budget: int) -> list[Block]:
    """Keep at most ``budget`` non-blank lines. Block separators are not counted."""
    out: list[Block] = []
    remaining = budget
    for block in blocks:
        if remaining <= 0:
            break
        kept = block[:remaining]
        remaining -= len(kept)
        out.append(kept)
    return out


# ------------------------------------------------------------------------------
# FINAL guard
# ------------------------------------------------------------------------------


def _rewrite_leaks(lines: Sequence[str]) -> tuple[list[str], int]:
    out: list[str] = []
    rewrites = 0
    for line in lines:
        if find_leak(line) is None:
            out.append(line)
            continue
        rewrites += 1
        rewritten = rewrite_leaked_line(line)
        if rewritten is not None:
            out.append(rewritten)
    return out, rewrites


# ------------------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------------------


def run_render_pipeline(
    source: RenderSource,
    *,
    config: PipelineConfig,
    classification: TurnClassification = TurnClassification.NORMAL,
    multi_section: bool = False,
    short_turn: bool = False,
    diagnostics: Optional[RenderDiagnostics] = None,
) -> tuple[str, RenderDiagnostics]:
    """RAW -> STRIP_DIRECTIVES -> STRIP_LABELS -> NORMALIZE_BLOCKS -> BUDGET_TRUNCATE -> FINAL.

    May return an empty string; callers decide what to fall back to.
    """
    diag = diagnostics or RenderDiagnostics(
        classification=classification,
        multi_section=multi_section,
        render_engine_enabled=config.render_engine_enabled,
    )
    persona = config.persona_header_names
    shape = config.render_engine_enabled

    diag.stages = [RenderStage.RAW]
    lines = _raw_lines(source)

    lines = strip_all(lines, persona)
    diag.stages.extend((RenderStage.STRIP_DIRECTIVES, RenderStage.STRIP_LABELS))

    budget = compute_line_budget(
        classification, config=config, multi_section=multi_section, short_turn=short_turn
    )

    def _shape(current: Sequence[str]) -> list[str]:
        if not shape:
            return _blocks_to_lines(_lines_to_blocks(current))
        blocks = normalize_blocks(_lines_to_blocks(current, diag), diag)
        blocks = apply_line_budget(blocks, budget)
        # Truncation can expose a duplicate tail; normalizing only removes lines.
        blocks = normalize_blocks(blocks, diag)
        return _blocks_to_lines(blocks)

    lines = _shape(lines)
    if shape:
        diag.stages.extend((RenderStage.NORMALIZE_BLOCKS, RenderStage.BUDGET_TRUNCATE))
        diag.applied_line_budget = budget

    for _ in range(_MAX_GUARD_ROUNDS):
        if not has_leak(lines):
            break
        lines, rewrites = _rewrite_leaks(lines)
        diag.leak_rewrites += rewrites
        logger.warning("directive-shaped content survived stripping; rewrote %d line(s)", rewrites)
        lines = _shape(strip_all(lines, persona))
    if has_leak(lines):
        lines = _shape([line for line in lines if find_leak(line) is None])
    diag.stages.append(RenderStage.FINAL)

    text = "\n".join(lines).strip()
    if is_effectively_empty(text):
        text = ""
    diag.out_len = len(text)
    diag.blocks_count = len(_lines_to_blocks(text.split("\n"))) if text else 0
    return text, diag


def render_text(
    source: RenderSource,
    *,
    config: Optional[PipelineConfig] = None,
    classification: TurnClassification = TurnClassification.NORMAL,
    multi_section: bool = False,
    short_turn: bool = False,
) -> str:
    """Render a single source and never return an empty string."""
    cfg = config or PipelineConfig()
    text, _ = run_render_pipeline(
        source,
        config=cfg,
        classification=classification,
        multi_section=multi_section,
        short_turn=short_turn,
    )
    return text or cfg.neutral_acknowledgement


def render_reply(
    resolution: Resolution,
    config: PipelineConfig,
    *,
    last_good_text: Optional[str] = None,
) -> RenderResult:
    """Render the resolved candidate, walking the fallback cascade when it comes out empty."""
    kwargs: dict[str, Any] = {
        "config": config,
        "classification": resolution.classification,
        "multi_section": resolution.multi_section,
        "short_turn": resolution.short_turn,
    }

    if config.render_engine_enabled and resolution.blocks:
        source: RenderSource = list(resolution.blocks)
        output_from = (
            CandidateSource.REPHRASE
            if resolution.blocks_from is BlocksOrigin.REPHRASE_BLOCKS
            else resolution.picked_from
        )
    else:
        source = resolution.picked_text
        output_from = resolution.picked_from

    text, diag = run_render_pipeline(source, **kwargs)
    # Blocks replace the picked text, so the picked text stays available as a fallback.
    tried = {resolution.picked_text.strip()} if source is resolution.picked_text else set()

    if not text:
        for candidate in resolution.fallback_chain:
            key = candidate.text.strip()
            if key in tried:
                continue
            tried.add(key)
            text, diag = run_render_pipeline(candidate.text, **kwargs)
            if text:
                output_from = candidate.source
                break

    if not text and last_good_text and last_good_text.strip() not in tried:
        text, diag = run_render_pipeline(last_good_text, **kwargs)
        if text:
            output_from = CandidateSource.LAST_GOOD

    if not text:
        text = config.neutral_acknowledgement.strip()
        output_from = CandidateSource.NEUTRAL
        diag.out_len = len(text)
        diag.blocks_count = 1
        logger.info("all candidates empty after render; using neutral acknowledgement")

    diag.picked_from = resolution.picked_from
    diag.fallback_from = resolution.fallback_from
    diag.output_from = output_from
    diag.classification = resolution.classification
    diag.multi_section = resolution.multi_section

    return RenderResult(text=text, lines=tuple(text.split("\n")), diagnostics=diag)


__all__ = [
    "apply_line_budget",
    "compute_line_budget",
    "count_visible_lines",
    "normalize_blocks",
    "render_reply",
    "render_text",
    "run_render_pipeline",
]
