# turn_pipeline/sanitize.py
"""Line-level cleaning used by the render pipeline.

Everything here is text in, text out. Each function is a no-op on text it has
already cleaned, which is what lets the render pipeline reach a fixed point.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any, Optional

logger = logging.getLogger(__name__)

DIRECTIVE_TAGS: tuple[str, ...] = (
    "CONSTRAINTS",
    "OBS",
    "TASK",
    "SHIFT",
    "NEXT",
    "SAFE",
    "ACK",
    "RESTORE",
    "Q",
    "DRAFT",
)

_TAG_ALT = "|".join(DIRECTIVE_TAGS)

DIRECTIVE_LINE = re.compile(rf"^\s*@(?:{_TAG_ALT})\b")
INTERNAL_PACK_LINE = re.compile(r"^\s*INTERNAL PACK\b", re.IGNORECASE)

# Keys that show up when a model echoes its own state block back.
META_DUMP_KEYS: tuple[str, ...] = (
    "unified",
    "intentLine",
    "intent_line",
    "intent_anchor",
    "intentAnchor",
    "qTrace",
    "q_trace",
    "situationSummary",
    "situation_summary",
    "selfAcceptance",
    "self_acceptance",
    "depthStage",
    "depth_stage",
    "qPrimary",
    "q_primary",
    "spinLoop",
    "spin_loop",
    "descentGate",
    "descent_gate",
)
META_DUMP_LINE = re.compile(
    r"^\s*[\"']?(?:" + "|".join(re.escape(k) for k in META_DUMP_KEYS) + r")[\"']?\s*[:=]",
)
_DUMP_CONTINUATION = re.compile(r"^(?:\s+\S|\s*[\"'\[\]{}(),]|\s*$)")

PERSONA_MARKERS = ("✨",)
EMOTIONAL_HEADER = re.compile(r"^Q[1-5]$")

ZERO_WIDTH = re.compile(r"[\u200B-\u200D\uFEFF]")
BRACKET_LABEL = re.compile(r"【[^】]{1,24}】")
ILINE_TAG = re.compile(r"\[\[/?ILINE\]\]")
WRITER_HINT = re.compile(r"^\s*writer\s*hint\s*[:：]\s*", re.IGNORECASE)
META_LABEL_LINE = re.compile(
    r"^\s*(?:OBS_META|ROTATION_META|IT_HINT|ANCHOR_CONFIRM|TURN_MODE|SUBMODE)\b\s*[:：=]?",
)
FRAME_SLOTS_LINE = re.compile(r"^\s*(?:FRAME|SLOTS)\s*=")
INTERNAL_KV_LINE = re.compile(
    r"^\s*(?:phase|depth|q|spinloop|spinstep|descentgate|itx_\w+|slotplanpolicy|slotseed|llmrewriteseed)"
    r"\s*[=:]\s*\S{1,24}\s*$",
    re.IGNORECASE,
)
SA_TAG = re.compile(r"\[sa\s*[=:]?\s*[\d.]+[^\]]{0,40}\]", re.IGNORECASE)
MD_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+")
MD_BOLD_LINE = re.compile(r"^\s*\*\*(.+?)\*\*\s*$")
LEADING_ELLIPSIS = re.compile(r"^\s*(?:…+|\.{3,})\s*")
WHITESPACE_RUN = re.compile(r"[ \t　]+")
PUNCT_ONLY = re.compile(r"^[\s\-–—_=~*#.,:;!?'\"`()\[\]{}<>/\\|・…。、！？「」『』]+$")

# Anything matching here must never reach the user.
LEAK_PATTERN = re.compile(
    rf"@(?:{_TAG_ALT})\b"
    r"|【[^】]{1,24}】"
    r"|\[\[/?ILINE\]\]"
    r"|^\s*(?:OBS|SHIFT|NEXT|SAFE)\s*:"
    r"|^\s*INTERNAL PACK\b",
)

USER_FIELDS: tuple[str, ...] = ("text", "content", "message", "say", "line", "value")

# Structured payload markers; prose containing any of these is not kept verbatim.
PAYLOAD_SYNTAX = re.compile(r"[{}\[\]<>=]|\b\w+\s*:")

_MAX_PASSES = 8


# ------------------------------------------------------------------------------
# Directive / meta stripping
# ------------------------------------------------------------------------------


def is_directive_line(line: str) -> bool:
    return bool(DIRECTIVE_LINE.match(line) or INTERNAL_PACK_LINE.match(line))


def strip_directive_lines(lines: Iterable[str]) -> list[str]:
    """Whole-line removal. A directive line never survives partially."""
    return [line for line in lines if not is_directive_line(line)]


def strip_meta_dump(lines: Sequence[str]) -> list[str]:
    """Drop echoed state keys together with the dump lines that follow them."""
    out: list[str] = []
    in_dump = False
    for line in lines:
        if META_DUMP_LINE.match(line):
            in_dump = True
            continue
        if in_dump and line.strip() and _DUMP_CONTINUATION.match(line):
            continue
        in_dump = False
        out.append(line)
    return out


def _is_header_line(line: str, persona_names: Sequence[str]) -> bool:
    s = line.strip()
    if not s:
        return False
    if EMOTIONAL_HEADER.match(s) or s in PERSONA_MARKERS:
        return True
    lowered = s.rstrip(":：").strip().lower()
    return any(lowered == name.strip().lower() for name in persona_names if name.strip())


def strip_persona_headers(lines: Sequence[str], persona_names: Sequence[str]) -> list[str]:
    """Remove leading speaker/emotion header lines such as ``Q3`` or a persona name."""
    out = list(lines)
    while out and (not out[0].strip() or _is_header_line(out[0], persona_names)):
        out.pop(0)
    return out


# ------------------------------------------------------------------------------
# Label stripping
# ------------------------------------------------------------------------------


def _clean_label_line(line: str) -> Optional[str]:
    """Return the cleaned line, or None when the whole line is internal."""
    s = ZERO_WIDTH.sub("", line)
    if META_LABEL_LINE.match(s) or FRAME_SLOTS_LINE.match(s) or INTERNAL_KV_LINE.match(s):
        return None
    s = BRACKET_LABEL.sub("", s)
    s = ILINE_TAG.sub("", s)
    s = SA_TAG.sub("", s)
    s = WRITER_HINT.sub("", s)
    s = MD_HEADING.sub("", s)
    bold = MD_BOLD_LINE.match(s)
    if bold:
        s = bold.group(1)
    s = LEADING_ELLIPSIS.sub("", s)
    s = WHITESPACE_RUN.sub(" ", s).strip()
    if PUNCT_ONLY.match(s):
        return ""
    return s


def strip_internal_labels(lines: Iterable[str]) -> list[str]:
    """Clean label noise line by line. Lines that become empty stay as blank separators."""
    out: list[str] = []
    for line in lines:
        cleaned = _clean_label_line(line)
        if cleaned is None:
            continue
        out.append(cleaned)
    return out


def strip_all(lines: Sequence[str], persona_names: Sequence[str]) -> list[str]:
    """Directive, meta, header and label stripping repeated until nothing changes."""
    current = list(lines)
    for _ in range(_MAX_PASSES):
        nxt = strip_directive_lines(current)
        nxt = strip_meta_dump(nxt)
        nxt = strip_persona_headers(nxt, persona_names)
        nxt = strip_internal_labels(nxt)
        nxt = strip_persona_headers(nxt, persona_names)
        if nxt == current:
            break
        current = nxt
    return current


# ------------------------------------------------------------------------------
# Final guard
# ------------------------------------------------------------------------------


def find_leak(line: str) -> Optional[re.Match[str]]:
    return LEAK_PATTERN.search(line)


def has_leak(lines: Iterable[str]) -> bool:
    return any(find_leak(line) for line in lines)


def _user_fields(payload: Any) -> list[str]:
    if isinstance(payload, str):
        return [payload] if payload.strip() else []
    if isinstance(payload, list):
        out: list[str] = []
        for item in payload:
            out.extend(_user_fields(item))
        return out
    if isinstance(payload, dict):
        out = []
        for key in USER_FIELDS:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                out.append(value.strip())
            elif isinstance(value, list):
                out.extend(v.strip() for v in value if isinstance(v, str) and v.strip())
        return out
    return []


def _parse_payload(rest: str, *, keep_prose: bool = False) -> list[str]:
    s = rest.strip().lstrip(":：=").strip()
    if not s:
        return []
    start = s.find("{")
    end = s.rfind("}")
    if start != -1 and end > start:
        try:
            return _user_fields(json.loads(s[start : end + 1]))
        except json.JSONDecodeError:
            logger.debug("directive payload is not JSON: %r", s[:80])
    quoted = re.fullmatch(r"[\"“'](.+?)[\"”']", s)
    if quoted:
        return [quoted.group(1).strip()]
    if keep_prose and not PAYLOAD_SYNTAX.search(s):
        return [s]
    return []


def rewrite_leaked_line(line: str) -> Optional[str]:
    """Turn directive-shaped content into plain text, keeping only user-facing fields.

    Returns None when nothing user-facing remains.
    """
    current = line
    for _ in range(_MAX_PASSES):
        match = find_leak(current)
        if match is None:
            break
        prefix = current[: match.start()].strip()
        rest = current[match.end() :]
        token = match.group(0)
        if token.startswith("【") or token.startswith("[["):
            current = f"{prefix} {rest.strip()}".strip()
            continue
        if token.strip().upper().startswith("INTERNAL PACK"):
            current = prefix
            continue
        # A mid-sentence tag followed by prose keeps the prose; a tag with a payload keeps user fields only.
        keep_prose = bool(prefix) and not rest.lstrip().startswith((":", "：", "="))
        paraphrase = " ".join(_parse_payload(rest, keep_prose=keep_prose))
        current = f"{prefix} {paraphrase}".strip()

    if find_leak(current):
        return None
    return current or None


def is_effectively_empty(text: Optional[str]) -> bool:
    t = ZERO_WIDTH.sub("", text or "").strip()
    if not t:
        return True
    return bool(PUNCT_ONLY.match(t))


__all__ = [
    "DIRECTIVE_TAGS",
    "LEAK_PATTERN",
    "find_leak",
    "has_leak",
    "is_directive_line",
    "is_effectively_empty",
    "rewrite_leaked_line",
    "strip_all",
    "strip_directive_lines",
    "strip_internal_labels",
    "strip_meta_dump",
    "strip_persona_headers",
]
