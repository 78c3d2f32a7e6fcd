# turn_pipeline/adapters/state_store.py
from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from turn_pipeline._compat import UTC
from turn_pipeline.adapters.persistence import STATE_LOG_PATH, PathLike, append_jsonl, read_jsonl
from turn_pipeline.contracts import (
    ContinuityCounters,
    ConversationState,
    DescentGate,
    EmotionalCode,
    StatePatch,
    StateStoreUnavailable,
    coerce_descent_gate,
    parse_depth_stage,
    parse_emotional_code,
    parse_phase,
    parse_spin_loop,
    parse_spin_step,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class StateStore(Protocol):
    """Keyed per-user state. Implementations raise StateStoreUnavailable on backend failure."""

    def get(self, user_id: str) -> Optional[ConversationState]:
        ...

    def upsert(self, user_id: str, patch: StatePatch) -> ConversationState:
        ...


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def first_turn_state(user_id: str) -> ConversationState:
    return ConversationState(user_id=user_id)


# ------------------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------------------


def merge_state_patch(
    previous: Optional[ConversationState],
    patch: StatePatch,
    *,
    user_id: str,
    now_iso: Optional[str] = None,
) -> ConversationState:
    """Apply ``patch`` on top of ``previous``.

    A field missing from the patch keeps its prior value. A field passed as
    ``None`` is cleared back to its default. Values are never coalesced on
    truthiness, so ``0``, ``0.0`` and ``""`` overwrite like any other value.
    """
    base = previous.model_dump() if previous is not None else first_turn_state(user_id).model_dump()
    defaults = first_turn_state(user_id).model_dump()

    for name, value in patch.present_fields().items():
        if value is None:
            base[name] = defaults[name]
        elif name == "continuity":
            base[name] = value.model_dump()
        else:
            base[name] = value

    if base.get("spin_loop") is None:
        base["spin_step"] = None

    base["user_id"] = user_id
    base["updated_at"] = now_iso or _now_iso()
    return ConversationState.model_validate(base)


# ------------------------------------------------------------------------------
# Ingestion: historical key spellings -> canonical schema
# ------------------------------------------------------------------------------


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return _MISSING


def _nested(raw: Mapping[str, Any], *path: str) -> Any:
    cur: Any = raw
    for key in path:
        if not isinstance(cur, Mapping) or key not in cur:
            return _MISSING
        cur = cur[key]
    return cur


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not _MISSING and value is not None:
            return value
    return _MISSING


def _unit_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        x = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(x):
        return None
    return max(0.0, min(1.0, x))


def _text(raw: Any, *, limit: Optional[int] = None) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    s = raw.strip()
    if not s:
        return None
    return s[:limit] if limit else s


def _anchor_key(raw: Any) -> Optional[str]:
    if isinstance(raw, Mapping):
        return _text(raw.get("key")) or _text(raw.get("text"))
    return _text(raw)


def _continuity(raw: Mapping[str, Any]) -> ContinuityCounters:
    block = _pick(raw, "continuity")
    if isinstance(block, Mapping):
        try:
            return ContinuityCounters.model_validate(dict(block))
        except ValidationError:
            logger.warning("discarding malformed continuity block", exc_info=True)

    counters = ContinuityCounters()
    q_counts = _pick(raw, "q_counts", "qCounts")
    if isinstance(q_counts, Mapping):
        parsed: dict[EmotionalCode, int] = {}
        for key, value in q_counts.items():
            code = parse_emotional_code(key)
            if code is not None and isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                parsed[code] = value
        counters.emotional_code_counts = parsed

    trace = _pick(raw, "q_trace", "qTrace")
    if isinstance(trace, Mapping):
        counters.streak_code = parse_emotional_code(_first_present(trace.get("streakQ"), trace.get("streak_code")))
        length = _first_present(trace.get("streakLength"), trace.get("streak_length"))
        if isinstance(length, int) and not isinstance(length, bool) and length >= 0:
            counters.streak_length = length

    turns = _pick(raw, "turn_count", "turnCount")
    if isinstance(turns, int) and not isinstance(turns, bool) and turns >= 0:
        counters.turn_count = turns
    return counters


def normalize_state_record(raw: Mapping[str, Any], *, user_id: Optional[str] = None) -> ConversationState:
    """Map any historical record shape onto ConversationState.

    Unknown keys are ignored and individually invalid values are dropped, so a
    single bad field never prevents the state from loading.
    """
    uid = user_id or _text(_pick(raw, "user_id", "userId", "user_code", "userCode")) or "unknown"

    depth = parse_depth_stage(
        _first_present(
            _pick(raw, "depth_stage", "depthStage", "depth"),
            _nested(raw, "unified", "depth", "stage"),
            _nested(raw, "unified", "depth"),
        )
    )
    code = parse_emotional_code(
        _first_present(
            _pick(raw, "emotional_code", "emotionalCode", "q_code", "qCode", "q_primary", "qPrimary"),
            _nested(raw, "unified", "q", "current"),
            _nested(raw, "unified", "q"),
        )
    )
    sa = _unit_float(
        _first_present(
            _pick(raw, "self_acceptance", "selfAcceptance", "sa"),
            _nested(raw, "unified", "self_acceptance"),
            _nested(raw, "unified", "selfAcceptance"),
        )
    )
    phase = parse_phase(_first_present(_pick(raw, "phase"), _nested(raw, "unified", "phase")))
    loop = parse_spin_loop(_pick(raw, "spin_loop", "spinLoop"))
    step = parse_spin_step(_pick(raw, "spin_step", "spinStep")) if loop is not None else None
    gate = coerce_descent_gate(_pick(raw, "descent_gate", "descentGate")) or DescentGate.CLOSED

    return ConversationState(
        user_id=uid,
        depth_stage=depth,
        emotional_code=code,
        self_acceptance=sa,
        phase=phase,
        spin_loop=loop,
        spin_step=step,
        descent_gate=gate,
        intent_layer=_text(_pick(raw, "intent_layer", "intentLayer")),
        intent_anchor_key=_anchor_key(_pick(raw, "intent_anchor_key", "intentAnchorKey", "intent_anchor", "intentAnchor")),
        continuity=_continuity(raw),
        situation_summary=_text(_pick(raw, "situation_summary", "situationSummary")),
        situation_topic=_text(_pick(raw, "situation_topic", "situationTopic")),
        summary=_text(_pick(raw, "summary")),
        last_good_reply=_text(_pick(raw, "last_good_reply", "lastGoodReply")),
        updated_at=_text(_pick(raw, "updated_at", "updatedAt")),
    )


# ------------------------------------------------------------------------------
# Implementations
# ------------------------------------------------------------------------------


class InMemoryStateStore:
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self, records: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        for user_id, raw in (records or {}).items():
            self._records[user_id] = normalize_state_record(raw, user_id=user_id).model_dump(mode="json")
        self.writes = 0

    def get(self, user_id: str) -> Optional[ConversationState]:
        raw = self._records.get(user_id)
        if raw is None:
            return None
        return ConversationState.model_validate(raw)

    def upsert(self, user_id: str, patch: StatePatch) -> ConversationState:
        merged = merge_state_patch(self.get(user_id), patch, user_id=user_id)
        self._records[user_id] = merged.model_dump(mode="json")
        self.writes += 1
        return merged


class JsonlStateStore:
    """Append-only log of full canonical snapshots; the last line per user wins."""

    def __init__(self, path: PathLike = STATE_LOG_PATH) -> None:
        self.path = Path(path)

    def get(self, user_id: str) -> Optional[ConversationState]:
        if not self.path.exists():
            return None
        latest: Optional[Mapping[str, Any]] = None
        try:
            for _, rec in read_jsonl(self.path):
                if rec.get("user_id") == user_id or rec.get("userId") == user_id:
                    latest = rec
        except (OSError, ValueError) as exc:
            raise StateStoreUnavailable(f"cannot read {self.path}: {exc}") from exc
        if latest is None:
            return None
        return normalize_state_record(latest, user_id=user_id)

    def upsert(self, user_id: str, patch: StatePatch) -> ConversationState:
        merged = merge_state_patch(self.get(user_id), patch, user_id=user_id)
        try:
            append_jsonl(self.path, merged)
        except (OSError, TypeError, ValueError) as exc:
            raise StateStoreUnavailable(f"cannot write {self.path}: {exc}") from exc
        return merged


__all__ = [
    "InMemoryStateStore",
    "JsonlStateStore",
    "StateStore",
    "first_turn_state",
    "merge_state_patch",
    "normalize_state_record",
]
