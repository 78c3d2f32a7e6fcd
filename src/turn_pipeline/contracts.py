# turn_pipeline/contracts.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from turn_pipeline._compat import Self, StrEnum


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------


class TurnPipelineError(Exception):
    """Base class for failures raised at the pipeline's adapter boundaries."""


class StateStoreUnavailable(TurnPipelineError):
    """Raised by a StateStore when the backend cannot be read or written."""


class UpstreamGenerationFailure(TurnPipelineError):
    """Raised when the remote text generator errors or times out."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(TurnPipelineError, ValueError):
    """Raised when a configuration source cannot be turned into a PipelineConfig."""


# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    use_enum_values=False,
    frozen=True,
)


# ------------------------------------------------------------------------------
# Depth / emotional register
# ------------------------------------------------------------------------------


class DepthBand(StrEnum):
    SELF = "S"
    RESONANCE = "R"
    CREATION = "C"
    INTENTION = "I"
    TRANSCEND = "T"
    FORM = "F"


LOW_BANDS = frozenset({DepthBand.SELF, DepthBand.FORM, DepthBand.RESONANCE})
HIGH_BANDS = frozenset({DepthBand.CREATION, DepthBand.INTENTION, DepthBand.TRANSCEND})


class DepthStage(StrEnum):
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"
    R1 = "R1"
    R2 = "R2"
    R3 = "R3"
    C1 = "C1"
    C2 = "C2"
    C3 = "C3"
    I1 = "I1"
    I2 = "I2"
    I3 = "I3"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"
    F1 = "F1"
    F2 = "F2"
    F3 = "F3"

    @property
    def band(self) -> DepthBand:
        return DepthBand(self.value[0])

    @property
    def sub_level(self) -> int:
        return int(self.value[1])

    @property
    def ordinal(self) -> int:
        return _DEPTH_ORDER.index(self)


_DEPTH_ORDER: tuple[DepthStage, ...] = tuple(DepthStage)


def parse_depth_stage(raw: Any) -> Optional[DepthStage]:
    """Tolerant parse: case and surrounding whitespace are ignored, unknown labels give None."""
    if isinstance(raw, DepthStage):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return DepthStage(raw.strip().upper())
    except ValueError:
        return None


class EmotionalCode(StrEnum):
    Q1 = "Q1"
    Q2 = "Q2"
    Q3 = "Q3"
    Q4 = "Q4"
    Q5 = "Q5"


NEGATIVE_CODES = frozenset({EmotionalCode.Q3, EmotionalCode.Q4})
POSITIVE_CODES = frozenset({EmotionalCode.Q1, EmotionalCode.Q5})
# Codes strong enough to pull the rotation back from the outward loop.
PIVOT_CODES = frozenset({EmotionalCode.Q3, EmotionalCode.Q4, EmotionalCode.Q5})


def parse_emotional_code(raw: Any) -> Optional[EmotionalCode]:
    if isinstance(raw, EmotionalCode):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return EmotionalCode(raw.strip().upper())
    except ValueError:
        return None


class Phase(StrEnum):
    INNER = "Inner"
    OUTER = "Outer"


def parse_phase(raw: Any) -> Optional[Phase]:
    if isinstance(raw, Phase):
        return raw
    if not isinstance(raw, str):
        return None
    s = raw.strip().lower()
    if s == "inner":
        return Phase.INNER
    if s == "outer":
        return Phase.OUTER
    return None


# ------------------------------------------------------------------------------
# Rotation / descent gate
# ------------------------------------------------------------------------------


class SpinLoop(StrEnum):
    SRI = "SRI"  # self -> resonance -> intention
    TCF = "TCF"  # transcend -> create -> form

    @property
    def axes(self) -> tuple[DepthBand, DepthBand, DepthBand]:
        if self is SpinLoop.SRI:
            return (DepthBand.SELF, DepthBand.RESONANCE, DepthBand.INTENTION)
        return (DepthBand.TRANSCEND, DepthBand.CREATION, DepthBand.FORM)


def parse_spin_loop(raw: Any) -> Optional[SpinLoop]:
    if isinstance(raw, SpinLoop):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return SpinLoop(raw.strip().upper())
    except ValueError:
        return None


def parse_spin_step(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)) and float(raw).is_integer():
        step = int(raw)
        return step if step in (0, 1, 2) else None
    if isinstance(raw, str) and raw.strip().isdigit():
        return parse_spin_step(int(raw.strip()))
    return None


class DescentGate(StrEnum):
    CLOSED = "closed"
    OFFERED = "offered"
    ACCEPTED = "accepted"

    @property
    def is_down(self) -> bool:
        return self is not DescentGate.CLOSED


def coerce_descent_gate(raw: Any) -> Optional[DescentGate]:
    """Ingestion adapter for stored gate values.

    Legacy records carry a boolean: ``True`` meant the conversation was already
    descending (``accepted``) and ``False`` meant ``closed``.
    """
    if isinstance(raw, DescentGate):
        return raw
    if isinstance(raw, bool):
        return DescentGate.ACCEPTED if raw else DescentGate.CLOSED
    if isinstance(raw, str):
        s = raw.strip().lower()
        if s in ("true", "false"):
            return coerce_descent_gate(s == "true")
        try:
            return DescentGate(s)
        except ValueError:
            return None
    return None


# ------------------------------------------------------------------------------
# Frames / slots
# ------------------------------------------------------------------------------


class InputKind(StrEnum):
    UNKNOWN = "unknown"
    GREETING = "greeting"
    MICRO = "micro"
    REQUEST = "request"
    DEBUG = "debug"
    QUESTION = "question"
    CHAT = "chat"


class Frame(StrEnum):
    S = "S"
    R = "R"
    C = "C"
    I = "I"  # noqa: E741
    T = "T"
    F = "F"
    MICRO = "MICRO"
    NONE = "NONE"


class SlotKey(StrEnum):
    OBS = "OBS"
    SHIFT = "SHIFT"
    NEXT = "NEXT"
    SAFE = "SAFE"


SLOT_ORDER: tuple[SlotKey, ...] = (SlotKey.OBS, SlotKey.SHIFT, SlotKey.NEXT, SlotKey.SAFE)


class NoDeltaKind(StrEnum):
    REPEAT_WARNING = "repeat_warning"
    SHORT_LOOP = "short_loop"
    STUCK = "stuck"


class SlotPlan(BaseModel):
    """Ordered slot-key -> directive mapping. ``None`` marks a slot the frame leaves unused."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG

    frame: Frame
    slots: dict[SlotKey, Optional[str]] = Field(default_factory=dict)
    reason: str = ""
    no_delta: Optional[NoDeltaKind] = None

    @field_validator("slots")
    @classmethod
    def _order_slots(cls, value: dict[SlotKey, Optional[str]]) -> dict[SlotKey, Optional[str]]:
        return {key: value.get(key) for key in SLOT_ORDER}

    def slot_keys(self) -> list[SlotKey]:
        return [key for key, directive in self.slots.items() if directive is not None]

    def directive(self, key: SlotKey) -> Optional[str]:
        return self.slots.get(key)


# ------------------------------------------------------------------------------
# Conversation state
# ------------------------------------------------------------------------------


class ContinuityCounters(BaseModel):
    model_config = _CONTRACT_CONFIG

    turn_count: int = Field(default=0, ge=0)
    emotional_code_counts: dict[EmotionalCode, int] = Field(default_factory=dict)
    primary_emotional_code: Optional[EmotionalCode] = None
    streak_code: Optional[EmotionalCode] = None
    streak_length: int = Field(default=0, ge=0)
    no_delta_streak: int = Field(default=0, ge=0)


class ConversationState(BaseModel):
    """Canonical per-user snapshot. Only StateStore implementations persist it."""

    model_config = _CONTRACT_CONFIG

    user_id: str
    depth_stage: Optional[DepthStage] = None
    emotional_code: Optional[EmotionalCode] = None
    self_acceptance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    phase: Optional[Phase] = None
    spin_loop: Optional[SpinLoop] = None
    spin_step: Optional[int] = Field(default=None, ge=0, le=2)
    descent_gate: DescentGate = DescentGate.CLOSED
    intent_layer: Optional[str] = None
    intent_anchor_key: Optional[str] = None
    continuity: ContinuityCounters = Field(default_factory=ContinuityCounters)
    situation_summary: Optional[str] = None
    situation_topic: Optional[str] = None
    summary: Optional[str] = None
    last_good_reply: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _spin_step_requires_loop(self) -> Self:
        if self.spin_step is not None and self.spin_loop is None:
            raise ValueError("spin_step requires spin_loop")
        return self

    @property
    def is_first_turn(self) -> bool:
        return self.continuity.turn_count == 0 and self.spin_loop is None


class StatePatch(BaseModel):
    """Partial update applied at commit time.

    Presence is tracked through ``model_fields_set``: a field never passed is
    left untouched by the merge, a field passed as ``None`` is cleared.
    """

    model_config = _CONTRACT_CONFIG

    depth_stage: Optional[DepthStage] = None
    emotional_code: Optional[EmotionalCode] = None
    self_acceptance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    phase: Optional[Phase] = None
    spin_loop: Optional[SpinLoop] = None
    spin_step: Optional[int] = Field(default=None, ge=0, le=2)
    descent_gate: Optional[DescentGate] = None
    intent_layer: Optional[str] = None
    intent_anchor_key: Optional[str] = None
    continuity: Optional[ContinuityCounters] = None
    situation_summary: Optional[str] = None
    situation_topic: Optional[str] = None
    summary: Optional[str] = None
    last_good_reply: Optional[str] = None

    def present_fields(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in type(self).model_fields if name in self.model_fields_set}

    def is_empty(self) -> bool:
        return not self.model_fields_set


# ------------------------------------------------------------------------------
# Turn inputs
# ------------------------------------------------------------------------------


class HistoryMessage(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    role: Literal["user", "assistant", "system"]
    text: str = Field(validation_alias=AliasChoices("text", "content"))


class AnchorEvent(StrEnum):
    SET = "set"
    RESET = "reset"
    KEEP = "keep"


class TurnAnalysis(BaseModel):
    """Per-turn classification produced by the caller's analyzers."""

    model_config = _CONTRACT_CONFIG

    depth_stage: Optional[DepthStage] = Field(
        default=None, validation_alias=AliasChoices("depth_stage", "depthStage", "depth")
    )
    emotional_code: Optional[EmotionalCode] = Field(
        default=None, validation_alias=AliasChoices("emotional_code", "emotionalCode", "q_code", "qCode")
    )
    self_acceptance: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, validation_alias=AliasChoices("self_acceptance", "selfAcceptance")
    )
    phase: Optional[Phase] = None
    target_kind: Optional[str] = Field(default=None, validation_alias=AliasChoices("target_kind", "targetKind"))
    intent_layer: Optional[str] = Field(default=None, validation_alias=AliasChoices("intent_layer", "intentLayer"))
    intent_anchor: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("intent_anchor", "intentAnchor")
    )
    anchor_event: AnchorEvent = Field(
        default=AnchorEvent.KEEP, validation_alias=AliasChoices("anchor_event", "anchorEvent")
    )
    situation_summary: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("situation_summary", "situationSummary")
    )
    situation_topic: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("situation_topic", "situationTopic")
    )
    input_kind: Optional[InputKind] = Field(default=None, validation_alias=AliasChoices("input_kind", "inputKind"))

    @field_validator("depth_stage", mode="before")
    @classmethod
    def _tolerant_depth(cls, value: Any) -> Any:
        return parse_depth_stage(value) or value

    @field_validator("emotional_code", mode="before")
    @classmethod
    def _tolerant_code(cls, value: Any) -> Any:
        return parse_emotional_code(value) or value

    @field_validator("phase", mode="before")
    @classmethod
    def _tolerant_phase(cls, value: Any) -> Any:
        return parse_phase(value) or value


class TurnFlags(BaseModel):
    """Context flags that classify the turn for the resolver and renderer."""

    model_config = _CONTRACT_CONFIG

    diagnostic: bool = False
    silence: bool = False
    speech_skipped: bool = False
    multi_section: bool = False
    input_kind: Optional[InputKind] = None


class TurnInput(BaseModel):
    model_config = _CONTRACT_CONFIG

    user_id: str = Field(min_length=1)
    user_text: str = ""
    history: list[HistoryMessage] = Field(default_factory=list)
    analysis: TurnAnalysis = Field(default_factory=TurnAnalysis)
    requested_mode: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("requested_mode", "requestedMode", "mode")
    )
    turn_id: Optional[str] = None


# ------------------------------------------------------------------------------
# Generation
# ------------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    user_id: str
    user_text: str
    history: tuple[HistoryMessage, ...] = ()
    frame: Frame
    slot_plan: SlotPlan
    spin_loop: SpinLoop
    spin_step: int
    descent_gate: DescentGate
    depth_stage: Optional[DepthStage] = None
    emotional_code: Optional[EmotionalCode] = None
    diagnostic: bool = False


class SpeechAct(StrEnum):
    SPEAK = "speak"
    SILENCE = "silence"


class GenerationResult(BaseModel):
    """Structured generator reply. A bare string from a generator maps onto ``content``."""

    model_config = _CONTRACT_CONFIG

    content: Optional[str] = None
    assistant_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("assistant_text", "assistantText")
    )
    text: Optional[str] = None
    speech_skipped_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("speech_skipped_text", "speechSkippedText")
    )
    raw_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("raw_text", "rawTextFromModel")
    )
    extracted_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("extracted_text", "extractedTextFromModel")
    )
    rephrase_text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("rephrase_text", "rephraseText")
    )
    rephrase_blocks: Optional[list[str]] = Field(
        default=None, validation_alias=AliasChoices("rephrase_blocks", "rephraseBlocks")
    )
    derived_blocks: Optional[list[str]] = Field(
        default=None, validation_alias=AliasChoices("derived_blocks", "derivedBlocks")
    )
    speech_act: SpeechAct = Field(default=SpeechAct.SPEAK, validation_alias=AliasChoices("speech_act", "speechAct"))
    speech_skipped: bool = Field(default=False, validation_alias=AliasChoices("speech_skipped", "speechSkipped"))

    @field_validator("rephrase_blocks", "derived_blocks", mode="before")
    @classmethod
    def _coerce_blocks(cls, value: Any) -> Any:
        # External block lists arrive as a single string, a list of strings or a
        # list of {"text": ...} objects.
        if value is None:
            return None
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, (list, tuple)):
            out: list[str] = []
            for item in value:
                if isinstance(item, str):
                    out.append(item)
                elif isinstance(item, Mapping) and isinstance(item.get("text"), str):
                    out.append(item["text"])
            return out
        return value


# ------------------------------------------------------------------------------
# Candidates / resolution
# ------------------------------------------------------------------------------


class CandidateSource(StrEnum):
    CONTENT = "content"
    ASSISTANT_TEXT = "assistant_text"
    TEXT = "text"
    SLOT_PLAN = "slot_plan"
    SPEECH_SKIPPED = "speech_skipped"
    RAW_MODEL = "raw_model"
    EXTRACTED_MODEL = "extracted_model"
    REPHRASE = "rephrase"
    LAST_GOOD = "last_good"
    NEUTRAL = "neutral"
    NONE = "none"


class CandidateText(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    source: CandidateSource
    text: str = ""

    @property
    def is_usable(self) -> bool:
        return bool(self.text.strip())


class TurnClassification(StrEnum):
    NORMAL = "normal"
    DIAGNOSTIC = "diagnostic"
    SILENCE = "silence"


class BlocksOrigin(StrEnum):
    REPHRASE_BLOCKS = "rephrase_blocks"
    DERIVED = "derived"
    PICKED = "picked"
    NONE = "none"


class Resolution(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    picked_text: str = ""
    picked_from: CandidateSource = CandidateSource.NONE
    fallback_text: str = ""
    fallback_from: CandidateSource = CandidateSource.NONE
    fallback_chain: tuple[CandidateText, ...] = ()
    blocks: tuple[str, ...] = ()
    blocks_from: BlocksOrigin = BlocksOrigin.NONE
    classification: TurnClassification = TurnClassification.NORMAL
    multi_section: bool = False
    short_turn: bool = False
    forced_rebuild: bool = False


# ------------------------------------------------------------------------------
# Render output / diagnostics
# ------------------------------------------------------------------------------


class RenderStage(StrEnum):
    RAW = "RAW"
    STRIP_DIRECTIVES = "STRIP_DIRECTIVES"
    STRIP_LABELS = "STRIP_LABELS"
    NORMALIZE_BLOCKS = "NORMALIZE_BLOCKS"
    BUDGET_TRUNCATE = "BUDGET_TRUNCATE"
    FINAL = "FINAL"


class RenderDiagnostics(BaseModel):
    """Logging-only view of a render; never shown to end users."""

    model_config = _CONTRACT_CONFIG

    blocks_count: int = 0
    picked_from: CandidateSource = CandidateSource.NONE
    fallback_from: CandidateSource = CandidateSource.NONE
    output_from: CandidateSource = CandidateSource.NONE
    applied_line_budget: int = 0
    out_len: int = 0
    classification: TurnClassification = TurnClassification.NORMAL
    multi_section: bool = False
    render_engine_enabled: bool = True
    leak_rewrites: int = 0
    removed_exact_dups: int = 0
    merged_headings: int = 0
    trimmed_blank_runs: int = 0
    stages: list[RenderStage] = Field(default_factory=list)


class RenderResult(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    text: str
    lines: tuple[str, ...] = ()
    diagnostics: RenderDiagnostics


class DiagnosticsEventKind(StrEnum):
    UPSTREAM_GENERATION_FAILURE = "upstream_generation_failure"
    DIRECTIVE_LEAK_REWRITTEN = "directive_leak_rewritten"
    STATE_READ_FAILED = "state_read_failed"
    STATE_WRITE_FAILED = "state_write_failed"
    RENDER_COMPLETED = "render_completed"
    INVARIANT_VIOLATION = "invariant_violation"


class DiagnosticsEvent(BaseModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    kind: DiagnosticsEventKind
    user_id: Optional[str] = None
    turn_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


# ------------------------------------------------------------------------------
# Turn output
# ------------------------------------------------------------------------------


class TurnOutcome(BaseModel):
    model_config = _CONTRACT_CONFIG

    turn_id: str
    text: str
    diagnostics: RenderDiagnostics
    state: ConversationState
    frame: Frame
    slot_plan: SlotPlan
    input_kind: InputKind
    descent_gate: DescentGate
    descent_gate_reason: str
    spin_loop: SpinLoop
    spin_step: int
    state_committed: bool = False
    generation_failed: bool = False
    invariant_failures: list[str] = Field(default_factory=list)
