# turn_pipeline/config.py
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from turn_pipeline._compat import Self
from turn_pipeline.contracts import ConfigurationError

# Empirically tuned values carried over unchanged. Confirm with product before
# changing any of them.
DROP_SELF_ACCEPTANCE = 0.45
STRONG_DROP_SELF_ACCEPTANCE = 0.38
DEFENSIVE_DROP_SELF_ACCEPTANCE = 0.35
RECOVER_SELF_ACCEPTANCE = 0.58
RECOVER_HIGH_BAND_SELF_ACCEPTANCE = 0.62
NEUTRAL_SELF_ACCEPTANCE = 0.55

DEFAULT_MAX_LINES = 8
DIAGNOSTIC_MIN_LINES = 16
SHORT_TURN_MAX_LINES = 3
MULTI_SECTION_MIN_LINES = 28
HISTORY_LIMIT = 12

NEUTRAL_ACKNOWLEDGEMENT = "I'm here with you."

PathLike = Union[str, Path]


class DescentThresholds(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    drop: float = Field(default=DROP_SELF_ACCEPTANCE, ge=0.0, le=1.0)
    strong_drop: float = Field(default=STRONG_DROP_SELF_ACCEPTANCE, ge=0.0, le=1.0)
    defensive_drop: float = Field(default=DEFENSIVE_DROP_SELF_ACCEPTANCE, ge=0.0, le=1.0)
    recover: float = Field(default=RECOVER_SELF_ACCEPTANCE, ge=0.0, le=1.0)
    recover_high_band: float = Field(default=RECOVER_HIGH_BAND_SELF_ACCEPTANCE, ge=0.0, le=1.0)
    neutral: float = Field(default=NEUTRAL_SELF_ACCEPTANCE, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _hysteresis_band(self) -> Self:
        # Enter and exit thresholds must stay apart or the gate oscillates.
        if not self.drop < self.recover <= self.recover_high_band:
            raise ValueError("descent thresholds must satisfy drop < recover <= recover_high_band")
        if not self.defensive_drop <= self.strong_drop <= self.drop:
            raise ValueError("descent thresholds must satisfy defensive_drop <= strong_drop <= drop")
        return self


class PipelineConfig(BaseModel):
    """Feature flags and tuning constants, validated once and passed at construction."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    render_engine_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("render_engine_enabled", "renderEngine", "IROS_RENDER_ENGINE", "RENDER_ENGINE"),
    )
    max_visible_lines: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("max_visible_lines", "maxLines", "MAX_VISIBLE_LINES"),
    )
    default_max_lines: int = Field(default=DEFAULT_MAX_LINES, ge=1)
    diagnostic_min_lines: int = Field(default=DIAGNOSTIC_MIN_LINES, ge=1)
    short_turn_max_lines: int = Field(default=SHORT_TURN_MAX_LINES, ge=1)
    multi_section_min_lines: int = Field(default=MULTI_SECTION_MIN_LINES, ge=1)
    multi_section_block_threshold: int = Field(default=3, ge=2)
    rephrase_blocks_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("rephrase_blocks_enabled", "rephraseBlocks", "REPHRASE_BLOCKS"),
    )
    generation_timeout_s: float = Field(default=20.0, gt=0.0)
    state_write_retries: int = Field(default=1, ge=0, le=5)
    history_limit: int = Field(default=HISTORY_LIMIT, ge=0)
    neutral_acknowledgement: str = Field(default=NEUTRAL_ACKNOWLEDGEMENT, min_length=1)
    persona_header_names: tuple[str, ...] = ("Companion",)
    summary_max_chars: int = Field(default=200, ge=10)
    descent: DescentThresholds = Field(default_factory=DescentThresholds)

    @model_validator(mode="after")
    def _neutral_ack_visible(self) -> Self:
        if not self.neutral_acknowledgement.strip():
            raise ValueError("neutral_acknowledgement must contain visible text")
        return self

    @property
    def configured_max_lines(self) -> int:
        return self.max_visible_lines if self.max_visible_lines is not None else self.default_max_lines

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> PipelineConfig:
        try:
            return cls.model_validate(dict(mapping))
        except ValidationError as exc:
            raise ConfigurationError(f"invalid pipeline configuration: {exc}") from exc


def load_pipeline_config(path: PathLike) -> PipelineConfig:
    """Load a PipelineConfig from YAML. A top-level ``pipeline:`` section is used when present."""
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"cannot parse {p}: {exc}") from exc

    if raw is None:
        return PipelineConfig()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"expected a mapping in {p}, got {type(raw).__name__}")

    section = raw.get("pipeline", raw)
    if not isinstance(section, dict):
        raise ConfigurationError(f"'pipeline' section in {p} must be a mapping")
    return PipelineConfig.from_mapping(section)


__all__ = [
    "DEFAULT_MAX_LINES",
    "DIAGNOSTIC_MIN_LINES",
    "DROP_SELF_ACCEPTANCE",
    "HISTORY_LIMIT",
    "MULTI_SECTION_MIN_LINES",
    "NEUTRAL_ACKNOWLEDGEMENT",
    "RECOVER_HIGH_BAND_SELF_ACCEPTANCE",
    "RECOVER_SELF_ACCEPTANCE",
    "SHORT_TURN_MAX_LINES",
    "DescentThresholds",
    "PipelineConfig",
    "load_pipeline_config",
]
