from __future__ import annotations

from pathlib import Path

import pytest

from turn_pipeline.config import (
    DEFAULT_MAX_LINES,
    DROP_SELF_ACCEPTANCE,
    RECOVER_HIGH_BAND_SELF_ACCEPTANCE,
    RECOVER_SELF_ACCEPTANCE,
    PipelineConfig,
    load_pipeline_config,
)
from turn_pipeline.contracts import ConfigurationError


def test_defaults_carry_named_constants() -> None:
    cfg = PipelineConfig()

    assert cfg.render_engine_enabled is True
    assert cfg.configured_max_lines == DEFAULT_MAX_LINES == 8
    assert cfg.diagnostic_min_lines == 16
    assert cfg.short_turn_max_lines == 3
    assert cfg.multi_section_min_lines == 28
    assert cfg.history_limit == 12
    assert (cfg.descent.drop, cfg.descent.recover, cfg.descent.recover_high_band) == (
        DROP_SELF_ACCEPTANCE,
        RECOVER_SELF_ACCEPTANCE,
        RECOVER_HIGH_BAND_SELF_ACCEPTANCE,
    )


def test_from_mapping_accepts_legacy_flag_spellings() -> None:
    cfg = PipelineConfig.from_mapping({"IROS_RENDER_ENGINE": False, "maxLines": 5})

    assert cfg.render_engine_enabled is False
    assert cfg.configured_max_lines == 5


def test_from_mapping_rejects_unknown_keys_and_bad_values() -> None:
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_mapping({"render_engine_enabledd": True})
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_mapping({"max_visible_lines": 0})


def test_descent_thresholds_must_keep_hysteresis_band() -> None:
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_mapping({"descent": {"drop": 0.6, "recover": 0.58}})


def test_load_pipeline_config_reads_pipeline_section(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "pipeline:\n"
        "  max_visible_lines: 10\n"
        "  persona_header_names: [Sofia, Companion]\n"
        "  descent:\n"
        "    drop: 0.4\n",
        encoding="utf-8",
    )

    cfg = load_pipeline_config(path)

    assert cfg.configured_max_lines == 10
    assert cfg.persona_header_names == ("Sofia", "Companion")
    assert cfg.descent.drop == 0.4
    assert cfg.descent.recover == RECOVER_SELF_ACCEPTANCE


def test_load_pipeline_config_empty_file_gives_defaults(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_pipeline_config(path) == PipelineConfig()


def test_load_pipeline_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_pipeline_config(path)
