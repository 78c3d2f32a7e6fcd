from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from turn_pipeline.demo_runner import load_scenario_packs, run_packs, run_session, summarize

PACKS_DIR = Path(__file__).resolve().parents[1] / "demos" / "scenario_packs"


def _session(result: dict[str, Any], session_id: str) -> dict[str, Any]:
    return next(s for s in result["sessions"] if s["session_id"] == session_id)


def test_bundled_packs_run_end_to_end() -> None:
    result = run_packs(PACKS_DIR)

    descent = _session(result, "demo-descent")
    assert [t["descent_gate"] for t in descent["turns"]] == ["offered", "accepted", "closed"]
    assert [t["outcome"] for t in descent["turns"]] == ["ok", "fallback", "ok"]
    assert descent["turns"][0]["text"] == "That sounds really heavy.\nYou don't have to fix it all tonight."
    assert descent["turns"][2]["output_from"] == "rephrase"
    assert {"kind": "upstream_generation_failure", "turn_id": "demo-descent:2"} in descent["events"]

    rotation = _session(result, "demo-rotation")
    assert [t["spin"] for t in rotation["turns"]] == ["SRI/2", "TCF/2", "TCF/0"]
    assert rotation["turns"][1]["text"] == "Let's go\nPick the first piece and start today."

    metrics = result["summary_metrics"]
    assert metrics["invariant_pass_rate"] == 1.0
    assert metrics["generation_failure_rate"] == round(1 / 6, 4)
    assert metrics["gate_transitions"] == 2.0


def test_every_rendered_turn_is_non_empty() -> None:
    for pack in load_scenario_packs(PACKS_DIR):
        execution = run_session(pack)
        assert all(turn.text.strip() for turn in execution.turns)
        assert all(not turn.invariant_failures for turn in execution.turns)


def test_load_scenario_packs_is_sorted_and_tags_source(tmp_path: Path) -> None:
    for name in ("b.json", "a.json"):
        (tmp_path / name).write_text(json.dumps({"session_id": name, "turns": []}), encoding="utf-8")

    packs = load_scenario_packs(tmp_path)

    assert [p["session_id"] for p in packs] == ["a.json", "b.json"]
    assert packs[0]["_source"].endswith("a.json")


def test_summarize_empty_input() -> None:
    assert summarize([]) == {
        "invariant_pass_rate": 0.0,
        "fallback_rate": 0.0,
        "generation_failure_rate": 0.0,
        "gate_transitions": 0.0,
    }
