from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from turn_pipeline.demo_runner import run_packs

DEFAULT_PACKS_DIR = Path(__file__).resolve().parent / "scenario_packs"


class ScenarioReport(BaseModel):
    """Persisted report for a batch of scenario sessions."""

    generated_at_iso: str
    packs_dir: str
    sessions: list[dict[str, Any]] = Field(default_factory=list)
    summary_metrics: dict[str, float] = Field(default_factory=dict)


def write_scenario_report(*, output_path: str | Path, report: ScenarioReport) -> Path:
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return out


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run scripted conversation scenario packs through the turn pipeline.")
    parser.add_argument("--packs-dir", default=str(DEFAULT_PACKS_DIR), help="Directory of *.json scenario packs.")
    parser.add_argument("--output", required=True, help="Path to write the JSON report.")
    parser.add_argument(
        "--generated-at-iso",
        default="1970-01-01T00:00:00+00:00",
        help="Deterministic timestamp embedded in the report.",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level for pipeline diagnostics.")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result = run_packs(Path(args.packs_dir))
    report = ScenarioReport(
        generated_at_iso=args.generated_at_iso,
        packs_dir=str(args.packs_dir),
        sessions=result["sessions"],
        summary_metrics=result["summary_metrics"],
    )
    write_scenario_report(output_path=args.output, report=report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
