# turn_pipeline/adapters/diagnostics.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from turn_pipeline.adapters.persistence import DIAGNOSTICS_LOG_PATH, PathLike, append_jsonl
from turn_pipeline.contracts import DiagnosticsEvent, DiagnosticsEventKind

logger = logging.getLogger(__name__)

_WARNING_KINDS = frozenset(
    {
        DiagnosticsEventKind.UPSTREAM_GENERATION_FAILURE,
        DiagnosticsEventKind.DIRECTIVE_LEAK_REWRITTEN,
        DiagnosticsEventKind.STATE_READ_FAILED,
        DiagnosticsEventKind.STATE_WRITE_FAILED,
        DiagnosticsEventKind.INVARIANT_VIOLATION,
    }
)


class DiagnosticsSink(Protocol):
    """Injected observability port. Output is for operators, never for end users."""

    def emit(self, event: DiagnosticsEvent) -> None:
        ...


class NullDiagnosticsSink:
    def emit(self, event: DiagnosticsEvent) -> None:
        return None


class LoggingDiagnosticsSink:
    def __init__(self, name: str = "turn_pipeline.diagnostics") -> None:
        self._logger = logging.getLogger(name)

    def emit(self, event: DiagnosticsEvent) -> None:
        level = logging.WARNING if event.kind in _WARNING_KINDS else logging.DEBUG
        self._logger.log(
            level,
            "%s user=%s turn=%s payload=%s",
            event.kind.value,
            event.user_id,
            event.turn_id,
            event.payload,
        )


class RecordingDiagnosticsSink:
    def __init__(self) -> None:
        self.events: list[DiagnosticsEvent] = []

    def emit(self, event: DiagnosticsEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[DiagnosticsEventKind]:
        return [event.kind for event in self.events]


class JsonlDiagnosticsSink:
    def __init__(self, path: PathLike = DIAGNOSTICS_LOG_PATH) -> None:
        self.path = Path(path)

    def emit(self, event: DiagnosticsEvent) -> None:
        try:
            append_jsonl(self.path, event)
        except OSError:
            logger.warning("could not append diagnostics event to %s", self.path, exc_info=True)


__all__ = [
    "DiagnosticsSink",
    "JsonlDiagnosticsSink",
    "LoggingDiagnosticsSink",
    "NullDiagnosticsSink",
    "RecordingDiagnosticsSink",
]
