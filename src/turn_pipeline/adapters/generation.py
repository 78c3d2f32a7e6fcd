# turn_pipeline/adapters/generation.py
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Optional, Protocol, Union

from pydantic import ValidationError

from turn_pipeline.contracts import GenerationRequest, GenerationResult, UpstreamGenerationFailure

logger = logging.getLogger(__name__)

GeneratorOutput = Union[str, GenerationResult, Mapping[str, Any], None]


class TextGenerator(Protocol):
    """Remote text generation. Returns a string or a structured reply."""

    def generate(self, request: GenerationRequest) -> GeneratorOutput:
        ...


def coerce_generation_output(raw: GeneratorOutput) -> Optional[GenerationResult]:
    if raw is None:
        return None
    if isinstance(raw, GenerationResult):
        return raw
    if isinstance(raw, str):
        return GenerationResult(content=raw)
    if isinstance(raw, Mapping):
        try:
            return GenerationResult.model_validate(dict(raw))
        except ValidationError as exc:
            raise UpstreamGenerationFailure(f"malformed generator payload: {exc.error_count()} error(s)") from exc
    raise UpstreamGenerationFailure(f"unsupported generator output type: {type(raw).__name__}")


def call_generator(
    generator: TextGenerator,
    request: GenerationRequest,
    *,
    timeout_s: float,
) -> Optional[GenerationResult]:
    """Single bounded call. Any error or timeout becomes UpstreamGenerationFailure."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="generation")
    try:
        future = executor.submit(generator.generate, request)
        try:
            raw = future.result(timeout=timeout_s)
        except FutureTimeout as exc:
            future.cancel()
            raise UpstreamGenerationFailure(f"generation timed out after {timeout_s:.1f}s") from exc
        except UpstreamGenerationFailure:
            raise
        except Exception as exc:
            raise UpstreamGenerationFailure(f"generation failed: {type(exc).__name__}: {exc}") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return coerce_generation_output(raw)


class ScriptedTextGenerator:
    """Replays canned outputs in order. An exception instance in the script is raised."""

    def __init__(self, outputs: Sequence[Union[GeneratorOutput, BaseException]]) -> None:
        self._outputs = list(outputs)
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GeneratorOutput:
        self.requests.append(request)
        if not self._outputs:
            return None
        item = self._outputs.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


__all__ = [
    "GeneratorOutput",
    "ScriptedTextGenerator",
    "TextGenerator",
    "call_generator",
    "coerce_generation_output",
]
