# features/steps/render_steps.py
from __future__ import annotations

from typing import Any

from behave import given, then, when

from companion_core.step_state import get_render_step_state
from turn_pipeline.config import PipelineConfig
from turn_pipeline.contracts import TurnClassification
from turn_pipeline.render import count_visible_lines, render_text, run_render_pipeline
from turn_pipeline.sanitize import has_leak


def _config(context: Any) -> PipelineConfig:
    return PipelineConfig.from_mapping(get_render_step_state(context).config_overrides)


def _render_once(context: Any, source: Any) -> str:
    state = get_render_step_state(context)
    text, _ = run_render_pipeline(
        source,
        config=_config(context),
        classification=state.classification or TurnClassification.NORMAL,
    )
    return text


@given("the render source text:")
def step_render_source_text(context: Any) -> None:
    get_render_step_state(context).source = context.text


@given('the render blocks "{first}" and "{second}"')
def step_render_blocks(context: Any, first: str, second: str) -> None:
    state = get_render_step_state(context)
    state.blocks = [first, second]
    state.source = list(state.blocks)


@given("a render source of {count:d} numbered lines")
def step_numbered_lines(context: Any, count: int) -> None:
    get_render_step_state(context).source = "\n".join(f"line {i}" for i in range(1, count + 1))


@given('the turn is classified as "{classification}"')
def step_turn_classification(context: Any, classification: str) -> None:
    get_render_step_state(context).classification = TurnClassification(classification)


@when("the source is rendered")
def step_render(context: Any) -> None:
    state = get_render_step_state(context)
    state.first_output = _render_once(context, state.source)


@when("the source is rendered twice")
def step_render_twice(context: Any) -> None:
    state = get_render_step_state(context)
    state.first_output = _render_once(context, state.source)
    state.second_output = _render_once(context, state.first_output)


@when("the source is rendered with fallback")
def step_render_with_fallback(context: Any) -> None:
    state = get_render_step_state(context)
    state.first_output = render_text(state.source, config=_config(context))


@then("the rendered text is:")
def step_rendered_text_is(context: Any) -> None:
    assert get_render_step_state(context).first_output == context.text


@then("the rendered text contains no directive markup")
def step_rendered_no_leak(context: Any) -> None:
    output = get_render_step_state(context).first_output or ""
    assert not has_leak(output.split("\n"))


@then("both renders are identical")
def step_renders_identical(context: Any) -> None:
    state = get_render_step_state(context)
    assert state.first_output == state.second_output


@then("the rendered text has {lines:d} visible lines")
def step_rendered_line_count(context: Any, lines: int) -> None:
    assert count_visible_lines(get_render_step_state(context).first_output or "") == lines


@then("the rendered text is the neutral acknowledgement")
def step_rendered_neutral(context: Any) -> None:
    assert get_render_step_state(context).first_output == _config(context).neutral_acknowledgement
