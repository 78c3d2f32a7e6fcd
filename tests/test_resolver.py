from __future__ import annotations

from collections.abc import Callable

import pytest

from turn_pipeline.contracts import (
    BlocksOrigin,
    CandidateSource,
    CandidateText,
    GenerationResult,
    InputKind,
    TurnClassification,
    TurnFlags,
)
from turn_pipeline.resolver import (
    candidates_from_generation,
    is_silence_text,
    resolve_candidates,
    should_force_rebuild,
)

MakeCandidates = Callable[..., list[CandidateText]]


def test_precedence_prefers_content_over_later_sources(make_candidates: MakeCandidates) -> None:
    candidates = make_candidates(text="third", assistant_text="second", content="first", slot_plan="slot")

    resolution = resolve_candidates(candidates, TurnFlags())

    assert resolution.picked_text == "first"
    assert resolution.picked_from is CandidateSource.CONTENT


def test_blank_candidates_are_skipped(make_candidates: MakeCandidates) -> None:
    candidates = make_candidates(content="   ", assistant_text="", text="hello there")

    resolution = resolve_candidates(candidates, TurnFlags())

    assert resolution.picked_from is CandidateSource.TEXT


def test_slot_plan_used_when_generator_gave_nothing(make_candidates: MakeCandidates) -> None:
    resolution = resolve_candidates(make_candidates(slot_plan="I hear you."), TurnFlags())

    assert resolution.picked_from is CandidateSource.SLOT_PLAN
    assert resolution.fallback_from is CandidateSource.SLOT_PLAN


def test_fallback_chain_starts_with_pick_then_follows_cascade(make_candidates: MakeCandidates) -> None:
    candidates = make_candidates(
        rephrase="rephrased",
        raw_model="raw",
        content="picked",
        speech_skipped="skipped",
        extracted_model="extracted",
    )

    resolution = resolve_candidates(candidates, TurnFlags())

    assert [c.source for c in resolution.fallback_chain] == [
        CandidateSource.CONTENT,
        CandidateSource.SPEECH_SKIPPED,
        CandidateSource.RAW_MODEL,
        CandidateSource.EXTRACTED_MODEL,
        CandidateSource.REPHRASE,
    ]
    assert resolution.fallback_from is CandidateSource.CONTENT


def test_no_candidates_resolves_to_none() -> None:
    resolution = resolve_candidates([], TurnFlags())

    assert resolution.picked_from is CandidateSource.NONE
    assert resolution.fallback_chain == ()
    assert resolution.picked_text == ""


def test_external_blocks_force_rebuild(make_candidates: MakeCandidates) -> None:
    resolution = resolve_candidates(
        make_candidates(content="single string"),
        TurnFlags(),
        external_blocks=["one", "two"],
    )

    assert resolution.forced_rebuild is True
    assert resolution.blocks == ("one", "two")
    assert resolution.blocks_from is BlocksOrigin.REPHRASE_BLOCKS


@pytest.mark.parametrize(
    ("external", "classification", "derived"),
    [
        ([], TurnClassification.NORMAL, None),
        (["  "], TurnClassification.NORMAL, None),
        (["block"], TurnClassification.DIAGNOSTIC, None),
        (["block"], TurnClassification.SILENCE, None),
        (["block"], TurnClassification.NORMAL, ["derived"]),
    ],
)
def test_force_rebuild_requires_every_condition(
    external: list[str], classification: TurnClassification, derived: list[str] | None
) -> None:
    assert should_force_rebuild(external_blocks=external, classification=classification, derived_blocks=derived) is False


def test_force_rebuild_positive_case() -> None:
    assert should_force_rebuild(
        external_blocks=["block"], classification=TurnClassification.NORMAL, derived_blocks=[]
    )


def test_derived_blocks_win_over_external(make_candidates: MakeCandidates) -> None:
    resolution = resolve_candidates(
        make_candidates(content="x"),
        TurnFlags(),
        external_blocks=["ext"],
        derived_blocks=["d1", "d2"],
    )

    assert resolution.forced_rebuild is False
    assert resolution.blocks == ("d1", "d2")
    assert resolution.blocks_from is BlocksOrigin.DERIVED


def test_disabled_rephrase_blocks_are_ignored(make_candidates: MakeCandidates) -> None:
    resolution = resolve_candidates(
        make_candidates(content="x"),
        TurnFlags(),
        external_blocks=["ext"],
        rephrase_blocks_enabled=False,
    )

    assert resolution.forced_rebuild is False
    assert resolution.blocks == ()


def test_classification_and_turn_shape(make_candidates: MakeCandidates) -> None:
    diagnostic = resolve_candidates(make_candidates(content="x"), TurnFlags(diagnostic=True, silence=True))
    silent = resolve_candidates(make_candidates(content="…"), TurnFlags())
    micro = resolve_candidates(make_candidates(content="ok"), TurnFlags(input_kind=InputKind.MICRO))
    multi = resolve_candidates(make_candidates(content="x"), TurnFlags(), external_blocks=["a", "b", "c"])

    assert diagnostic.classification is TurnClassification.DIAGNOSTIC
    assert silent.classification is TurnClassification.SILENCE
    assert silent.short_turn is True
    assert micro.short_turn is True
    assert micro.classification is TurnClassification.NORMAL
    assert multi.multi_section is True


def test_is_silence_text() -> None:
    assert is_silence_text("…")
    assert is_silence_text(" ... ")
    assert not is_silence_text("")
    assert not is_silence_text("... well")


def test_candidates_from_generation_flattens_reply_and_appends_slot_text() -> None:
    result = GenerationResult.model_validate(
        {"assistantText": "hi", "rawTextFromModel": "raw", "rephraseBlocks": ["a", " ", "b"]}
    )

    candidates = candidates_from_generation(result, slot_fallback_text="I hear you.")

    assert [(c.source, c.text) for c in candidates] == [
        (CandidateSource.ASSISTANT_TEXT, "hi"),
        (CandidateSource.RAW_MODEL, "raw"),
        (CandidateSource.REPHRASE, "a\n\nb"),
        (CandidateSource.SLOT_PLAN, "I hear you."),
    ]


def test_candidates_from_missing_generation_only_has_slot_text() -> None:
    assert candidates_from_generation(None) == []
    assert [c.source for c in candidates_from_generation(None, slot_fallback_text="x")] == [CandidateSource.SLOT_PLAN]
