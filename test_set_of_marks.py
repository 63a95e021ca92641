import json

from pydantic import ValidationError

from web_grounder.agents.set_of_marks import (
    build_prompt,
    decide_disambiguation,
    format_element_list,
    interpret,
    parse_reply,
)
from web_grounder.core.errors import ReplyParseError
from web_grounder.core.types import ElementDescriptor, ElementSource

FUSED = [
    ElementDescriptor(selector="#hero", source=ElementSource.DOM_DATABASE),
    ElementDescriptor(selector=".cta", role="button", name="Buy now", source=ElementSource.DOM_DATABASE),
]

CTA_REPLY = {
    "interpretation": "resize CTA button",
    "confidence": 0.92,
    "candidates": [{"markNumber": 2, "selector": ".cta", "reasoning": "labelled button"}],
    "needsDisambiguation": False,
}


def test_format_element_list():
    assert format_element_list(FUSED) == '[1] element (#hero)\n[2] button: "Buy now" (.cta)'


def test_prompt_without_image_stands_alone():
    prompt = build_prompt("make the button bigger", FUSED)

    assert prompt.image is None
    assert not prompt.has_image
    assert "Available elements:" in prompt.text
    assert "numbered on the screenshot" not in prompt.text
    assert '[2] button: "Buy now" (.cta)' in prompt.text
    assert "needsDisambiguation" in prompt.text
    assert "below 0.8" in prompt.text
    assert "refinement request" not in prompt.text


def test_prompt_with_overlay_and_refinement():
    prompt = build_prompt("x", FUSED, overlay="data:image/png;base64,AAAA", threshold=0.75, refinement=True)

    assert prompt.has_image
    assert prompt.image == "data:image/png;base64,AAAA"
    assert "numbered on the screenshot" in prompt.text
    assert "below 0.75" in prompt.text
    assert "refinement request" in prompt.text


def test_confident_single_candidate_is_accepted():
    result = interpret(CTA_REPLY, FUSED)

    assert result.success
    assert [e.selector for e in result.selected_elements] == [".cta"]
    assert result.selected_elements[0].mark_number == 2
    assert result.selected_elements[0].reasoning == "labelled button"
    assert result.selected_elements[0].matched_by == "som"
    assert result.confidence == 0.92
    assert result.needs_disambiguation is False
    assert result.reasoning == "labelled button"
    assert result.interpretation == "resize CTA button"


def test_json_string_reply_is_parsed():
    fenced = "```json\n" + json.dumps(CTA_REPLY) + "\n```"
    assert interpret(json.dumps(CTA_REPLY), FUSED).selected_elements[0].selector == ".cta"
    assert interpret(fenced, FUSED).confidence == 0.92


def test_low_confidence_forces_disambiguation():
    reply = dict(CTA_REPLY, confidence=0.5)
    assert interpret(reply, FUSED).needs_disambiguation is True


def test_multiple_candidates_below_09_force_disambiguation():
    reply = dict(
        CTA_REPLY,
        confidence=0.85,
        candidates=[
            {"markNumber": 1, "reasoning": "large hero"},
            {"markNumber": 2, "reasoning": "button"},
        ],
    )
    result = interpret(reply, FUSED)

    assert len(result.selected_elements) == 2
    assert result.needs_disambiguation is True
    assert result.reasoning == "large hero; button"

    confident = interpret(dict(reply, confidence=0.95), FUSED)
    assert confident.needs_disambiguation is False


def test_service_flag_is_respected():
    reply = dict(CTA_REPLY, confidence=0.99, needsDisambiguation=True)
    assert interpret(reply, FUSED).needs_disambiguation is True


def test_malformed_reply_degrades():
    result = interpret("Sorry, I can't help with that.", FUSED)

    assert result.success
    assert result.confidence == 0.0
    assert result.needs_disambiguation is True
    assert result.selected_elements == ()
    assert result.interpretation == ""
    assert result.parse_error


def test_non_object_and_bad_types_degrade():
    assert interpret("[1, 2]", FUSED).parse_error
    assert interpret({"confidence": "very", "candidates": []}, FUSED).parse_error
    assert interpret(None, FUSED).parse_error


def test_out_of_range_mark_is_dropped():
    reply = dict(
        CTA_REPLY,
        candidates=[
            {"markNumber": 2, "reasoning": "button"},
            {"markNumber": 9, "reasoning": "ghost"},
            {"markNumber": 0, "reasoning": "zero"},
        ],
    )
    result = interpret(reply, FUSED)

    assert [e.selector for e in result.selected_elements] == [".cta"]
    assert result.unresolved_marks == (9, 0)
    assert result.needs_disambiguation is True


def test_unparseable_mark_keeps_the_rest_of_the_reply():
    reply = dict(
        CTA_REPLY,
        candidates=[
            {"markNumber": 2, "reasoning": "button"},
            {"markNumber": " [1] ", "reasoning": "bracketed"},
            {"markNumber": "two", "reasoning": "spelled out"},
            {"markNumber": 2.5, "reasoning": "fractional"},
            {"markNumber": True, "reasoning": "boolean"},
        ],
    )
    result = interpret(reply, FUSED)

    assert result.parse_error is None
    assert result.confidence == 0.92
    assert [(e.mark_number, e.selector) for e in result.selected_elements] == [(2, ".cta"), (1, "#hero")]
    assert result.unresolved_marks == (None, None, None)
    assert result.needs_disambiguation is True


def test_result_collections_are_immutable():
    result = interpret(CTA_REPLY, FUSED)

    assert isinstance(result.selected_elements, tuple)
    assert isinstance(result.unresolved_marks, tuple)
    try:
        result.selected_elements[0].selector = "#hero"
    except ValidationError:
        pass
    else:
        raise AssertionError("selected elements should be immutable")


def test_confidence_is_clamped():
    assert parse_reply(dict(CTA_REPLY, confidence=1.7)).confidence == 1.0
    assert parse_reply(dict(CTA_REPLY, confidence=None)).confidence == 0.0


def test_parse_reply_raises_on_garbage():
    try:
        parse_reply("{not json")
    except ReplyParseError:
        pass
    else:
        raise AssertionError("expected ReplyParseError")


def test_decide_disambiguation_policy():
    assert decide_disambiguation(False, 0.79, 1) is True
    assert decide_disambiguation(False, 0.8, 1) is False
    assert decide_disambiguation(False, 0.89, 2) is True
    assert decide_disambiguation(False, 0.9, 2) is False
    assert decide_disambiguation(True, 1.0, 1) is True
    assert decide_disambiguation(False, 0.85, 1, threshold=0.9) is True
