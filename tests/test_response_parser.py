"""Tests for JSON extraction and self-correction."""

import pytest

from devpilot.errors import ParseFailure, ProviderError
from devpilot.llm_client import TransportError
from devpilot.response_parser import (
    STRATEGY_ARRAY,
    STRATEGY_FENCED,
    STRATEGY_OBJECT,
    STRATEGY_RAW,
    extract_json,
)


@pytest.mark.parametrize("text, expected, strategy", [
    ('noise ```json {"a":1} ``` noise', {"a": 1}, STRATEGY_FENCED),
    ('```\n[1, 2]\n```', [1, 2], STRATEGY_FENCED),
    ('Sure! Here is the plan: {"thoughts": "ok"} Hope that helps.', {"thoughts": "ok"}, STRATEGY_OBJECT),
    ('Tasks: ["scaffold", "style"] in order', ["scaffold", "style"], STRATEGY_ARRAY),
    ('  "just a string"  ', "just a string", STRATEGY_RAW),
])
def test_extraction_strategies(text, expected, strategy):
    assert extract_json(text) == (expected, strategy)


def test_unparseable_fence_falls_through_to_object_span():
    text = "```\nsee below\n```\n{\"fixed\": true}"
    assert extract_json(text) == ({"fixed": True}, STRATEGY_OBJECT)


def test_expected_shape_skips_wrong_candidates():
    value, strategy = extract_json('{"plan": ["a", "b"]}', expect=list)
    assert value == ["a", "b"]
    assert strategy == STRATEGY_ARRAY


def test_no_json_raises():
    with pytest.raises(ParseFailure) as exc_info:
        extract_json("I cannot help with that.")
    assert exc_info.value.text == "I cannot help with that."


def test_wrong_shape_everywhere_raises():
    with pytest.raises(ParseFailure):
        extract_json("[1, 2, 3]", expect=dict)


@pytest.mark.asyncio
async def test_parse_without_self_correction(parser, transport):
    assert await parser.parse('noise ```json {"a":1} ``` noise', expect=dict) == {"a": 1}
    assert transport.requests == []
    assert parser.corrections_made == 0


@pytest.mark.asyncio
async def test_self_correction_repairs_output(parser, transport, config, budget):
    transport.queue('{"a": 2}')

    assert await parser.parse("{'a': 2,,}", expect=dict) == {"a": 2}

    assert parser.corrections_made == 1
    request = transport.requests[0]
    assert request["provider"] == config.correction_provider
    assert request["model"] == config.correction_model
    assert "{'a': 2,,}" in request["prompt"]
    assert "must be a JSON object" in request["prompt"]
    assert budget.balances["user-1"] == 99


@pytest.mark.asyncio
async def test_self_correction_reply_is_parsed_as_raw_text_only(parser, transport):
    transport.queue('Here you go: ```json {"a": 2} ```')
    with pytest.raises(ParseFailure, match="after self-correction"):
        await parser.parse("not json", expect=dict)


@pytest.mark.asyncio
async def test_self_correction_wrong_shape(parser, transport):
    transport.queue("[1]")
    with pytest.raises(ParseFailure, match="expected dict"):
        await parser.parse("nope", expect=dict)


@pytest.mark.asyncio
async def test_self_correction_provider_failure_propagates(parser, transport):
    transport.queue(TransportError("down"), TransportError("down"))
    with pytest.raises(ProviderError):
        await parser.parse("nope")
