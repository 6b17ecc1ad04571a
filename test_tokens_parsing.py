#!/usr/bin/env python3
"""Test token substitution and output parsing."""

import pytest

from council.pipeline.parsing import OutputParseError, extract_json, parse_output
from council.pipeline.schema import OutputShape
from council.pipeline.tokens import (
    TokenDepthError,
    build_resolution_context,
    has_tokens,
    lookup_token,
    substitute_tokens,
)


def _context(**variables):
    return build_resolution_context(
        input_value="the input",
        previous_output="previous text",
        variables=variables,
        globals_={"tone": "formal"},
        extra={"step": {"id": "ask"}},
    )


# ============================================================================
# Token substitution
# ============================================================================

def test_substitutes_paths_and_aliases():
    """Test dotted paths and camelCase aliases resolve."""
    context = _context(topic="rivers")
    text = substitute_tokens(
        "{{input}} | {{previousOutput}} | {{variables.topic}} | {{step.id}} | {{ globals.tone }}",
        context,
    )
    assert text == "the input | previous text | rivers | ask | formal"


def test_bare_names_fall_back_to_variables_then_globals():
    context = _context(topic="rivers")
    assert lookup_token("topic", context) == "rivers"
    assert lookup_token("tone", context) == "formal"
    assert lookup_token("unknown", context, None) is None


def test_unresolved_tokens_preserved_by_default():
    context = _context()
    assert substitute_tokens("Hello {{missing}}", context) == "Hello {{missing}}"
    assert substitute_tokens("Hello {{missing}}", context, preserve_unresolved=False) == "Hello "


def test_nested_tokens_resolve():
    """Test a substituted value containing tokens is resolved on a later pass."""
    context = _context(outer="[{{variables.inner}}]", inner="core")
    assert substitute_tokens("{{variables.outer}}", context) == "[core]"


def test_self_referential_tokens_hit_depth_cap():
    context = _context(loop="again {{variables.loop}}")
    with pytest.raises(TokenDepthError):
        substitute_tokens("{{variables.loop}}", context)


def test_structured_values_are_rendered_as_json():
    context = _context(data={"a": 1})
    assert '"a": 1' in substitute_tokens("{{variables.data}}", context)


def test_has_tokens():
    assert has_tokens("x {{y}}")
    assert not has_tokens("plain")
    assert not has_tokens(None)


# ============================================================================
# Output parsing
# ============================================================================

def test_text_output_is_stripped():
    assert parse_output("  hello \n", OutputShape.TEXT) == "hello"


def test_json_from_fenced_block():
    raw = 'Here you go:\n```json\n{"verdict": "ok", "score": 3}\n```\nThanks.'
    assert parse_output(raw, OutputShape.JSON) == {"verdict": "ok", "score": 3}


def test_json_embedded_in_prose():
    raw = 'The answer is {"items": [1, 2]} as requested.'
    assert parse_output(raw, OutputShape.JSON) == {"items": [1, 2]}


def test_invalid_json_raises():
    with pytest.raises(OutputParseError):
        parse_output("no structure here", OutputShape.JSON)


def test_array_from_json_and_bullets():
    assert parse_output('["a", "b"]', OutputShape.ARRAY) == ["a", "b"]
    assert parse_output('{"ideas": ["x", "y"]}', OutputShape.ARRAY) == ["x", "y"]
    assert parse_output("- first\n* second\n3. third", OutputShape.ARRAY) == ["first", "second", "third"]


def test_array_rejects_objects():
    with pytest.raises(OutputParseError):
        parse_output({"not": "a list"}, OutputShape.ARRAY)


def test_structured_values_pass_through():
    assert parse_output({"a": 1}, OutputShape.JSON) == {"a": 1}
    assert parse_output({"a": 1}, OutputShape.TEXT) == {"a": 1}


def test_extract_json_returns_none_without_json():
    assert extract_json("nothing to see") is None
