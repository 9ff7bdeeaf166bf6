from __future__ import annotations

from receipt_tracker.modules.extraction.output import (
    extract_json_text,
    parse_model_output,
    repair_json_text,
)


def test_fenced_json_block_is_unwrapped():
    assert extract_json_text('```json\n{"a":1}\n```') == '{"a":1}'


def test_fence_tag_is_case_insensitive():
    assert extract_json_text('Here you go:\n```JSON\n{"a": 1}\n```\nThanks') == '{"a": 1}'


def test_json_embedded_in_prose_uses_widest_brace_span():
    assert extract_json_text('noise {"a":1} noise') == '{"a":1}'
    text = 'before {"a": {"b": 2}} middle {"c": 3} after'
    assert extract_json_text(text) == '{"a": {"b": 2}} middle {"c": 3}'


def test_untagged_fence_without_braces_returns_interior():
    assert extract_json_text("```\ngarbage```") == "garbage"


def test_stray_fence_markers_are_stripped():
    assert extract_json_text("```json nothing useful here") == "nothing useful here"


def test_extract_never_raises_on_odd_input():
    assert extract_json_text(None) == ""
    assert extract_json_text("") == ""
    assert extract_json_text(42) == "42"
    assert extract_json_text("} backwards {") == "} backwards {"


def test_repair_fixes_trailing_commas_and_smart_quotes():
    repaired = repair_json_text("{“merchant_name”: “Acme”, \"items\": [1, 2,],}")
    assert repaired == '{"merchant_name": "Acme", "items": [1, 2]}'


def test_parse_chain_prefers_direct_parse():
    parsed = parse_model_output('{"merchant_name": "Acme"}')
    assert parsed is not None
    assert parsed.strategy == "direct"
    assert parsed.payload == {"merchant_name": "Acme"}


def test_parse_chain_falls_back_to_extraction_then_repair():
    extracted = parse_model_output('Sure! ```json\n{"total": 5}\n```')
    assert extracted is not None
    assert extracted.strategy == "extracted"

    repaired = parse_model_output('Result: {"total": 5, "items": [],}')
    assert repaired is not None
    assert repaired.strategy == "repaired"
    assert repaired.payload == {"total": 5, "items": []}


def test_parse_chain_rejects_non_objects():
    assert parse_model_output("not json at all") is None
    assert parse_model_output("[1, 2, 3]") is None
    assert parse_model_output("") is None


def test_top_level_array_with_object_is_recovered_by_brace_span():
    parsed = parse_model_output('[{"merchant_name": "Acme"}]')
    assert parsed is not None
    assert parsed.payload == {"merchant_name": "Acme"}
