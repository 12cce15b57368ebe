"""
Extraction of JSON payloads from free-form model replies.
"""

import pytest

from pilot_platform.json_extract import ExtractionErrorKind, extract_json_from_markdown


def test_json_fence_is_preferred():
    text = 'Here you go:\n```json\n{"steps": [{"name": "a"}]}\n```\nthanks'
    result = extract_json_from_markdown(text)
    assert result.ok
    assert result.result == {"steps": [{"name": "a"}]}


def test_unlabelled_fence_and_bare_array():
    result = extract_json_from_markdown('```\n[1, 2, 3]\n```')
    assert result.ok and result.result == [1, 2, 3]


def test_whole_text_json():
    result = extract_json_from_markdown('  {"a": 1}  ')
    assert result.result == {"a": 1}


def test_embedded_object_without_fence():
    result = extract_json_from_markdown('The plan is {"stages": [{"name": "x"}]} as requested.')
    assert result.ok
    assert result.result["stages"][0]["name"] == "x"


def test_braces_inside_strings_do_not_break_span():
    result = extract_json_from_markdown('prefix {"q": "use {curly} here"} suffix')
    assert result.result == {"q": "use {curly} here"}


def test_no_json_found_for_plain_text():
    result = extract_json_from_markdown("I could not produce a plan today.")
    assert not result.ok
    assert result.error.kind == ExtractionErrorKind.NO_JSON_FOUND


def test_parse_error_for_broken_fence():
    result = extract_json_from_markdown('```json\n{"a": 1,,}\n```')
    assert not result.ok
    assert result.error.kind == ExtractionErrorKind.PARSE_ERROR


@pytest.mark.parametrize("value", [None, "", "   ", 42, b"{}"])
def test_never_raises_on_odd_input(value):
    result = extract_json_from_markdown(value)
    assert result.error is not None
    assert result.error.kind == ExtractionErrorKind.NO_JSON_FOUND
