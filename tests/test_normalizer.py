import pytest

from chronicler.context import MalformedOutputError
from chronicler.normalizer import fix_leading_zeros, parse_json_payload, sanitize, strip_code_fences
from chronicler.validation import validate_chapter_payload


def test_strip_fences_with_language_tag():
    raw = '```json\n{"title": "x"}\n```'
    assert strip_code_fences(raw) == '{"title": "x"}'


def test_fenced_block_inside_prose():
    raw = 'Sure! Here it is:\n```\n{"a": 1}\n```\nEnjoy.'
    assert strip_code_fences(raw) == '{"a": 1}'


@pytest.mark.parametrize("raw, expected", [
    ('{"n": 05}', '{"n": 5}'),
    ('{"xs": [01, 002, 3]}', '{"xs": [1, 2, 3]}'),
    ('{"n": 0}', '{"n": 0}'),
    ('{"n": 0.5}', '{"n": 0.5}'),
    ('{"t": "05:30"}', '{"t": "05:30"}'),
])
def test_fix_leading_zeros(raw, expected):
    assert fix_leading_zeros(raw) == expected


def test_sanitize_empty_is_empty_object():
    assert sanitize("") == "{}"
    assert sanitize("   ") == "{}"


def test_parse_recovers_object_from_prose():
    raw = 'Here you go: {"title": "T", "n": 07} hope that helps'
    assert parse_json_payload(raw) == {"title": "T", "n": 7}


def test_parse_unwraps_single_element_list():
    assert parse_json_payload('[{"a": 1}]') == {"a": 1}


def test_parse_rejects_garbage():
    with pytest.raises(MalformedOutputError):
        parse_json_payload("the model said no")
    with pytest.raises(MalformedOutputError):
        parse_json_payload("[1, 2]")


def test_validation_requires_fields_and_narrative():
    ok, _ = validate_chapter_payload({"title": "", "time_range": "t", "narrative": "n", "key_quotes": []})
    assert ok
    ok, reason = validate_chapter_payload({"title": "x", "time_range": "t", "narrative": "  ", "key_quotes": []})
    assert not ok and "narrative" in reason
    ok, reason = validate_chapter_payload({"title": "x", "narrative": "n"})
    assert not ok and "time_range" in reason
    ok, _ = validate_chapter_payload({"title": "x", "time_range": "t", "narrative": "n", "key_quotes": [1]})
    assert not ok
