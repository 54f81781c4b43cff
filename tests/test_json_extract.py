import pytest

from structured_completion.errors import ExtractionError
from structured_completion.json_extract import (
    ERR_EMPTY,
    ERR_NOT_FOUND,
    ERR_VALIDATION,
    balanced_spans,
    extract_json,
    find_balanced_span,
    has_required_fields,
    repair_json,
    require_json,
)


def test_whole_input_parses_directly():
    result = extract_json('{"a": 1}')
    assert result.success
    assert result.data == {"a": 1}


def test_fenced_block_with_language_tag():
    result = extract_json('Here:\n```json\n{"ticker": "AAPL", "score": 7}\n```\nthanks')
    assert result.success
    assert result.data == {"ticker": "AAPL", "score": 7}


def test_fenced_block_without_language_tag():
    result = extract_json("```\n[1, 2, 3]\n```")
    assert result.data == [1, 2, 3]


def test_balanced_span_ignores_braces_inside_strings():
    text = 'The answer is {"note": "use } carefully", "n": 2} and then more {junk'
    result = extract_json(text)
    assert result.success
    assert result.data == {"note": "use } carefully", "n": 2}


def test_trailing_commas_are_repaired():
    result = extract_json('{"a": [1, 2,], "b": 3,}')
    assert result.data == {"a": [1, 2], "b": 3}


def test_bare_identifier_keys_are_quoted():
    result = extract_json("Result: {score: 7, label: \"ok\"}")
    assert result.success
    assert result.data == {"score": 7, "label": "ok"}


def test_repair_leaves_string_contents_alone():
    assert repair_json('{"text": "a, }", b: 1,}') == '{"text": "a, }", "b": 1}'


def test_unrecoverable_syntax_fails():
    result = extract_json('{"broken": }')
    assert not result.success
    assert result.data is None
    assert result.error == ERR_NOT_FOUND


def test_empty_input_fails_with_distinct_message():
    assert extract_json("").error == ERR_EMPTY
    assert extract_json("   \n").error == ERR_EMPTY
    assert extract_json(None).error == ERR_EMPTY


def test_validator_rejection_fails_with_distinct_message():
    result = extract_json('{"a": 1}', lambda v: has_required_fields(v, ["b"]))
    assert not result.success
    assert result.error == ERR_VALIDATION


def test_validator_accepts_later_candidate():
    text = '```\n[1]\n```'
    result = extract_json(text, lambda v: isinstance(v, list))
    assert result.data == [1]


def test_dunder_keys_stay_plain_dict_keys():
    result = extract_json('{"__proto__": {"polluted": true}, "__class__": "x", "__init__": 1}')
    assert result.success
    assert type(result.data) is dict
    assert result.data["__proto__"] == {"polluted": True}
    assert result.data["__class__"] == "x"
    assert not hasattr({}, "polluted")


def test_non_finite_constants_are_rejected():
    assert not extract_json('{"x": NaN}').success
    assert not extract_json("[Infinity]").success


def test_find_balanced_span_mismatched_closer():
    assert find_balanced_span("{ ] }") is None
    assert find_balanced_span('x [1, {"a": 2}] y') == (2, 15)


def test_require_json_raises():
    assert require_json('{"ok": true}') == {"ok": True}
    with pytest.raises(ExtractionError):
        require_json("no json here")


def test_has_required_fields():
    assert has_required_fields({"a": 1, "b": None}, ["a", "b"])
    assert not has_required_fields({"a": 1}, ["a", "b"])
    assert not has_required_fields([1], ["a"])


def test_bracketed_prose_before_object_is_skipped():
    result = extract_json('Based on [source 1], here is the data: {"ticker": "AAPL", "score": 7}')
    assert result.success
    assert result.data == {"ticker": "AAPL", "score": 7}


def test_bracketed_prose_before_repairable_object():
    result = extract_json("Per [2] and (3): {ticker: \"MSFT\", score: 5,} done")
    assert result.data == {"ticker": "MSFT", "score": 5}


def test_validator_never_matches_fragment_of_rejected_object():
    result = extract_json('{"a": {"b": 1}}', lambda v: has_required_fields(v, ["b"]))
    assert result.error == ERR_VALIDATION


def test_balanced_spans_are_top_level_only():
    assert list(balanced_spans('see [a] then {"x": [1]} and {y')) == ["[a]", '{"x": [1]}']


def test_array_payload_still_extracted_from_prose():
    assert extract_json("scores: [1, 2, 3] (final)").data == [1, 2, 3]
