from __future__ import annotations

import json

from guide_plugin.errors import ParseError
from guide_plugin.models import AnalysisResult, CalibrationResult, PHYSICAL, ScreenRect
from guide_plugin.response_parser import (
    extract_json_span,
    parse,
    parse_analysis,
    parse_calibration,
    repair_json,
)


def test_plus_sign_and_raw_newline_are_recovered():
    raw = '{"accuracy_score": +0.9, "feedback": "ok\n"}'
    outcome = parse(raw)
    assert outcome.ok
    assert outcome.recovered
    assert outcome.value == CalibrationResult(accuracy_score=0.9, feedback="ok\n")
    assert outcome.value.recovered


def test_escaped_newline_with_plus_sign_decodes_the_same():
    raw = '{"accuracy_score": +0.9, "feedback": "ok\\n"}'
    outcome = parse(raw)
    assert outcome.value.accuracy_score == 0.9
    assert outcome.value.feedback == "ok\n"


def test_reparsing_normalized_text_is_stable():
    samples = [
        '{"accuracy_score": +0.9, "feedback": "ok\n"}',
        'text {"accuracy_score": 0.42, "position_offset": {"x": -10, "y": 5}, "feedback": "left", oops',
        '{"message": "Found\nit", "tutorial_steps": [{"text": "A", "x": +1, "y": 2, "width": 3, "height": 4}]}',
    ]
    for raw in samples:
        first = parse(raw)
        again = parse(first.normalized_text)
        assert again.ok
        assert again.value == first.value


def test_analysis_inside_prose_and_code_fence():
    raw = (
        "Here you go:\n```json\n"
        '{"message": "Found it", "tutorial_steps": [{"text": "Close", "x": 10, "y": 20, '
        '"width": 12, "height": 12, "description": "red X"}]}\n```\nAnything else?'
    )
    outcome = parse_analysis(raw)
    assert not outcome.recovered
    result = outcome.value
    assert isinstance(result, AnalysisResult)
    assert result.message == "Found it"
    step = result.first_step
    assert step.id == "step_1"
    assert step.text == "Close"
    assert step.description == "red X"
    assert step.rect == ScreenRect(10, 20, 12, 12, PHYSICAL)


def test_service_ids_are_replaced_with_ordinal_ids():
    raw = json.dumps(
        {
            "message": "two",
            "tutorial_steps": [
                {"id": "zzz", "text": "A", "x": 1, "y": 1, "width": 1, "height": 1},
                {"id": "aaa", "text": "B", "x": 2, "y": 2, "width": 2, "height": 2},
            ],
        }
    )
    result = parse_analysis(raw).value
    assert [step.id for step in result.steps] == ["step_1", "step_2"]
    assert [step.text for step in result.steps] == ["A", "B"]


def test_steps_without_coordinates_are_skipped():
    raw = (
        '{"message": "m", "tutorial_steps": [{"text": "no coords"}, '
        '{"text": "ok", "x": 1, "y": 1, "width": 1, "height": 1}]}'
    )
    result = parse_analysis(raw).value
    assert len(result.steps) == 1
    assert result.steps[0].text == "ok"
    assert result.steps[0].id == "step_1"


def test_empty_step_list_is_a_valid_answer():
    result = parse('{"message": "Nothing matches", "tutorial_steps": []}').value
    assert result.message == "Nothing matches"
    assert result.steps == ()


def test_calibration_fields_recovered_by_regex():
    raw = (
        '{"accuracy_score": 0.42, "position_offset": {"x": -10, "y": 5}, '
        '"size_correction": {"width": 20, "height": -5}, "feedback": "slightly left", oops'
    )
    outcome = parse_calibration(raw)
    assert outcome.recovered
    result = outcome.value
    assert result.accuracy_score == 0.42
    assert result.position_offset == (-10.0, 5.0)
    assert result.size_correction == (20.0, -5.0)
    assert result.feedback == "slightly left"
    assert result.corrected_rect is None


def test_analysis_steps_recovered_from_truncated_json():
    raw = (
        'Sure! {"message": "Found", "tutorial_steps": ['
        '{"text": "A", "x": 1, "y": 2, "width": 3, "height": 4, "description": "d"}, '
        '{"text": "B", "x": +5, "y": 6, "width": 7, "height": 8, "description": "e"}'
    )
    outcome = parse_analysis(raw)
    assert outcome.recovered
    result = outcome.value
    assert result.message == "Found"
    assert [step.id for step in result.steps] == ["step_1", "step_2"]
    assert result.steps[1].rect.x == 5.0


def test_corrected_position_is_logical():
    raw = json.dumps(
        {
            "accuracy_score": 0.7,
            "corrected_position": {"x": 110, "y": 95, "width": 180, "height": 55},
        }
    )
    result = parse(raw).value
    assert result.corrected_rect == ScreenRect(110, 95, 180, 55, "logical")


def test_score_is_clamped_into_unit_range():
    assert parse('{"accuracy_score": 3.5}').value.accuracy_score == 1.0
    assert parse('{"accuracy_score": -1}').value.accuracy_score == 0.0


def test_unparseable_text_returns_error_value():
    outcome = parse("I cannot help with that.")
    assert not outcome.ok
    assert outcome.error.kind == ParseError.UNRECOVERABLE
    assert outcome.error.excerpt == "I cannot help with that."


def test_error_excerpt_is_truncated():
    outcome = parse("x" * 600)
    assert len(outcome.error.excerpt) == 500


def test_extract_json_span_ignores_prose():
    assert extract_json_span('before {"a": {"b": 1}} after') == '{"a": {"b": 1}}'
    assert extract_json_span("no braces") is None
    assert extract_json_span("") is None


def test_repair_leaves_valid_json_untouched():
    valid = '{\n  "message": "line\\nnext",\n  "count": 3,\n  "note": "+5"\n}'
    assert repair_json(valid) == valid


def test_repair_is_idempotent():
    raw = '{"message": "a\nb", "x": +1, "items": [+2, -3]}'
    once = repair_json(raw)
    assert repair_json(once) == once
    assert json.loads(once) == {"message": "a\nb", "x": 1, "items": [2, -3]}


def test_repair_only_escapes_text_fields():
    raw = '{"label": "a\tb"}'
    assert repair_json(raw) == raw
