import json

import pytest

from multimodal.analyzer import (
    MalformedAnalysisError,
    PermanentAnalysisError,
    run_analysis,
    validate_result,
)
from multimodal.llm import build_messages, mock_analysis, request_analysis
from multimodal.models import REQUIRED_FIELDS
from multimodal.parsing import AIResponseParseError, check_missing_fields, parse_ai_response


def test_parse_plain_json():
    assert parse_ai_response('{"overall_score": 80}') == {"overall_score": 80}


def test_parse_fenced_json_block():
    text = 'Here is the report:\n```json\n{"summary": "clean", "confidence": 90}\n```\nThanks!'
    assert parse_ai_response(text) == {"summary": "clean", "confidence": 90}


def test_parse_json_embedded_in_prose():
    text = 'Sure. {"engine_health": "good", "rpm_analysis": {"idle_rpm": 800}} Let me know.'
    assert parse_ai_response(text)["rpm_analysis"] == {"idle_rpm": 800}


@pytest.mark.parametrize("text", ["", "no json here", "{broken: true", "[1, 2, 3]"])
def test_parse_rejects_unusable_text(text):
    with pytest.raises(AIResponseParseError):
        parse_ai_response(text)


def test_check_missing_fields():
    assert check_missing_fields({"a": 1, "b": None}, ["a", "b", "c"]) == ["c"]
    assert check_missing_fields(None, ["a"]) == ["a"]


def test_mock_analysis_validates_for_every_report_type():
    for report_type in REQUIRED_FIELDS:
        result = validate_result(report_type, mock_analysis(report_type, ["https://cdn.example.com/a.jpg"]))
        assert result["report_type"] == report_type
        assert result["analyzed_at"]


def test_request_analysis_without_key_uses_local_fallback():
    raw = request_analysis("DAMAGE_ANALYSIS", ["https://cdn.example.com/a.jpg"], None, api_key="test-key")
    payload = json.loads(raw)
    assert payload["provider"] == "mock"
    assert payload["damage_areas"]


def test_missing_fields_are_malformed():
    payload = mock_analysis("PAINT_ANALYSIS", ["x"])
    del payload["color_match"]
    with pytest.raises(MalformedAnalysisError, match="color_match"):
        validate_result("PAINT_ANALYSIS", payload)


def test_out_of_range_values_are_malformed():
    payload = mock_analysis("DAMAGE_ANALYSIS", ["x"])
    payload["overall_score"] = 140
    with pytest.raises(MalformedAnalysisError):
        validate_result("DAMAGE_ANALYSIS", payload)


def test_result_for_wrong_report_type_is_malformed():
    payload = mock_analysis("VALUE_ESTIMATION", ["x"])
    payload.update(mock_analysis("PAINT_ANALYSIS", ["x"]))
    with pytest.raises(MalformedAnalysisError):
        validate_result("VALUE_ESTIMATION", payload)


def test_run_analysis_rejects_unknown_type_and_empty_inputs():
    with pytest.raises(PermanentAnalysisError):
        run_analysis(["x"], "TIRE_ANALYSIS", analyzer=lambda refs, kind, info: {})
    with pytest.raises(PermanentAnalysisError):
        run_analysis([], "PAINT_ANALYSIS", analyzer=lambda refs, kind, info: {})


def test_run_analysis_parses_text_replies():
    reply = "```json\n" + json.dumps(mock_analysis("ENGINE_SOUND_ANALYSIS", ["s3://a.wav"])) + "\n```"
    result = run_analysis(["s3://a.wav"], "ENGINE_SOUND_ANALYSIS", analyzer=lambda refs, kind, info: reply)
    assert result["sound_quality"]["clarity"] >= 0


def test_image_reports_attach_photos():
    messages = build_messages("DAMAGE_ANALYSIS", ["https://cdn.example.com/a.jpg"], {"make": "Fiat"})
    parts = messages[1]["content"]
    assert parts[1] == {"type": "image_url", "image_url": {"url": "https://cdn.example.com/a.jpg"}}
    assert "make: Fiat" in parts[0]["text"]
