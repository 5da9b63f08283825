"""Tests for parsing conversational AI tool calls."""
import pytest

from careloop.core.errors import ValidationError
from careloop.domains.risk.tools import (
    TOOL_NAMES,
    AskMore,
    CountWellnessConfirmation,
    HandoffToNurse,
    LogCheckin,
    RaiseFlag,
    parse_tool_call,
)


class TestParseToolCall:
    def test_raise_flag_with_json_arguments(self):
        call = parse_tool_call({
            "name": "raise_flag",
            "arguments": '{"flagType": "WEIGHT_GAIN", "severity": "HIGH", "rationale": "3 lbs overnight"}',
        })

        assert isinstance(call, RaiseFlag)
        assert call.flag_type == "WEIGHT_GAIN"
        assert call.severity == "HIGH"

    def test_flat_arguments(self):
        call = parse_tool_call({"name": "handoff_to_nurse", "reason": "Wants a nurse", "flagType": "PATIENT_REQUEST"})

        assert isinstance(call, HandoffToNurse)
        assert call.reason == "Wants a nurse"

    def test_snake_case_arguments_accepted(self):
        call = parse_tool_call({"name": "count_wellness_confirmation", "arguments": {"is_confirmation": True, "area_confirmed": "breathing"}})

        assert isinstance(call, CountWellnessConfirmation)
        assert call.area_confirmed == "breathing"

    def test_ask_more(self):
        call = parse_tool_call({"name": "ask_more", "arguments": {"questions": ["Any swelling?", "Any dizziness?"]}})

        assert isinstance(call, AskMore)
        assert len(call.questions) == 2

    def test_log_checkin(self):
        call = parse_tool_call({"name": "log_checkin", "arguments": {"result": "CLOSE", "summary": "Doing well"}})

        assert isinstance(call, LogCheckin)
        assert call.result == "CLOSE"

    def test_unknown_tool_rejected(self):
        with pytest.raises(ValidationError):
            parse_tool_call({"name": "prescribe", "arguments": {}})

    def test_missing_name_rejected(self):
        with pytest.raises(ValidationError):
            parse_tool_call({"arguments": {}})

    def test_malformed_json_rejected(self):
        with pytest.raises(ValidationError):
            parse_tool_call({"name": "raise_flag", "arguments": "{not json"})

    def test_bad_severity_rejected(self):
        with pytest.raises(ValidationError):
            parse_tool_call({"name": "raise_flag", "arguments": {"flagType": "X", "severity": "SEVERE", "rationale": "r"}})

    def test_too_many_questions_rejected(self):
        with pytest.raises(ValidationError):
            parse_tool_call({"name": "ask_more", "arguments": {"questions": ["a", "b", "c", "d"]}})

    def test_tool_names_cover_every_variant(self):
        assert TOOL_NAMES == [
            "raise_flag",
            "ask_more",
            "log_checkin",
            "handoff_to_nurse",
            "count_wellness_confirmation",
        ]
