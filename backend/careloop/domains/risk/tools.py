"""
Tool calls the conversational AI may make during a check-in.

The set is closed: every call is parsed into exactly one of the variants
below, discriminated by ``name``. Argument names follow the AI service's
camelCase wire format.
"""
import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from careloop.core.errors import ValidationError

SeverityArg = Literal["LOW", "MODERATE", "HIGH", "CRITICAL"]


class _ToolCall(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"


class RaiseFlag(_ToolCall):
    name: Literal["raise_flag"] = "raise_flag"
    flag_type: str = Field(alias="flagType", min_length=1)
    severity: SeverityArg
    rationale: str = Field(min_length=1)


class AskMore(_ToolCall):
    name: Literal["ask_more"] = "ask_more"
    questions: list[str] = Field(min_length=1, max_length=3)


class LogCheckin(_ToolCall):
    name: Literal["log_checkin"] = "log_checkin"
    result: Literal["ASK_MORE", "FLAG", "CLOSE"]
    summary: str | None = None


class HandoffToNurse(_ToolCall):
    name: Literal["handoff_to_nurse"] = "handoff_to_nurse"
    reason: str = Field(min_length=1)
    flag_type: str = Field(alias="flagType", min_length=1)


class CountWellnessConfirmation(_ToolCall):
    name: Literal["count_wellness_confirmation"] = "count_wellness_confirmation"
    is_confirmation: bool = Field(alias="isConfirmation")
    area_confirmed: str | None = Field(None, alias="areaConfirmed")


ToolCall = Annotated[
    Union[RaiseFlag, AskMore, LogCheckin, HandoffToNurse, CountWellnessConfirmation],
    Field(discriminator="name"),
]

_tool_call_adapter = TypeAdapter(ToolCall)


def parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    """
    Parse one raw tool call.

    Accepts ``{"name": ..., "arguments": {...}}`` where arguments may be a
    JSON string, or a flat dict. Raises ValidationError for unknown tools or
    bad arguments.
    """
    if not isinstance(raw, dict) or "name" not in raw:
        raise ValidationError(f"Tool call without a name: {raw!r}")

    arguments = raw.get("arguments", {k: v for k, v in raw.items() if k != "name"})
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ValidationError(f"Tool call {raw['name']} has malformed arguments: {e}") from e
    if not isinstance(arguments, dict):
        raise ValidationError(f"Tool call {raw['name']} arguments must be an object")

    try:
        return _tool_call_adapter.validate_python({**arguments, "name": raw["name"]})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {raw['name']} tool call: {e.errors()}") from e


_SEVERITY_ENUM = ["LOW", "MODERATE", "HIGH", "CRITICAL"]

TOOL_SCHEMA: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "raise_flag",
            "description": "Raise a clinical red flag when the patient reports a concerning symptom.",
            "parameters": {
                "type": "object",
                "properties": {
                    "flagType": {"type": "string", "description": "Short code for the symptom or concern"},
                    "severity": {"type": "string", "enum": _SEVERITY_ENUM},
                    "rationale": {"type": "string", "description": "Why this severity was chosen"},
                },
                "required": ["flagType", "severity", "rationale"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "ask_more",
            "description": "Ask the patient clarifying questions before deciding.",
            "parameters": {
                "type": "object",
                "properties": {
                    "questions": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 1,
                        "maxItems": 3,
                    },
                },
                "required": ["questions"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "log_checkin",
            "description": "Record the outcome of the check-in conversation.",
            "parameters": {
                "type": "object",
                "properties": {
                    "result": {"type": "string", "enum": ["ASK_MORE", "FLAG", "CLOSE"]},
                    "summary": {"type": "string"},
                },
                "required": ["result"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "handoff_to_nurse",
            "description": "Hand the conversation to a nurse immediately.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {"type": "string"},
                    "flagType": {"type": "string"},
                },
                "required": ["reason", "flagType"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "count_wellness_confirmation",
            "description": "Count a patient statement confirming they are doing well in an area.",
            "parameters": {
                "type": "object",
                "properties": {
                    "isConfirmation": {"type": "boolean"},
                    "areaConfirmed": {"type": "string"},
                },
                "required": ["isConfirmation"],
            },
        },
    },
]

TOOL_NAMES = [tool["function"]["name"] for tool in TOOL_SCHEMA]
