"""
Protocol payloads.

Configs and rules are versioned tagged records: ``schema_version`` pins the
payload shape and ``rule_type`` selects the rule variant.
"""
from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, RootModel

Severity = Literal["LOW", "MODERATE", "HIGH", "CRITICAL"]


class ProtocolConfigPayload(BaseModel):
    schema_version: Literal[1] = 1
    condition_code: str
    risk_level: Literal["LOW", "MEDIUM", "HIGH"]
    critical_confidence_threshold: float = Field(0.8, ge=0, le=1)
    low_confidence_threshold: float = Field(0.6, ge=0, le=1)
    vague_symptoms: list[str] = []
    enable_sentiment_boost: bool = False
    distressed_severity_upgrade: Severity | None = None
    route_medication_questions_to_info: bool = True
    route_general_questions_to_info: bool = True
    detect_multiple_symptoms: bool = False
    notes: str | None = None


class ProtocolConfigResponse(ProtocolConfigPayload):
    id: UUID
    schema_version: int
    active: bool
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class _RuleBase(BaseModel):
    schema_version: Literal[1] = 1
    condition_code: str
    rule_code: str = Field(min_length=1)
    text_patterns: list[str] = []
    message: str | None = None


class RedFlagRule(_RuleBase):
    rule_type: Literal["RED_FLAG"]
    severity: Severity
    action_type: str = "CREATE_TASK"


class ClosureRule(_RuleBase):
    rule_type: Literal["CLOSURE"]
    action_type: str = "CLOSE_CHECKIN"


class QuestionRule(_RuleBase):
    rule_type: Literal["QUESTION"]
    follow_up_questions: list[str] = Field(default_factory=list, max_length=3)
    action_type: str = "ASK_MORE"


ProtocolRulePayload = Annotated[
    Union[RedFlagRule, ClosureRule, QuestionRule],
    Field(discriminator="rule_type"),
]


class ProtocolRuleCreate(RootModel[ProtocolRulePayload]):
    pass


class ProtocolRuleResponse(BaseModel):
    id: UUID
    condition_code: str
    rule_code: str
    rule_type: str
    schema_version: int
    severity: str | None
    text_patterns: list[str]
    action_type: str | None
    message: str | None
    extra: dict
    active: bool

    class Config:
        from_attributes = True


class ProtocolAssignmentRequest(BaseModel):
    episode_id: UUID
    condition_code: str
    risk_level: Literal["LOW", "MEDIUM", "HIGH"]


class ProtocolAssignmentResponse(BaseModel):
    id: UUID
    episode_id: UUID
    condition_code: str
    risk_level: str
    is_active: bool
    assigned_by: str | None
    assigned_at: datetime
    deactivated_at: datetime | None

    class Config:
        from_attributes = True
