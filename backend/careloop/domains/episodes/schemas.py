from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from careloop.domains.episodes.models import ConditionCode, LanguageCode, RiskLevel


class PatientIn(BaseModel):
    mrn: str = Field(min_length=1, max_length=50)
    first_name: str
    last_name: str
    primary_phone: str | None = None
    email: str | None = None
    language_code: str = LanguageCode.EN

    @field_validator("language_code")
    @classmethod
    def check_language(cls, v: str) -> str:
        if v not in LanguageCode.ALL:
            raise ValueError(f"language_code must be one of {LanguageCode.ALL}")
        return v


class EpisodeEnrollRequest(BaseModel):
    patient: PatientIn
    condition_code: str
    risk_level: str
    discharge_at: datetime
    facility_name: str | None = None

    @field_validator("condition_code")
    @classmethod
    def check_condition(cls, v: str) -> str:
        if v not in ConditionCode.ALL:
            raise ValueError(f"condition_code must be one of {ConditionCode.ALL}")
        return v

    @field_validator("risk_level")
    @classmethod
    def check_risk(cls, v: str) -> str:
        if v not in RiskLevel.ORDER:
            raise ValueError(f"risk_level must be one of {RiskLevel.ORDER}")
        return v


class PatientResponse(BaseModel):
    id: UUID
    mrn: str
    first_name: str
    last_name: str
    primary_phone: str | None
    email: str | None
    language_code: str

    class Config:
        from_attributes = True


class EpisodeResponse(BaseModel):
    id: UUID
    patient_id: UUID
    condition_code: str
    risk_level: str
    discharge_at: datetime
    facility_name: str | None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class RiskUpgradeRequest(BaseModel):
    new_risk_level: str
    reason: str = Field(min_length=1)


class RiskUpgradeResponse(BaseModel):
    id: UUID
    episode_id: UUID
    old_risk_level: str
    new_risk_level: str
    reason: str
    upgraded_by: str
    upgraded_at: datetime

    class Config:
        from_attributes = True
