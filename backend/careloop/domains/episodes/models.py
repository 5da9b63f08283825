import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from careloop.core.database import Base


class RiskLevel:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    # Ascending order; upgrades move right only
    ORDER = [LOW, MEDIUM, HIGH]

    @classmethod
    def rank(cls, level: str) -> int:
        return cls.ORDER.index(level)


class ConditionCode:
    HF = "HF"  # heart failure
    COPD = "COPD"
    AMI = "AMI"  # acute myocardial infarction
    PNA = "PNA"  # pneumonia
    OTHER = "OTHER"

    ALL = [HF, COPD, AMI, PNA, OTHER]


class LanguageCode:
    EN = "EN"
    ES = "ES"
    OTHER = "OTHER"

    ALL = [EN, ES, OTHER]


SYSTEM_AUTO = "SYSTEM_AUTO"


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = {"schema": "care"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mrn: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    primary_phone: Mapped[str | None] = mapped_column(String(32))
    email: Mapped[str | None] = mapped_column(String(255))
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, default=LanguageCode.EN)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    episodes: Mapped[list["Episode"]] = relationship("Episode", back_populates="patient")


class Episode(Base):
    """A post-discharge care-transition episode."""
    __tablename__ = "episodes"
    __table_args__ = {"schema": "care"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("care.patients.id"), nullable=False, index=True)
    condition_code: Mapped[str] = mapped_column(String(20), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    discharge_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    facility_name: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    patient: Mapped["Patient"] = relationship("Patient", back_populates="episodes")
    risk_upgrades: Mapped[list["RiskUpgrade"]] = relationship("RiskUpgrade", back_populates="episode", order_by="RiskUpgrade.upgraded_at")


class RiskUpgrade(Base):
    """Append-only record of a risk level change."""
    __tablename__ = "risk_upgrades"
    __table_args__ = {"schema": "care"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    episode_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("care.episodes.id"), nullable=False, index=True)
    old_risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    new_risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    upgraded_by: Mapped[str] = mapped_column(String(64), nullable=False)  # user id or SYSTEM_AUTO
    upgraded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    episode: Mapped["Episode"] = relationship("Episode", back_populates="risk_upgrades")
