import logging
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.errors import NotFoundError, ValidationError
from careloop.domains.episodes.models import Episode, Patient, RiskLevel, RiskUpgrade
from careloop.domains.episodes.schemas import EpisodeEnrollRequest
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.protocols.service import ProtocolService

logger = logging.getLogger(__name__)


class EpisodeService:
    """Episode enrollment and typed risk upgrades."""

    def __init__(self, db: Session):
        self.db = db
        self.bus = EventBus(db)

    def get_episode(self, episode_id: UUID) -> Episode | None:
        return self.db.query(Episode).filter(Episode.id == episode_id).first()

    def require_episode(self, episode_id: UUID) -> Episode:
        episode = self.get_episode(episode_id)
        if not episode:
            raise NotFoundError(f"Episode {episode_id} not found")
        return episode

    def lock_episode(self, episode_id: UUID) -> Episode:
        """Row-lock the episode and re-read it, replacing any stale copy in the session."""
        episode = (
            self.db.query(Episode)
            .filter(Episode.id == episode_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not episode:
            raise NotFoundError(f"Episode {episode_id} not found")
        return episode

    def get_patient_by_mrn(self, mrn: str) -> Patient | None:
        return self.db.query(Patient).filter(Patient.mrn == mrn).first()

    def enroll(self, request: EpisodeEnrollRequest, enrolled_by: str | None = None) -> Episode:
        """
        Enroll a discharged patient.

        Creates (or updates) the patient, the episode and its initial protocol
        assignment, and publishes patient.discharged in the same transaction.
        """
        patient = self.get_patient_by_mrn(request.patient.mrn)
        if patient:
            patient.first_name = request.patient.first_name
            patient.last_name = request.patient.last_name
            patient.primary_phone = request.patient.primary_phone
            patient.email = request.patient.email
            patient.language_code = request.patient.language_code
        else:
            patient = Patient(id=uuid4(), **request.patient.model_dump())
            self.db.add(patient)

        episode = Episode(
            id=uuid4(),
            patient_id=patient.id,
            condition_code=request.condition_code,
            risk_level=request.risk_level,
            discharge_at=request.discharge_at,
            facility_name=request.facility_name,
        )
        self.db.add(episode)
        self.db.flush()

        ProtocolService(self.db).assign_protocol(
            episode.id,
            episode.condition_code,
            episode.risk_level,
            assigned_by=enrolled_by,
            commit=False,
        )
        self.bus.publish(
            Events.PATIENT_DISCHARGED,
            {
                "episode_id": episode.id,
                "condition_code": episode.condition_code,
                "risk_level": episode.risk_level,
                "discharge_at": episode.discharge_at,
                "language_code": request.patient.language_code,
            },
            idempotency_key=f"discharged:{episode.id}",
        )
        self.db.commit()
        self.db.refresh(episode)
        logger.info(f"Enrolled episode {episode.id} ({episode.condition_code}/{episode.risk_level})")
        return episode

    def list_risk_upgrades(self, episode_id: UUID) -> list[RiskUpgrade]:
        return (
            self.db.query(RiskUpgrade)
            .filter(RiskUpgrade.episode_id == episode_id)
            .order_by(RiskUpgrade.upgraded_at)
            .all()
        )

    def get_last_upgrade(self, episode_id: UUID) -> RiskUpgrade | None:
        return (
            self.db.query(RiskUpgrade)
            .filter(RiskUpgrade.episode_id == episode_id)
            .order_by(RiskUpgrade.upgraded_at.desc())
            .first()
        )

    def upgrade_risk_level(
        self,
        episode_id: UUID,
        new_risk_level: str,
        reason: str,
        upgraded_by: str,
        commit: bool = True,
    ) -> RiskUpgrade:
        """
        Raise an episode's risk level and record why.

        Only strictly higher levels are accepted. Publishes
        episode.risk_upgraded so the protocol assignment and outreach plan
        follow the new level.
        """
        if new_risk_level not in RiskLevel.ORDER:
            raise ValidationError(f"Unknown risk level {new_risk_level}")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a risk upgrade")

        episode = self.lock_episode(episode_id)
        old_risk_level = episode.risk_level
        if RiskLevel.rank(new_risk_level) <= RiskLevel.rank(old_risk_level):
            raise ValidationError(
                f"Risk level can only be raised (current {old_risk_level}, requested {new_risk_level})"
            )

        upgrade = RiskUpgrade(
            id=uuid4(),
            episode_id=episode.id,
            old_risk_level=old_risk_level,
            new_risk_level=new_risk_level,
            reason=reason.strip(),
            upgraded_by=str(upgraded_by),
            upgraded_at=clock.utcnow(),
        )
        episode.risk_level = new_risk_level
        self.db.add(upgrade)
        self.bus.publish(
            Events.EPISODE_RISK_UPGRADED,
            {
                "episode_id": episode.id,
                "upgrade_id": upgrade.id,
                "old_risk_level": old_risk_level,
                "new_risk_level": new_risk_level,
            },
            idempotency_key=f"risk_upgraded:{upgrade.id}",
        )
        logger.info(f"Episode {episode.id} risk {old_risk_level} -> {new_risk_level} by {upgraded_by}")

        if commit:
            self.db.commit()
            self.db.refresh(upgrade)
        return upgrade
