"""Imports every model so Base.metadata is complete (Alembic, tests)."""
from careloop.core.database import Base
from careloop.domains.episodes.models import Episode, Patient, RiskUpgrade
from careloop.domains.escalations.models import EscalationTask
from careloop.domains.jobs.models import Job, OperatorAlert
from careloop.domains.notifications.models import NotificationLog
from careloop.domains.outreach.models import OutreachAttempt, OutreachPlan, OutreachPlanTemplate
from careloop.domains.protocols.models import ProtocolAssignment, ProtocolConfig, ProtocolRule
from careloop.domains.risk.models import CheckInInteraction, RiskSignal
from careloop.domains.users.models import User

__all__ = [
    "Base",
    "CheckInInteraction",
    "Episode",
    "EscalationTask",
    "Job",
    "NotificationLog",
    "OperatorAlert",
    "OutreachAttempt",
    "OutreachPlan",
    "OutreachPlanTemplate",
    "Patient",
    "ProtocolAssignment",
    "ProtocolConfig",
    "ProtocolRule",
    "RiskSignal",
    "RiskUpgrade",
    "User",
]
