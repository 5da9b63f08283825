"""
Event and timer handlers run by the worker.

Each handler receives its own session and the job payload. Handlers are
idempotent: jobs are delivered at least once and timers re-check state
when they fire.
"""
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from careloop.core.errors import ConflictError, NotFoundError
from careloop.domains.episodes.models import SYSTEM_AUTO, RiskLevel
from careloop.domains.episodes.service import EpisodeService
from careloop.domains.escalations.service import EscalationTaskEngine
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.notifications.models import NotificationType
from careloop.domains.notifications.service import NotificationDispatcher
from careloop.domains.outreach.models import AttemptStatus
from careloop.domains.outreach.service import OutreachPlanManager
from careloop.domains.protocols.service import ProtocolService
from careloop.domains.risk.service import RiskDecisionAdapter

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict[str, Any]], None]


def _id(payload: dict[str, Any], key: str) -> UUID:
    return UUID(str(payload[key]))


def handle_patient_discharged(db: Session, payload: dict[str, Any]) -> None:
    discharge_at = payload.get("discharge_at")
    OutreachPlanManager(db).create_plan(
        _id(payload, "episode_id"),
        condition_code=payload.get("condition_code"),
        risk_level=payload.get("risk_level"),
        discharge_at=datetime.fromisoformat(discharge_at) if discharge_at else None,
        language_code=payload.get("language_code"),
    )


def handle_attempt_due(db: Session, payload: dict[str, Any]) -> None:
    OutreachPlanManager(db).dispatch_attempt(_id(payload, "attempt_id"))


def handle_attempt_timeout(db: Session, payload: dict[str, Any]) -> None:
    manager = OutreachPlanManager(db)
    attempt = manager.get_attempt(_id(payload, "attempt_id"))
    if attempt and attempt.status == AttemptStatus.IN_PROGRESS:
        manager.record_attempt_outcome(attempt.id, AttemptStatus.NO_CONTACT, reason_code="NO_RESPONSE")


def handle_attempt_outcome(db: Session, payload: dict[str, Any]) -> None:
    OutreachPlanManager(db).record_attempt_outcome(
        _id(payload, "attempt_id"),
        payload["outcome"],
        payload.get("reason_code"),
    )


def handle_risk_signal(db: Session, payload: dict[str, Any]) -> None:
    RiskDecisionAdapter(db).handle_risk_signal(_id(payload, "signal_id"))


def handle_task_created(db: Session, payload: dict[str, Any]) -> None:
    engine = EscalationTaskEngine(db)
    task_id = _id(payload, "task_id")
    engine.start_sla_monitor(task_id)
    engine.assign_round_robin(task_id)


def handle_assignment_retry(db: Session, payload: dict[str, Any]) -> None:
    EscalationTaskEngine(db).assign_round_robin(_id(payload, "task_id"))


def handle_nurse_activated(db: Session, payload: dict[str, Any]) -> None:
    assigned = EscalationTaskEngine(db).retry_unassigned()
    logger.info(f"Nurse {payload.get('user_id')} activated, {assigned} waiting tasks assigned")


def handle_sla_warning_due(db: Session, payload: dict[str, Any]) -> None:
    EscalationTaskEngine(db).handle_sla_warning(_id(payload, "task_id"))


def handle_sla_breach_due(db: Session, payload: dict[str, Any]) -> None:
    EscalationTaskEngine(db).handle_sla_breach(_id(payload, "task_id"))


def handle_episode_risk_upgraded(db: Session, payload: dict[str, Any]) -> None:
    """
    Follow a risk upgrade through the rest of the system.

    The protocol assignment and outreach plan move to the new level, assigned
    nurses are told, and a rise to HIGH triggers an immediate check-in.
    """
    episode_id = _id(payload, "episode_id")
    old_level = payload["old_risk_level"]
    new_level = payload["new_risk_level"]
    episode = EpisodeService(db).require_episode(episode_id)

    assignment = ProtocolService(db).get_active_assignment(episode_id)
    if not assignment or assignment.risk_level != new_level:
        ProtocolService(db).assign_protocol(episode_id, episode.condition_code, new_level, assigned_by=SYSTEM_AUTO)

    manager = OutreachPlanManager(db)
    manager.apply_risk_change(episode_id, episode.condition_code, new_level)

    if new_level == RiskLevel.HIGH and old_level != RiskLevel.HIGH:
        try:
            manager.trigger_now(episode_id)
        except (ConflictError, NotFoundError) as e:
            logger.info(f"Immediate check-in for episode {episode_id} not triggered: {e.message}")

    bus = EventBus(db)
    for task in EscalationTaskEngine(db).list_open_tasks_for_episode(episode_id):
        if not task.assigned_to_user_id:
            continue
        bus.publish(
            Events.NOTIFICATION_SEND,
            {
                "user_id": task.assigned_to_user_id,
                "notification_type": NotificationType.RISK_UPGRADED,
                "content": f"Episode {episode_id} risk raised {old_level} -> {new_level}. Review task {task.id}.",
                "task_id": task.id,
                "episode_id": episode_id,
            },
            idempotency_key=f"notify:risk_upgraded:{payload.get('upgrade_id')}:{task.id}",
        )
    db.commit()


def handle_notification_send(db: Session, payload: dict[str, Any]) -> None:
    NotificationDispatcher(db).send_to_user(
        _id(payload, "user_id"),
        payload["content"],
        payload["notification_type"],
        channel=payload.get("channel"),
        task_id=_id(payload, "task_id") if payload.get("task_id") else None,
        episode_id=_id(payload, "episode_id") if payload.get("episode_id") else None,
    )


def handle_notification_retry(db: Session, payload: dict[str, Any]) -> None:
    NotificationDispatcher(db).retry(_id(payload, "notification_id"))


HANDLERS: dict[str, Handler] = {
    Events.PATIENT_DISCHARGED: handle_patient_discharged,
    Events.OUTREACH_ATTEMPT_DUE: handle_attempt_due,
    Events.OUTREACH_ATTEMPT_TIMEOUT: handle_attempt_timeout,
    Events.ATTEMPT_OUTCOME: handle_attempt_outcome,
    Events.RISK_SIGNAL: handle_risk_signal,
    Events.TASK_CREATED: handle_task_created,
    Events.TASK_ASSIGNMENT_RETRY: handle_assignment_retry,
    Events.NURSE_ACTIVATED: handle_nurse_activated,
    Events.TASK_SLA_WARNING_DUE: handle_sla_warning_due,
    Events.TASK_SLA_BREACH_DUE: handle_sla_breach_due,
    Events.EPISODE_RISK_UPGRADED: handle_episode_risk_upgraded,
    Events.NOTIFICATION_SEND: handle_notification_send,
    Events.NOTIFICATION_RETRY: handle_notification_retry,
}
