"""Escalation Task Engine: task creation, round-robin assignment, SLA monitoring, resolution."""
import logging
import math
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.config import settings
from careloop.core.errors import ConflictError, NotFoundError, ValidationError
from careloop.domains.escalations.models import (
    FOLLOW_UP_SLA_MINUTES,
    SEVERITY_PRIORITY,
    SLA_MINUTES,
    EscalationTask,
    ResolutionOutcome,
    Severity,
    TaskStatus,
)
from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.notifications.models import NotificationType
from careloop.domains.users.service import UserDirectory

logger = logging.getLogger(__name__)

FOLLOW_UP_REASON = "FOLLOW_UP_TELEVISIT"


class EscalationTaskEngine:
    def __init__(self, db: Session):
        self.db = db
        self.bus = EventBus(db)
        self.users = UserDirectory(db)

    # --- Queries ---

    def get_task(self, task_id: UUID) -> EscalationTask | None:
        return self.db.query(EscalationTask).filter(EscalationTask.id == task_id).first()

    def get_task_by_dedupe_key(self, dedupe_key: str) -> EscalationTask | None:
        return self.db.query(EscalationTask).filter(EscalationTask.dedupe_key == dedupe_key).first()

    def list_tasks(
        self,
        status: str | None = None,
        assigned_to: UUID | None = None,
        episode_id: UUID | None = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[EscalationTask], int]:
        query = self.db.query(EscalationTask)
        if status:
            query = query.filter(EscalationTask.status == status)
        if assigned_to:
            query = query.filter(EscalationTask.assigned_to_user_id == assigned_to)
        if episode_id:
            query = query.filter(EscalationTask.episode_id == episode_id)

        total = query.count()
        items = query.order_by(EscalationTask.sla_due_at).offset(skip).limit(limit).all()
        return items, total

    def list_open_tasks_for_episode(self, episode_id: UUID) -> list[EscalationTask]:
        return (
            self.db.query(EscalationTask)
            .filter(EscalationTask.episode_id == episode_id, EscalationTask.status.in_(TaskStatus.ACTIVE))
            .all()
        )

    def list_unassigned_open_tasks(self) -> list[EscalationTask]:
        return (
            self.db.query(EscalationTask)
            .filter(
                EscalationTask.status == TaskStatus.OPEN,
                EscalationTask.assigned_to_user_id.is_(None),
            )
            .order_by(EscalationTask.sla_due_at)
            .all()
        )

    # --- Creation ---

    def create_task(
        self,
        episode_id: UUID,
        severity: str,
        reason_codes: list[str],
        source_attempt_id: UUID | None = None,
        interaction_id: UUID | None = None,
        manual: bool = False,
        dedupe_key: str | None = None,
    ) -> EscalationTask:
        """
        Open an escalation task with an SLA derived from its severity.

        LOW tasks are only accepted for manual creation. A task with the same
        dedupe_key is returned instead of creating a duplicate.
        """
        if severity not in Severity.ALL:
            raise ValidationError(f"Unknown severity {severity}")
        if severity == Severity.LOW and not manual:
            raise ValidationError("LOW severity tasks can only be created manually")
        if not reason_codes:
            raise ValidationError("At least one reason code is required")

        if dedupe_key:
            existing = self.get_task_by_dedupe_key(dedupe_key)
            if existing:
                logger.info(f"Task for {dedupe_key} already exists ({existing.id})")
                return existing

        task = self._new_task(
            episode_id,
            severity,
            reason_codes,
            SLA_MINUTES[severity],
            source_attempt_id=source_attempt_id,
            interaction_id=interaction_id,
            dedupe_key=dedupe_key,
        )
        try:
            self.db.add(task)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_task_by_dedupe_key(dedupe_key) if dedupe_key else None
            if existing:
                return existing
            raise

        self._publish_created(task)
        self.db.commit()
        self.db.refresh(task)
        logger.info(f"Created {severity} task {task.id} for episode {episode_id}, due {task.sla_due_at}")
        return task

    # --- Assignment ---

    def assign_round_robin(self, task_id: UUID) -> UUID | None:
        """
        Assign the task to the active nurse whose last assignment is oldest.

        Nurses never assigned come first, ties broken by created_at ascending,
        so a roster ordered by creation time rotates instead of always
        picking its first member.

        Returns the assignee, or None when the task was not assigned. With no
        nurse available an assignment retry timer is scheduled.
        """
        task = self.get_task(task_id)
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status in TaskStatus.TERMINAL:
            logger.info(f"Task {task.id} is {task.status}, assignment skipped")
            return None
        if task.assigned_to_user_id:
            return task.assigned_to_user_id

        now = clock.utcnow()
        nurse = self.users.next_nurse_for_assignment()
        if not nurse:
            retry_at = now + timedelta(minutes=settings.ASSIGNMENT_RETRY_MINUTES)
            self.bus.schedule(
                Events.TASK_ASSIGNMENT_RETRY,
                {"task_id": task.id},
                run_at=retry_at,
                idempotency_key=f"assign_retry:{task.id}:{retry_at:%Y%m%d%H%M}",
            )
            self.db.commit()
            logger.warning(f"No active nurse for task {task.id}, retrying at {retry_at}")
            return None

        return self._assign(task, nurse.id, now, nurse=nurse)

    def assign_to(self, task_id: UUID, user_id: UUID) -> EscalationTask:
        """Manual assignment by a care admin."""
        task = self.get_task(task_id)
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status in TaskStatus.TERMINAL:
            raise ConflictError(f"Task {task.id} is {task.status}")
        user = self.users.get_user(user_id)
        if not user or not user.is_active:
            raise ValidationError(f"User {user_id} is not an active user")

        now = clock.utcnow()
        task.assigned_to_user_id = user.id
        task.assigned_at = now
        user.last_assigned_at = now
        self._publish_assigned(task)
        self.db.commit()
        self.db.refresh(task)
        return task

    def retry_unassigned(self) -> int:
        """Try to assign every open unassigned task. Returns how many got an assignee."""
        assigned = 0
        for task in self.list_unassigned_open_tasks():
            if self.assign_round_robin(task.id):
                assigned += 1
        return assigned

    def _assign(self, task: EscalationTask, user_id: UUID, now: datetime, nurse=None) -> UUID | None:
        # Conditional update: a concurrent assigner that got there first wins
        result = self.db.execute(
            update(EscalationTask)
            .where(
                EscalationTask.id == task.id,
                EscalationTask.assigned_to_user_id.is_(None),
                EscalationTask.status.in_(TaskStatus.ACTIVE),
            )
            .values(assigned_to_user_id=user_id, assigned_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            self.db.refresh(task)
            logger.info(f"Task {task.id} was assigned concurrently to {task.assigned_to_user_id}")
            return task.assigned_to_user_id

        if nurse is not None:
            nurse.last_assigned_at = now
        task.assigned_to_user_id = user_id
        task.assigned_at = now
        self._publish_assigned(task)
        self.db.commit()
        logger.info(f"Task {task.id} assigned to nurse {user_id}")
        return user_id

    # --- SLA monitoring ---

    def start_sla_monitor(self, task_id: UUID) -> datetime | None:
        """
        Schedule the SLA warning timer at 75% of the SLA.

        Returns the warning time, or None when monitoring is skipped
        (sla_minutes == 0, or the task is already closed).
        """
        task = self.get_task(task_id)
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        if task.sla_minutes == 0:
            logger.info(f"Task {task.id} has no SLA, monitoring skipped")
            return None
        if task.status in TaskStatus.TERMINAL:
            return None

        warning_at = task.created_at + timedelta(minutes=math.floor(task.sla_minutes * 0.75))
        self.bus.schedule(
            Events.TASK_SLA_WARNING_DUE,
            {"task_id": task.id},
            run_at=warning_at,
            idempotency_key=f"sla_warning:{task.id}",
        )
        self.db.commit()
        return warning_at

    def handle_sla_warning(self, task_id: UUID) -> bool:
        """
        Fire the SLA warning if the task is still open.

        Closed tasks get neither the warning nor the breach timer. Returns
        True when the warning was sent.
        """
        task = self._lock_task(task_id)
        if task.status in TaskStatus.TERMINAL:
            logger.info(f"Task {task.id} is {task.status}, SLA warning suppressed")
            self.db.rollback()
            return False
        if task.warning_sent_at:
            self.db.rollback()
            return False

        task.warning_sent_at = clock.utcnow()
        self._notify_assignee(
            task,
            NotificationType.SLA_WARNING,
            f"SLA warning: {task.severity} task for episode {task.episode_id} is due at {task.sla_due_at:%H:%M %Z}.",
        )
        self.bus.publish(Events.TASK_SLA_WARNING, {"task_id": task.id}, idempotency_key=f"sla_warning_fired:{task.id}")
        self.bus.schedule(
            Events.TASK_SLA_BREACH_DUE,
            {"task_id": task.id},
            run_at=task.sla_due_at,
            idempotency_key=f"sla_breach:{task.id}",
        )
        self.db.commit()
        logger.warning(f"SLA warning for task {task.id} (due {task.sla_due_at})")
        return True

    def handle_sla_breach(self, task_id: UUID) -> bool:
        task = self._lock_task(task_id)
        if task.status in TaskStatus.TERMINAL:
            logger.info(f"Task {task.id} is {task.status}, SLA breach suppressed")
            self.db.rollback()
            return False
        if task.breach_sent_at:
            self.db.rollback()
            return False

        task.breach_sent_at = clock.utcnow()
        self._notify_assignee(
            task,
            NotificationType.SLA_BREACH,
            f"SLA BREACHED: {task.severity} task for episode {task.episode_id} was due at {task.sla_due_at:%H:%M %Z}.",
        )
        self.bus.publish(Events.TASK_SLA_BREACH, {"task_id": task.id}, idempotency_key=f"sla_breach_fired:{task.id}")
        self.db.commit()
        logger.error(f"SLA breached for task {task.id} (assignee {task.assigned_to_user_id})")
        return True

    # --- Nurse actions ---

    def pick_up(self, task_id: UUID, user_id: UUID) -> EscalationTask:
        task = self._lock_task(task_id)
        if task.status != TaskStatus.OPEN:
            raise ConflictError(f"Task {task.id} is {task.status} and cannot be picked up")

        now = clock.utcnow()
        task.status = TaskStatus.IN_PROGRESS
        task.picked_up_at = now
        if task.assigned_to_user_id != user_id:
            task.assigned_to_user_id = user_id
            task.assigned_at = now
        self.db.commit()
        self.db.refresh(task)
        return task

    def resolve(
        self,
        task_id: UUID,
        outcome_code: str,
        notes: str | None,
        resolved_by: UUID,
    ) -> tuple[EscalationTask, EscalationTask | None]:
        """
        Resolve a task with an outcome code.

        TELEVISIT_SCHEDULED also opens a LOW follow-up task with a 7-day SLA
        in the same transaction. Returns (task, follow_up or None).
        """
        if outcome_code not in ResolutionOutcome.ALL:
            raise ValidationError(f"Unknown resolution outcome {outcome_code}")

        task = self._lock_task(task_id)
        if task.status in TaskStatus.TERMINAL:
            raise ConflictError(f"Task {task.id} is already {task.status}")

        now = clock.utcnow()
        task.status = TaskStatus.RESOLVED
        task.resolution_outcome_code = outcome_code
        task.resolution_notes = notes
        task.resolved_at = now
        task.resolved_by_user_id = resolved_by

        follow_up = None
        if outcome_code == ResolutionOutcome.TELEVISIT_SCHEDULED:
            follow_up = self._new_task(
                task.episode_id,
                Severity.LOW,
                [FOLLOW_UP_REASON],
                FOLLOW_UP_SLA_MINUTES,
                parent_task_id=task.id,
                dedupe_key=f"follow_up:{task.id}",
            )
            self.db.add(follow_up)
            self.db.flush()
            self._publish_created(follow_up)

        self.bus.publish(
            Events.TASK_RESOLVED,
            {"task_id": task.id, "outcome_code": outcome_code, "follow_up_task_id": follow_up.id if follow_up else None},
            idempotency_key=f"task_resolved:{task.id}",
        )
        self.db.commit()
        self.db.refresh(task)
        if follow_up:
            self.db.refresh(follow_up)
        logger.info(f"Task {task.id} resolved as {outcome_code} by {resolved_by}")
        return task, follow_up

    def cancel(self, task_id: UUID, reason: str) -> EscalationTask:
        task = self._lock_task(task_id)
        if task.status in TaskStatus.TERMINAL:
            raise ConflictError(f"Task {task.id} is already {task.status}")

        task.status = TaskStatus.CANCELLED
        task.resolution_notes = reason
        task.resolved_at = clock.utcnow()
        self.db.commit()
        self.db.refresh(task)
        logger.info(f"Task {task.id} cancelled: {reason}")
        return task

    # --- Helpers ---

    def _lock_task(self, task_id: UUID) -> EscalationTask:
        task = self.db.query(EscalationTask).filter(EscalationTask.id == task_id).with_for_update().first()
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def _new_task(
        self,
        episode_id: UUID,
        severity: str,
        reason_codes: list[str],
        sla_minutes: int,
        source_attempt_id: UUID | None = None,
        interaction_id: UUID | None = None,
        parent_task_id: UUID | None = None,
        dedupe_key: str | None = None,
    ) -> EscalationTask:
        now = clock.utcnow()
        return EscalationTask(
            id=uuid4(),
            episode_id=episode_id,
            source_attempt_id=source_attempt_id,
            interaction_id=interaction_id,
            parent_task_id=parent_task_id,
            severity=severity,
            priority=SEVERITY_PRIORITY[severity],
            reason_codes=list(reason_codes),
            sla_minutes=sla_minutes,
            sla_due_at=now + timedelta(minutes=sla_minutes),
            status=TaskStatus.OPEN,
            dedupe_key=dedupe_key,
            created_at=now,
        )

    def _publish_created(self, task: EscalationTask) -> None:
        self.bus.publish(Events.TASK_CREATED, {"task_id": task.id}, idempotency_key=f"task_created:{task.id}")

    def _publish_assigned(self, task: EscalationTask) -> None:
        self.bus.publish(
            Events.TASK_ASSIGNED,
            {"task_id": task.id, "user_id": task.assigned_to_user_id},
            idempotency_key=f"task_assigned:{task.id}:{task.assigned_to_user_id}",
        )
        self._notify_assignee(
            task,
            NotificationType.TASK_ASSIGNED,
            f"New {task.severity} escalation task for episode {task.episode_id}: "
            f"{', '.join(task.reason_codes)}. Due {task.sla_due_at:%Y-%m-%d %H:%M %Z}.",
        )

    def _notify_assignee(self, task: EscalationTask, notification_type: str, content: str) -> None:
        if not task.assigned_to_user_id:
            logger.warning(f"Task {task.id} has no assignee for {notification_type} notification")
            return
        self.bus.publish(
            Events.NOTIFICATION_SEND,
            {
                "user_id": task.assigned_to_user_id,
                "notification_type": notification_type,
                "content": content,
                "task_id": task.id,
                "episode_id": task.episode_id,
            },
            idempotency_key=f"notify:{notification_type}:{task.id}:{task.assigned_to_user_id}",
        )
