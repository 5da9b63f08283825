"""Transactional outbox, durable timers and the operator alert queue."""
import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from fastapi.encoders import jsonable_encoder
from sqlalchemy import and_, or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from careloop.core import clock
from careloop.core.config import settings
from careloop.domains.jobs.events import AlertKinds
from careloop.domains.jobs.models import Job, JobStatus, OperatorAlert

logger = logging.getLogger(__name__)


class EventBus:
    """
    Publishes events and schedules timers as rows in jobs.jobs.

    Rows are written in the caller's transaction, so an event is visible to
    the worker if and only if the state change that produced it commits.
    Publishing twice with the same idempotency key is a no-op.
    """

    def __init__(self, db: Session):
        self.db = db

    def publish(
        self,
        name: str,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        run_at: datetime | None = None,
    ) -> None:
        stmt = insert(Job).values(
            id=uuid4(),
            job_type=name,
            payload=jsonable_encoder(payload),
            run_at=run_at or clock.utcnow(),
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            idempotency_key=idempotency_key,
        )
        if idempotency_key:
            stmt = stmt.on_conflict_do_nothing(index_elements=["idempotency_key"])
        self.db.execute(stmt)
        logger.debug(f"Published {name} (key={idempotency_key}, run_at={run_at})")

    def schedule(
        self,
        name: str,
        payload: dict[str, Any],
        run_at: datetime,
        idempotency_key: str | None = None,
    ) -> None:
        """Schedule a durable timer. Handlers must re-check state when it fires."""
        self.publish(name, payload, idempotency_key=idempotency_key, run_at=run_at)


class JobQueue:
    """Worker-side view of the jobs table."""

    def __init__(self, db: Session):
        self.db = db

    def claim_due(self, limit: int) -> list[Job]:
        """
        Claim up to ``limit`` due jobs.

        Rows are locked with SKIP LOCKED so concurrent workers never claim the
        same job. Jobs left running by a crashed worker are reclaimed once
        their lock is older than JOB_LOCK_TIMEOUT_SECONDS.
        """
        now = clock.utcnow()
        stale_before = now - timedelta(seconds=settings.JOB_LOCK_TIMEOUT_SECONDS)
        jobs = (
            self.db.query(Job)
            .filter(
                or_(
                    and_(Job.status == JobStatus.PENDING, Job.run_at <= now),
                    and_(Job.status == JobStatus.RUNNING, Job.locked_at < stale_before),
                )
            )
            .order_by(Job.run_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        for job in jobs:
            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.attempts += 1
        self.db.commit()
        return jobs

    def get_job(self, job_id: UUID) -> Job | None:
        return self.db.query(Job).filter(Job.id == job_id).first()

    def complete(self, job_id: UUID) -> None:
        job = self.get_job(job_id)
        if not job:
            return
        job.status = JobStatus.DONE
        job.completed_at = clock.utcnow()
        job.last_error = None
        self.db.commit()

    def fail(self, job_id: UUID, error: str, retryable: bool = True) -> str | None:
        """
        Record a failed run.

        Retryable failures go back to pending with exponential backoff until
        max_attempts is reached, then the job is dead and an operator alert is
        raised. Returns the resulting status.
        """
        job = self.get_job(job_id)
        if not job:
            return None

        job.last_error = error
        job.locked_at = None
        if not retryable:
            job.status = JobStatus.FAILED
            job.completed_at = clock.utcnow()
        elif job.attempts >= job.max_attempts:
            job.status = JobStatus.DEAD
            job.completed_at = clock.utcnow()
            OperatorAlerts(self.db).raise_alert(
                AlertKinds.DEAD_JOB,
                f"Job {job.job_type} exhausted {job.attempts} attempts: {error}",
                {"job_id": job.id, "job_type": job.job_type, "payload": job.payload},
                commit=False,
            )
            logger.error(f"Job {job.id} ({job.job_type}) is dead after {job.attempts} attempts")
        else:
            delay = settings.JOB_RETRY_BACKOFF_SECONDS * (2 ** (job.attempts - 1))
            job.status = JobStatus.PENDING
            job.run_at = clock.utcnow() + timedelta(seconds=delay)
            logger.warning(f"Job {job.id} ({job.job_type}) failed, retrying in {delay}s: {error}")

        self.db.commit()
        return job.status


class OperatorAlerts:
    def __init__(self, db: Session):
        self.db = db

    def raise_alert(
        self,
        kind: str,
        message: str,
        payload: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> OperatorAlert:
        alert = OperatorAlert(
            id=uuid4(),
            kind=kind,
            message=message,
            payload=jsonable_encoder(payload or {}),
        )
        self.db.add(alert)
        logger.error(f"Operator alert [{kind}]: {message}")
        if commit:
            self.db.commit()
        return alert

    def list_open(self, skip: int = 0, limit: int = 100) -> list[OperatorAlert]:
        return (
            self.db.query(OperatorAlert)
            .filter(OperatorAlert.acknowledged_at.is_(None))
            .order_by(OperatorAlert.created_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def acknowledge(self, alert_id: UUID, user_id: UUID) -> OperatorAlert | None:
        alert = self.db.query(OperatorAlert).filter(OperatorAlert.id == alert_id).first()
        if not alert:
            return None
        if alert.acknowledged_at is None:
            alert.acknowledged_at = clock.utcnow()
            alert.acknowledged_by = user_id
            self.db.commit()
            self.db.refresh(alert)
        return alert
