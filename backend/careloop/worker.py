"""
Background worker: drains due events and timers from the jobs table.

Run with ``python -m careloop.worker``. Any number of workers may run
side by side; job claiming uses SKIP LOCKED.
"""
import logging
import sys
import time

from sqlalchemy.orm import Session, sessionmaker

from careloop.core.config import settings
from careloop.core.database import SessionLocal
from careloop.core.errors import CareLoopError, ConfigurationError, NotFoundError, ValidationError
from careloop.domains.jobs.events import AlertKinds
from careloop.domains.jobs.models import Job
from careloop.domains.jobs.service import JobQueue, OperatorAlerts
from careloop.handlers import HANDLERS

logger = logging.getLogger(__name__)

# Retrying cannot fix these
NON_RETRYABLE = (ValidationError, NotFoundError, ConfigurationError)


def process_job(session_factory: sessionmaker, job_id, job_type: str, payload: dict) -> str:
    """Run one claimed job in its own session and record the result."""
    handler = HANDLERS.get(job_type)
    db: Session = session_factory()
    try:
        if handler is None:
            logger.debug(f"No handler for {job_type}, job {job_id} completed")
        else:
            handler(db, payload)
    except NON_RETRYABLE as e:
        db.rollback()
        logger.warning(f"Job {job_id} ({job_type}) failed permanently: {e.message}")
        status = JobQueue(db).fail(job_id, f"{type(e).__name__}: {e.message}", retryable=False)
        if isinstance(e, ConfigurationError):
            OperatorAlerts(db).raise_alert(AlertKinds.CONFIGURATION, e.message, {"job_id": job_id, "job_type": job_type})
        return status
    except CareLoopError as e:
        db.rollback()
        return JobQueue(db).fail(job_id, f"{type(e).__name__}: {e.message}", retryable=True)
    except Exception as e:
        db.rollback()
        logger.exception(f"Job {job_id} ({job_type}) raised unexpectedly")
        return JobQueue(db).fail(job_id, f"{type(e).__name__}: {e}", retryable=True)
    else:
        JobQueue(db).complete(job_id)
        return "done"
    finally:
        db.close()


def run_once(session_factory: sessionmaker = SessionLocal, batch_size: int | None = None) -> int:
    """Claim and process one batch of due jobs. Returns how many were processed."""
    db: Session = session_factory()
    try:
        jobs: list[Job] = JobQueue(db).claim_due(batch_size or settings.WORKER_BATCH_SIZE)
        claimed = [(job.id, job.job_type, dict(job.payload or {})) for job in jobs]
    finally:
        db.close()

    for job_id, job_type, payload in claimed:
        process_job(session_factory, job_id, job_type, payload)
    return len(claimed)


def run_forever(session_factory: sessionmaker = SessionLocal) -> None:
    logger.info("CareLoop worker started")
    while True:
        processed = run_once(session_factory)
        if processed == 0:
            time.sleep(settings.WORKER_POLL_INTERVAL_SECONDS)


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    try:
        run_forever()
    except KeyboardInterrupt:
        logger.info("CareLoop worker stopped")


if __name__ == "__main__":
    main()
