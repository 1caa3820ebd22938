"""
Hourly sweeps run by the rq worker.

The exam sweep runs at minute :00 and the training sweep at :30. Each run
schedules its successor, so starting the worker once keeps both going.
"""
import logging
from datetime import datetime, timedelta, timezone

from rq import get_current_job

from nomaqbank.core.database import SessionLocal
from nomaqbank.jobs.queue import queue
from nomaqbank.services.exam_sessions import close_expired_participations
from nomaqbank.services.training import close_expired_sessions

logger = logging.getLogger(__name__)

EXAM_SWEEP_MINUTE = 0
TRAINING_SWEEP_MINUTE = 30


def next_run(now: datetime, minute: int) -> datetime:
    """First moment strictly after ``now`` that falls on ``minute`` past the hour."""
    candidate = now.replace(minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(hours=1)
    return candidate


def _run(kind: str, sweep, session_factory):
    job = get_current_job()
    if job is not None:
        job.meta.update({"state": "running", "kind": kind})
        job.save_meta()
    db = session_factory()
    try:
        result = sweep(db)
    except Exception:
        if job is not None:
            job.meta.update({"state": "failed"})
            job.save_meta()
        logger.exception("%s sweep failed", kind)
        raise
    finally:
        db.close()
    if job is not None:
        job.meta.update({"state": "done", **result})
        job.save_meta()
    logger.info("%s sweep finished: %s", kind, result)
    return result


def run_exam_sweep(reschedule: bool = True, session_factory=SessionLocal):
    try:
        return _run("exam", close_expired_participations, session_factory)
    finally:
        if reschedule:
            schedule_exam_sweep()


def run_training_sweep(reschedule: bool = True, session_factory=SessionLocal):
    try:
        return _run("training", close_expired_sessions, session_factory)
    finally:
        if reschedule:
            schedule_training_sweep()


def _schedule(kind: str, func, minute: int, now: datetime | None):
    run_at = next_run(now or datetime.now(timezone.utc), minute)
    job = queue.enqueue_at(run_at, func, job_id=f"sweep-{kind}-{run_at:%Y%m%d%H%M}")
    logger.info("Scheduled %s sweep %s at %s", kind, job.id, run_at.isoformat())
    return job


def schedule_exam_sweep(now: datetime | None = None):
    return _schedule("exams", run_exam_sweep, EXAM_SWEEP_MINUTE, now)


def schedule_training_sweep(now: datetime | None = None):
    return _schedule("training", run_training_sweep, TRAINING_SWEEP_MINUTE, now)
