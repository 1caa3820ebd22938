"""Exam definitions: question set, time window and pause policy."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from nomaqbank.core.clock import resolve
from nomaqbank.core.config import settings
from nomaqbank.core.errors import InvalidInput, InvalidState, NotFound
from nomaqbank.models.orm import (
    AccessCategory, AccessGrant, Exam, ExamAnswer, ExamParticipation, ParticipationStatus, Question, User,
)
from nomaqbank.services import entitlements
from nomaqbank.services.pause import pause_policy
from nomaqbank.services.users import ensure_admin

logger = logging.getLogger(__name__)


def completion_time(question_count: int) -> int:
    return question_count * settings.SECONDS_PER_QUESTION


def get_exam(db: Session, exam_id: int) -> Exam:
    exam = db.get(Exam, exam_id)
    if exam is None:
        raise NotFound("Exam")
    return exam


def _validate(db: Session, title: str, start_date: datetime, end_date: datetime, question_ids: List[int]) -> None:
    if not title or not title.strip():
        raise InvalidInput("Exam title is required")
    if start_date >= end_date:
        raise InvalidInput("Exam start date must be before its end date")
    if not question_ids:
        raise InvalidInput("An exam needs at least one question")
    if len(set(question_ids)) != len(question_ids):
        raise InvalidInput("An exam cannot contain the same question twice")
    found = set(db.execute(select(Question.id).where(Question.id.in_(question_ids))).scalars())
    missing = [qid for qid in question_ids if qid not in found]
    if missing:
        raise InvalidInput(f"Unknown question ids: {missing}")


def create_exam(
    db: Session,
    admin: User,
    *,
    title: str,
    start_date: datetime,
    end_date: datetime,
    question_ids: List[int],
    description: Optional[str] = None,
    enable_pause: bool = False,
    pause_duration_minutes: Optional[int] = None,
) -> Exam:
    ensure_admin(admin)
    _validate(db, title, start_date, end_date, question_ids)
    exam = Exam(
        title=title.strip(),
        description=description,
        start_date=start_date,
        end_date=end_date,
        question_ids=list(question_ids),
        completion_time=completion_time(len(question_ids)),
        enable_pause=enable_pause,
        pause_duration_minutes=pause_policy(enable_pause, pause_duration_minutes),
        is_active=True,
        created_by=admin.id,
    )
    db.add(exam)
    db.commit()
    db.refresh(exam)
    logger.info("Exam %s created by admin %s with %s questions", exam.id, admin.id, len(question_ids))
    return exam


def update_exam(
    db: Session,
    admin: User,
    exam_id: int,
    *,
    title: str,
    start_date: datetime,
    end_date: datetime,
    question_ids: List[int],
    description: Optional[str] = None,
    enable_pause: bool = False,
    pause_duration_minutes: Optional[int] = None,
) -> Exam:
    ensure_admin(admin)
    exam = get_exam(db, exam_id)
    _validate(db, title, start_date, end_date, question_ids)
    if list(question_ids) != list(exam.question_ids):
        running = db.execute(
            select(func.count(ExamParticipation.id)).where(
                ExamParticipation.exam_id == exam.id,
                ExamParticipation.status == ParticipationStatus.IN_PROGRESS,
            )
        ).scalar_one()
        if running:
            raise InvalidState(f"{running} participation(s) in progress; the question set cannot change")
    exam.title = title.strip()
    exam.description = description
    exam.start_date = start_date
    exam.end_date = end_date
    exam.question_ids = list(question_ids)
    exam.completion_time = completion_time(len(question_ids))
    exam.enable_pause = enable_pause
    exam.pause_duration_minutes = pause_policy(enable_pause, pause_duration_minutes)
    db.commit()
    db.refresh(exam)
    return exam


def delete_exam(db: Session, admin: User, exam_id: int) -> Dict[str, int]:
    ensure_admin(admin)
    exam = get_exam(db, exam_id)
    participation_ids = list(db.execute(
        select(ExamParticipation.id).where(ExamParticipation.exam_id == exam.id)
    ).scalars())
    answers = 0
    if participation_ids:
        answers = db.execute(
            select(func.count(ExamAnswer.id)).where(ExamAnswer.participation_id.in_(participation_ids))
        ).scalar_one()
    db.delete(exam)
    db.commit()
    logger.info("Exam %s deleted with %s participations", exam_id, len(participation_ids))
    return {"deleted_participations": len(participation_ids), "deleted_answers": answers}


def set_exam_active(db: Session, admin: User, exam_id: int, active: bool) -> Exam:
    ensure_admin(admin)
    exam = get_exam(db, exam_id)
    exam.is_active = active
    db.commit()
    db.refresh(exam)
    return exam


def list_exams(db: Session, admin: User) -> List[Exam]:
    ensure_admin(admin)
    return list(db.execute(select(Exam).order_by(Exam.start_date.desc())).scalars())


def list_available_exams(db: Session, user: User, now: datetime | None = None) -> List[Exam]:
    """Active exams open right now; empty for users without exam access."""
    now = resolve(now)
    if not entitlements.has_access(db, user, AccessCategory.EXAM, now):
        return []
    return list(db.execute(
        select(Exam)
        .where(Exam.is_active.is_(True), Exam.start_date <= now, Exam.end_date >= now)
        .order_by(Exam.end_date)
    ).scalars())


def exam_stats(db: Session, admin: User, now: datetime | None = None) -> Dict[str, Any]:
    ensure_admin(admin)
    now = resolve(now)
    exams = list(db.execute(select(Exam)).scalars())
    eligible = db.execute(
        select(func.count(AccessGrant.id)).where(
            AccessGrant.category == AccessCategory.EXAM, AccessGrant.expires_at > now
        )
    ).scalar_one()
    return {
        "total": len(exams),
        "active": sum(1 for e in exams if e.is_active and e.start_date <= now <= e.end_date),
        "upcoming": sum(1 for e in exams if e.is_active and e.start_date > now),
        "past": sum(1 for e in exams if e.end_date < now),
        "inactive": sum(1 for e in exams if not e.is_active),
        "eligible_candidates": eligible,
    }
