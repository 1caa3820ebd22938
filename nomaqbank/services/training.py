"""
Training sessions: single-user practice runs over a random question sample.

A session lives 24 hours. Expired sessions are never scored; they are marked
abandoned when touched or by the training sweep.
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from nomaqbank.core import metrics
from nomaqbank.core.clock import resolve, to_ms
from nomaqbank.core.config import settings
from nomaqbank.core.errors import (
    InvalidInput, InvalidState, NotFound, RateLimited, Unauthorized,
)
from nomaqbank.models.orm import (
    AccessCategory, Question, TrainingAnswer, TrainingParticipation, TrainingStatus, User,
)
from nomaqbank.services import entitlements
from nomaqbank.services.scoring import percentage

logger = logging.getLogger(__name__)

FINISHED = (TrainingStatus.COMPLETED, TrainingStatus.ABANDONED)
ALL_DOMAINS = "all"


def _session_view(s: TrainingParticipation) -> Dict[str, Any]:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "question_count": s.question_count,
        "domain": s.domain,
        "question_ids": list(s.question_ids),
        "status": s.status.value,
        "started_at": s.started_at,
        "completed_at": s.completed_at,
        "expires_at": s.expires_at,
        "score": s.score,
    }


def _owned_session(db: Session, user: User, session_id: int, *, lock: bool = False) -> TrainingParticipation:
    stmt = select(TrainingParticipation).where(TrainingParticipation.id == session_id)
    if lock:
        stmt = stmt.with_for_update()
    session = db.execute(stmt).scalar_one_or_none()
    if session is None:
        raise NotFound("Session")
    if session.user_id != user.id:
        raise Unauthorized("This session does not belong to you")
    return session


def _in_progress(db: Session, user_id: int) -> Optional[TrainingParticipation]:
    return db.execute(
        select(TrainingParticipation)
        .where(
            TrainingParticipation.user_id == user_id,
            TrainingParticipation.status == TrainingStatus.IN_PROGRESS,
        )
        .order_by(TrainingParticipation.started_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def _check_rate(db: Session, user: User, now: datetime) -> None:
    if user.is_admin:
        return
    recent = db.execute(
        select(func.count(TrainingParticipation.id)).where(
            TrainingParticipation.user_id == user.id,
            TrainingParticipation.started_at > now - timedelta(hours=1),
        )
    ).scalar_one()
    if recent >= settings.TRAINING_SESSIONS_PER_HOUR:
        raise RateLimited("Too many training sessions started in the last hour", retry_after_minutes=60)


def _candidates(db: Session, domain: Optional[str], objectives: Optional[Sequence[str]]) -> List[int]:
    stmt = select(Question.id, Question.objective)
    if domain and domain != "all":
        stmt = stmt.where(Question.domain == domain)
    rows = db.execute(stmt.order_by(Question.id)).all()
    if objectives:
        wanted = {o.strip().lower() for o in objectives if o and o.strip()}
        rows = [r for r in rows if r.objective and r.objective.strip().lower() in wanted]
    return [r.id for r in rows]


def create_session(
    db: Session,
    user: User,
    question_count: int,
    domain: Optional[str] = None,
    objectives: Optional[Sequence[str]] = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> Dict[str, Any]:
    now = resolve(now)
    _check_rate(db, user, now)
    entitlements.require_access(db, user, AccessCategory.TRAINING, now)

    low, high = settings.TRAINING_MIN_QUESTIONS, settings.TRAINING_MAX_QUESTIONS
    if isinstance(question_count, bool) or not isinstance(question_count, int) or not low <= question_count <= high:
        raise InvalidInput(f"The question count must be an integer between {low} and {high}")

    existing = _in_progress(db, user.id)
    if existing is not None:
        if existing.expires_at >= now:
            raise InvalidState("You already have a training session in progress; finish it or let it expire")
        existing.status = TrainingStatus.ABANDONED
        logger.info("Abandoned expired training session %s of user %s", existing.id, user.id)

    pool = _candidates(db, domain, objectives)
    if len(pool) < question_count:
        raise InvalidInput(f"Only {len(pool)} questions are available; request fewer")
    picked = (rng or random).sample(pool, question_count)

    session = TrainingParticipation(
        user_id=user.id,
        question_count=question_count,
        domain=None if domain in (None, "", "all") else domain,
        question_ids=picked,
        status=TrainingStatus.IN_PROGRESS,
        started_at=now,
        expires_at=now + timedelta(hours=settings.TRAINING_SESSION_TTL_HOURS),
        score=0,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info("User %s started training session %s with %s questions", user.id, session.id, question_count)
    return {"session_id": session.id, "question_ids": picked, "expires_at": session.expires_at}


def _writable_session(db: Session, user: User, session_id: int, now: datetime) -> TrainingParticipation:
    entitlements.require_access(db, user, AccessCategory.TRAINING, now)
    session = _owned_session(db, user, session_id, lock=True)
    if session.status != TrainingStatus.IN_PROGRESS:
        raise InvalidState("This session is no longer active")
    if session.expires_at < now:
        session.status = TrainingStatus.ABANDONED
        db.commit()
        raise InvalidState("This session has expired")
    return session


def save_answers_batch(
    db: Session, user: User, session_id: int, answers: Sequence[Mapping[str, Any]], now: datetime | None = None
) -> List[Dict[str, Any]]:
    now = resolve(now)
    session = _writable_session(db, user, session_id, now)
    latest: Dict[int, str] = {}
    for answer in answers:
        qid = int(answer["question_id"])
        if qid not in session.question_ids:
            raise InvalidInput("This question is not part of the session")
        latest[qid] = answer["selected_answer"]

    key = dict(db.execute(
        select(Question.id, Question.correct_answer).where(Question.id.in_(list(latest)))
    ).all())
    stored = {a.question_id: a for a in session.answers}
    results = []
    for qid, selected in latest.items():
        if qid not in key:
            raise NotFound("Question")
        row = stored.get(qid)
        if row is None:
            row = TrainingAnswer(participation_id=session.id, question_id=qid)
            session.answers.append(row)
        row.selected_answer = selected
        row.is_correct = key[qid] == selected
        results.append({"question_id": qid, "is_correct": row.is_correct, "correct_answer": key[qid]})
    db.commit()
    return results


def save_answer(
    db: Session, user: User, session_id: int, question_id: int, selected_answer: str, now: datetime | None = None
) -> Dict[str, Any]:
    results = save_answers_batch(
        db, user, session_id, [{"question_id": question_id, "selected_answer": selected_answer}], now
    )
    return results[0]


def complete_session(db: Session, user: User, session_id: int, now: datetime | None = None) -> Dict[str, Any]:
    now = resolve(now)
    entitlements.require_access(db, user, AccessCategory.TRAINING, now)
    session = _owned_session(db, user, session_id, lock=True)
    if session.status != TrainingStatus.IN_PROGRESS:
        raise InvalidState("This session is no longer active")
    correct = sum(1 for a in session.answers if a.is_correct)
    session.score = percentage(correct, session.question_count)
    session.status = TrainingStatus.COMPLETED
    session.completed_at = now
    db.commit()
    return {
        "score": session.score,
        "correct_count": correct,
        "total_questions": session.question_count,
        "completed_at": now,
    }


def abandon_session(db: Session, user: User, session_id: int) -> Dict[str, bool]:
    session = _owned_session(db, user, session_id, lock=True)
    if session.status != TrainingStatus.IN_PROGRESS:
        raise InvalidState("This session is not in progress")
    session.status = TrainingStatus.ABANDONED
    db.commit()
    return {"success": True}


def get_active_session(db: Session, user: User, now: datetime | None = None) -> Optional[Dict[str, Any]]:
    now = resolve(now)
    session = _in_progress(db, user.id)
    if session is None:
        return None
    expired = session.expires_at < now
    return {
        "session": _session_view(session),
        "is_expired": expired,
        "can_resume": not expired,
        "remaining_time_ms": 0 if expired else to_ms(session.expires_at - now),
    }


def get_session(db: Session, viewer: User, session_id: int, now: datetime | None = None) -> Dict[str, Any]:
    """Session with its questions; answers keys are withheld until it is completed."""
    now = resolve(now)
    session = db.get(TrainingParticipation, session_id)
    if session is None:
        raise NotFound("Session")
    if session.user_id != viewer.id and not viewer.is_admin:
        raise Unauthorized("This session does not belong to you")

    reveal = session.status == TrainingStatus.COMPLETED
    by_id = {
        q.id: q for q in db.execute(select(Question).where(Question.id.in_(session.question_ids))).scalars()
    }
    questions = []
    for qid in session.question_ids:
        q = by_id.get(qid)
        if q is None:
            continue
        item = {"id": q.id, "text": q.text, "options": q.options, "domain": q.domain, "objective": q.objective}
        if reveal:
            item["correct_answer"] = q.correct_answer
            item["explanation"] = q.explanation
        questions.append(item)
    return {
        "session": _session_view(session),
        "questions": questions,
        "answers": {
            str(a.question_id): {"selected_answer": a.selected_answer, "is_correct": a.is_correct}
            for a in session.answers
        },
        "is_expired": session.expires_at < now,
    }


def get_history(db: Session, user: User, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
    sessions = db.execute(
        select(TrainingParticipation)
        .where(
            TrainingParticipation.user_id == user.id,
            TrainingParticipation.status == TrainingStatus.COMPLETED,
        )
        .order_by(TrainingParticipation.completed_at.desc())
        .limit(limit)
        .offset(offset)
    ).scalars()
    return [_session_view(s) for s in sessions]


def get_stats(db: Session, user: User) -> Dict[str, Any]:
    completed = list(db.execute(
        select(TrainingParticipation)
        .where(
            TrainingParticipation.user_id == user.id,
            TrainingParticipation.status == TrainingStatus.COMPLETED,
        )
        .order_by(TrainingParticipation.completed_at.desc())
    ).scalars())
    return {
        "total_sessions": len(completed),
        "total_questions": sum(s.question_count for s in completed),
        "average_score": percentage(sum(s.score for s in completed), 100 * len(completed)) if completed else 0,
        "recent_sessions": [
            {"score": s.score, "completed_at": s.completed_at, "question_count": s.question_count}
            for s in completed[:5]
        ],
    }


def get_available_domains(db: Session) -> Dict[str, Any]:
    rows = db.execute(
        select(Question.domain, func.count(Question.id)).group_by(Question.domain)
    ).all()
    domains = sorted(({"domain": d, "count": c} for d, c in rows), key=lambda item: -item["count"])
    return {"domains": domains, "total_questions": sum(item["count"] for item in domains)}


def get_available_objectives(db: Session, domain: Optional[str] = None) -> Dict[str, Any]:
    """Objectives usable as a ``create_session`` filter, most populated first."""
    stmt = select(Question.objective)
    if domain and domain != "all":
        stmt = stmt.where(Question.domain == domain)
    objectives = list(db.execute(stmt).scalars())
    counts: Dict[str, int] = {}
    for objective in objectives:
        if objective and objective.strip():
            counts[objective.strip()] = counts.get(objective.strip(), 0) + 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return {
        "objectives": [{"objective": name, "count": count} for name, count in ranked],
        "total": len(objectives),
    }


def get_score_history(db: Session, user: User, limit: int = 10) -> Dict[str, Any]:
    """Last completed sessions oldest first, plus average score per domain."""
    completed = list(db.execute(
        select(TrainingParticipation)
        .where(
            TrainingParticipation.user_id == user.id,
            TrainingParticipation.status == TrainingStatus.COMPLETED,
            TrainingParticipation.completed_at.is_not(None),
        )
        .order_by(TrainingParticipation.completed_at.desc())
    ).scalars())

    by_domain: Dict[str, List[int]] = {}
    for s in completed:
        by_domain.setdefault(s.domain or ALL_DOMAINS, []).append(s.score)
    performance = sorted(
        (
            {"domain": d, "average_score": percentage(sum(scores), 100 * len(scores)), "session_count": len(scores)}
            for d, scores in by_domain.items()
        ),
        key=lambda item: -item["average_score"],
    )
    return {
        "sessions": [
            {
                "session_id": s.id,
                "score": s.score,
                "completed_at": s.completed_at,
                "question_count": s.question_count,
                "domain": s.domain or ALL_DOMAINS,
            }
            for s in reversed(completed[:limit])
        ],
        "domain_performance": performance[:10],
    }


def delete_session(db: Session, user: User, session_id: int) -> Dict[str, bool]:
    session = _owned_session(db, user, session_id, lock=True)
    if session.status == TrainingStatus.IN_PROGRESS:
        raise InvalidState("A session in progress cannot be deleted; complete or abandon it first")
    db.delete(session)
    db.commit()
    return {"success": True}


def delete_all_sessions(db: Session, user: User) -> Dict[str, Any]:
    sessions = list(db.execute(
        select(TrainingParticipation).where(
            TrainingParticipation.user_id == user.id,
            TrainingParticipation.status.in_(FINISHED),
        )
    ).scalars())
    answers = sum(len(s.answers) for s in sessions)
    for session in sessions:
        db.delete(session)
    db.commit()
    return {"success": True, "deleted_count": len(sessions), "deleted_answers": answers}


def close_expired_sessions(db: Session, now: datetime | None = None, batch_size: int | None = None) -> Dict[str, int]:
    """Mark expired in-progress sessions abandoned, without scoring them."""
    now = resolve(now)
    sessions = list(db.execute(
        select(TrainingParticipation)
        .where(
            TrainingParticipation.status == TrainingStatus.IN_PROGRESS,
            TrainingParticipation.expires_at < now,
        )
        .order_by(TrainingParticipation.expires_at)
        .limit(batch_size or settings.SWEEP_TRAINING_BATCH_SIZE)
        .with_for_update(skip_locked=True)
    ).scalars())
    for session in sessions:
        session.status = TrainingStatus.ABANDONED
        session.completed_at = now
    db.commit()
    if sessions:
        metrics.sweep_closed.labels(kind="training").inc(len(sessions))
        logger.info("Abandoned %s expired training sessions", len(sessions))
    return {"closed_count": len(sessions)}
