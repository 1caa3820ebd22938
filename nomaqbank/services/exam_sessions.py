"""
Exam session state machine.

A participation moves ``in_progress -> completed`` when its owner submits, or
``in_progress -> auto_submitted`` when the hourly sweep closes it after the
exam window. Timing is enforced on the server: elapsed time excludes pauses
and a short grace period absorbs submission latency. When the exam has a
pause, answers for the locked half of the questions are refused as fraud.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sentry_sdk
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nomaqbank.core import metrics
from nomaqbank.core.clock import resolve, to_ms
from nomaqbank.core.config import settings
from nomaqbank.core.errors import (
    FraudDetected, InvalidInput, InvalidState, NotFound, Unauthorized,
)
from nomaqbank.models.orm import (
    AccessCategory, Exam, ExamAnswer, ExamParticipation, ParticipationStatus,
    PausePhase, Question, User,
)
from nomaqbank.services import entitlements, pause
from nomaqbank.services.exams import get_exam
from nomaqbank.services.scoring import percentage
from nomaqbank.services.users import ensure_admin, get_user

logger = logging.getLogger(__name__)

FINISHED = (ParticipationStatus.COMPLETED, ParticipationStatus.AUTO_SUBMITTED)


def _participation(db: Session, exam_id: int, user_id: int, *, lock: bool = False) -> Optional[ExamParticipation]:
    stmt = select(ExamParticipation).where(
        ExamParticipation.exam_id == exam_id, ExamParticipation.user_id == user_id
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def _session_view(p: ExamParticipation, exam: Exam) -> Dict[str, Any]:
    return {
        "participation_id": p.id,
        "exam_id": exam.id,
        "user_id": p.user_id,
        "status": p.status.value,
        "started_at": p.started_at,
        "completed_at": p.completed_at,
        "score": p.score,
        "completion_time": exam.completion_time,
        "enable_pause": exam.enable_pause,
        "pause_duration_minutes": exam.pause_duration_minutes,
        "pause_phase": p.pause_phase.value if p.pause_phase else None,
        "pause_started_at": p.pause_started_at,
        "pause_ended_at": p.pause_ended_at,
        "is_pause_cut_short": p.is_pause_cut_short,
        "total_pause_duration_ms": p.total_pause_duration_ms,
    }


def _require_window(exam: Exam, now: datetime) -> None:
    if now < exam.start_date or now > exam.end_date:
        raise InvalidState("The exam is not available at this time")


def _active_participation(db: Session, exam: Exam, user: User) -> ExamParticipation:
    p = _participation(db, exam.id, user.id, lock=True)
    if p is None:
        raise NotFound("Participation", "Exam session not found; start the exam first")
    if p.is_finished:
        raise InvalidState("You have already taken this exam")
    if p.status != ParticipationStatus.IN_PROGRESS:
        raise InvalidState("This exam session is no longer active")
    return p


# =====================================================
# Lifecycle
# =====================================================

def start_exam(
    db: Session,
    actor: User,
    exam_id: int,
    target_user_id: Optional[int] = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """
    Open a participation, or return the running one unchanged.

    Admins may start on behalf of another user; that start is not gated by
    the target's own exam access.
    """
    now = resolve(now)
    if target_user_id is not None and target_user_id != actor.id:
        ensure_admin(actor)
        user = get_user(db, target_user_id)
    else:
        user = actor
        entitlements.require_access(db, user, AccessCategory.EXAM, now)

    exam = get_exam(db, exam_id)
    _require_window(exam, now)

    existing = _participation(db, exam.id, user.id, lock=True)
    if existing is not None:
        if existing.is_finished:
            raise InvalidState("You have already taken this exam")
        return _session_view(existing, exam)
    if not exam.is_active:
        raise InvalidState("This exam is not active")

    participation = ExamParticipation(
        exam_id=exam.id,
        user_id=user.id,
        status=ParticipationStatus.IN_PROGRESS,
        started_at=now,
        score=0,
        pause_phase=PausePhase.BEFORE_PAUSE if exam.enable_pause else None,
        total_pause_duration_ms=0,
    )
    db.add(participation)
    try:
        db.commit()
    except IntegrityError:
        # concurrent start for the same (exam, user)
        db.rollback()
        existing = _participation(db, exam.id, user.id)
        if existing is None:
            raise
        if existing.is_finished:
            raise InvalidState("You have already taken this exam")
        return _session_view(existing, exam)
    db.refresh(participation)
    logger.info("User %s started exam %s", user.id, exam.id)
    return _session_view(participation, exam)


def start_pause(
    db: Session, user: User, exam_id: int, manual_trigger: bool = False, now: datetime | None = None
) -> Dict[str, Any]:
    now = resolve(now)
    exam = get_exam(db, exam_id)
    if not exam.enable_pause:
        raise InvalidState("Pausing is not enabled for this exam")
    p = _active_participation(db, exam, user)
    phase = pause.advance(p.pause_phase, PausePhase.DURING_PAUSE)

    if not manual_trigger:
        elapsed_ms = to_ms(now - p.started_at)
        half_ms = exam.completion_time * 1000 / 2
        if elapsed_ms < half_ms - settings.AUTO_PAUSE_TOLERANCE_SECONDS * 1000:
            raise InvalidState("The automatic pause can only start at the midpoint of the timer")

    p.pause_phase = phase
    p.pause_started_at = now
    db.commit()
    logger.info("User %s paused exam %s", user.id, exam.id)
    return {"pause_started_at": now, "pause_duration_minutes": pause.pause_minutes(exam)}


def resume_from_pause(db: Session, user: User, exam_id: int, now: datetime | None = None) -> Dict[str, Any]:
    now = resolve(now)
    exam = get_exam(db, exam_id)
    p = _active_participation(db, exam, user)
    phase = pause.advance(p.pause_phase, PausePhase.AFTER_PAUSE)

    started = p.pause_started_at or now
    scheduled_end = started + timedelta(minutes=pause.pause_minutes(exam))
    paused_ms = to_ms(now - started)

    p.pause_phase = phase
    p.pause_ended_at = now
    p.is_pause_cut_short = now < scheduled_end
    p.total_pause_duration_ms = (p.total_pause_duration_ms or 0) + paused_ms
    db.commit()
    logger.info("User %s resumed exam %s after %s ms", user.id, exam.id, paused_ms)
    return {
        "pause_ended_at": now,
        "is_pause_cut_short": p.is_pause_cut_short,
        "total_pause_duration_ms": p.total_pause_duration_ms,
    }


# =====================================================
# Question locking
# =====================================================

def validate_question_access(db: Session, user: User, exam_id: int, question_index: int) -> Dict[str, Any]:
    exam = get_exam(db, exam_id)
    if question_index < 0 or question_index >= len(exam.question_ids):
        raise InvalidInput("Question index out of range")
    if not exam.enable_pause or user.is_admin:
        return {"allowed": True}
    p = _participation(db, exam.id, user.id)
    if p is None:
        return {"allowed": False, "reason": "Exam session not found"}
    return pause.question_access(p.pause_phase, question_index, len(exam.question_ids))


def get_pause_status(db: Session, user: User, exam_id: int) -> Optional[Dict[str, Any]]:
    exam = get_exam(db, exam_id)
    p = _participation(db, exam.id, user.id)
    if p is None:
        return None
    total = len(exam.question_ids)
    mid = pause.midpoint(total)
    return {
        "enable_pause": exam.enable_pause,
        "pause_duration_minutes": pause.pause_minutes(exam),
        "pause_phase": p.pause_phase.value if p.pause_phase else None,
        "pause_started_at": p.pause_started_at,
        "pause_ended_at": p.pause_ended_at,
        "is_pause_cut_short": p.is_pause_cut_short,
        "total_questions": total,
        "midpoint": mid,
        "questions_before_pause": mid,
        "questions_after_pause": total - mid,
    }


def _latest_answers(exam: Exam, answers: Iterable[Mapping[str, Any]]) -> Dict[int, Mapping[str, Any]]:
    """Answers keyed by question id in exam order; the last one for a question wins."""
    positions = {qid: i for i, qid in enumerate(exam.question_ids)}
    latest: Dict[int, Mapping[str, Any]] = {}
    for answer in answers:
        qid = int(answer["question_id"])
        if qid not in positions:
            raise InvalidInput(f"Question {qid} is not part of this exam")
        latest[qid] = answer
    return dict(sorted(latest.items(), key=lambda item: positions[item[0]]))


def _enforce_pause_lock(user: User, exam: Exam, p: ExamParticipation, answers: Mapping[int, Any]) -> None:
    if user.is_admin or not exam.enable_pause or p.pause_phase is None:
        return
    phase = p.pause_phase
    if phase == PausePhase.DURING_PAUSE:
        raise InvalidState("Answers cannot be submitted during the pause; resume the exam first")
    if phase == PausePhase.AFTER_PAUSE:
        return
    if phase != PausePhase.BEFORE_PAUSE:
        raise ValueError(f"Unhandled pause phase {phase!r}")

    mid = pause.midpoint(len(exam.question_ids))
    for qid in answers:
        index = exam.question_ids.index(qid)
        if index >= mid:
            logger.warning(
                "FRAUD: user %s answered locked question %s (Q%s) of exam %s before the pause",
                user.id, qid, index + 1, exam.id,
            )
            metrics.fraud_attempts.inc()
            sentry_sdk.capture_message(
                f"Exam fraud attempt: user {user.id} answered locked Q{index + 1} of exam {exam.id}",
                level="warning",
            )
            raise FraudDetected(
                f"Fraud attempt detected: answer submitted for locked question Q{index + 1}",
                question_id=qid,
                question_index=index,
            )


def _check_time(exam: Exam, p: ExamParticipation, now: datetime, is_auto_submit: bool) -> None:
    elapsed_ms = to_ms(now - p.started_at) - (p.total_pause_duration_ms or 0)
    max_ms = exam.completion_time * 1000
    grace_s = settings.AUTO_SUBMIT_GRACE_SECONDS if is_auto_submit else settings.MANUAL_SUBMIT_GRACE_SECONDS
    if elapsed_ms > max_ms + grace_s * 1000:
        raise InvalidState("Time is up: the submission arrived after the exam timer expired")


def _answer_key(db: Session, question_ids: Iterable[int], supplied: Optional[Mapping[str, str]]) -> Dict[int, str]:
    key: Dict[int, str] = {}
    if supplied:
        for qid, value in supplied.items():
            try:
                key[int(qid)] = value
            except (TypeError, ValueError) as exc:
                raise InvalidInput(f"Invalid question id in answer key: {qid!r}") from exc
    missing = [qid for qid in question_ids if qid not in key]
    if missing:
        rows = db.execute(select(Question.id, Question.correct_answer).where(Question.id.in_(missing))).all()
        key.update({qid: correct for qid, correct in rows})
    return key


def _upsert_answers(
    db: Session, p: ExamParticipation, answers: Mapping[int, Mapping[str, Any]], key: Mapping[int, str]
) -> Dict[int, ExamAnswer]:
    stored = {a.question_id: a for a in p.answers}
    for qid, answer in answers.items():
        row = stored.get(qid)
        if row is None:
            row = ExamAnswer(participation_id=p.id, question_id=qid)
            p.answers.append(row)
            stored[qid] = row
        row.selected_answer = answer["selected_answer"]
        row.is_flagged = bool(answer.get("is_flagged") or False)
    for qid, row in stored.items():
        row.is_correct = key.get(qid) == row.selected_answer
    return stored


def _guarded_participation(
    db: Session, user: User, exam: Exam, now: datetime
) -> ExamParticipation:
    _require_window(exam, now)
    entitlements.require_access(db, user, AccessCategory.EXAM, now)
    return _active_participation(db, exam, user)


def save_answers(
    db: Session, user: User, exam_id: int, answers: List[Mapping[str, Any]], now: datetime | None = None
) -> Dict[str, Any]:
    """Record progress without finishing the session."""
    now = resolve(now)
    exam = get_exam(db, exam_id)
    p = _guarded_participation(db, user, exam, now)
    _check_time(exam, p, now, is_auto_submit=False)
    latest = _latest_answers(exam, answers)
    _enforce_pause_lock(user, exam, p, latest)
    stored = {a.question_id for a in p.answers} | set(latest)
    _upsert_answers(db, p, latest, _answer_key(db, stored, None))
    db.commit()
    return {"saved": len(latest), "answered": len(p.answers), "total_questions": len(exam.question_ids)}


def submit_answers(
    db: Session,
    user: User,
    exam_id: int,
    answers: List[Mapping[str, Any]],
    correct_answers: Optional[Mapping[str, str]] = None,
    is_auto_submit: bool = False,
    now: datetime | None = None,
) -> Dict[str, int]:
    now = resolve(now)
    exam = get_exam(db, exam_id)
    p = _guarded_participation(db, user, exam, now)
    _check_time(exam, p, now, is_auto_submit)
    latest = _latest_answers(exam, answers)
    _enforce_pause_lock(user, exam, p, latest)

    answered = {a.question_id for a in p.answers} | set(latest)
    stored = _upsert_answers(db, p, latest, _answer_key(db, answered, correct_answers))
    in_exam = set(exam.question_ids)
    correct = sum(1 for qid, row in stored.items() if qid in in_exam and row.is_correct)
    total = len(exam.question_ids)

    p.score = percentage(correct, total)
    p.status = ParticipationStatus.COMPLETED
    p.completed_at = now
    db.commit()
    logger.info(
        "User %s submitted exam %s: %s/%s (%s%%)%s",
        user.id, exam.id, correct, total, p.score, " [auto]" if is_auto_submit else "",
    )
    return {"score": p.score, "correct_answers": correct, "total_questions": total}


# =====================================================
# Reads
# =====================================================

def get_exam_session(db: Session, user: User, exam_id: int) -> Optional[Dict[str, Any]]:
    exam = get_exam(db, exam_id)
    p = _participation(db, exam.id, user.id)
    if p is None:
        return None
    view = _session_view(p, exam)
    view["answers"] = [
        {"question_id": a.question_id, "selected_answer": a.selected_answer, "is_flagged": a.is_flagged}
        for a in p.answers
    ]
    return view


def get_participant_results(
    db: Session, viewer: User, exam_id: int, user_id: int, now: datetime | None = None
) -> Dict[str, Any]:
    now = resolve(now)
    if not viewer.is_admin and viewer.id != user_id:
        raise Unauthorized("You can only view your own results")
    exam = get_exam(db, exam_id)
    if not viewer.is_admin and now < exam.end_date:
        raise InvalidState("Results are available once the exam has ended")
    participant = get_user(db, user_id)
    p = _participation(db, exam.id, participant.id)
    if p is None:
        raise NotFound("Participation", "This participant has not started the exam")
    if not p.is_finished:
        raise InvalidState("This participant has not finished the exam")

    questions = {
        q.id: q for q in db.execute(select(Question).where(Question.id.in_(exam.question_ids))).scalars()
    }
    return {
        "exam": {
            "id": exam.id,
            "title": exam.title,
            "description": exam.description,
            "start_date": exam.start_date,
            "end_date": exam.end_date,
            "completion_time": exam.completion_time,
        },
        "participant": {
            "user_id": participant.id,
            "name": participant.name,
            "username": participant.username,
            "status": p.status.value,
            "score": p.score,
            "started_at": p.started_at,
            "completed_at": p.completed_at,
            "answers": [
                {"question_id": a.question_id, "selected_answer": a.selected_answer, "is_correct": a.is_correct}
                for a in p.answers
            ],
        },
        "questions": [
            {
                "id": q.id,
                "text": q.text,
                "options": q.options,
                "correct_answer": q.correct_answer,
                "explanation": q.explanation,
            }
            for q in (questions.get(qid) for qid in exam.question_ids)
            if q is not None
        ],
    }


def get_leaderboard(db: Session, viewer: User, exam_id: int, now: datetime | None = None) -> List[Dict[str, Any]]:
    """
    Finished participations by score, earlier completion first on ties.

    Admins always see it. Others only once the exam has ended, and only if
    they took part or hold exam access; otherwise the board is empty.
    """
    now = resolve(now)
    exam = get_exam(db, exam_id)
    if not viewer.is_admin:
        if now < exam.end_date:
            return []
        took_part = _participation(db, exam.id, viewer.id) is not None
        if not took_part and not entitlements.has_access(db, viewer, AccessCategory.EXAM, now):
            return []

    rows = db.execute(
        select(ExamParticipation, User)
        .join(User, User.id == ExamParticipation.user_id)
        .where(
            ExamParticipation.exam_id == exam.id,
            ExamParticipation.status.in_(FINISHED),
            User.is_deleted.is_(False),
        )
        .order_by(
            ExamParticipation.score.desc(),
            ExamParticipation.completed_at.asc(),
            ExamParticipation.id.asc(),
        )
    ).all()
    return [
        {
            "rank": rank,
            "user_id": user.id,
            "name": user.name,
            "username": user.username,
            "image_url": user.image_url,
            "score": p.score,
            "completed_at": p.completed_at,
        }
        for rank, (p, user) in enumerate(rows, start=1)
    ]


def get_my_score_history(db: Session, user: User, limit: int = 10) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(ExamParticipation, Exam.title)
        .join(Exam, Exam.id == ExamParticipation.exam_id)
        .where(
            ExamParticipation.user_id == user.id,
            ExamParticipation.status.in_(FINISHED),
            ExamParticipation.completed_at.is_not(None),
        )
        .order_by(ExamParticipation.completed_at.desc())
        .limit(limit)
    ).all()
    return [
        {"exam_id": p.exam_id, "exam_title": title, "score": p.score, "completed_at": p.completed_at}
        for p, title in reversed(rows)
    ]


# =====================================================
# Sweep
# =====================================================

def _auto_submit(db: Session, participation_id: int, now: datetime) -> bool:
    p = db.execute(
        select(ExamParticipation).where(ExamParticipation.id == participation_id).with_for_update()
    ).scalar_one_or_none()
    if p is None or p.status != ParticipationStatus.IN_PROGRESS:
        return False
    correct = db.execute(
        select(func.count(ExamAnswer.id)).where(
            ExamAnswer.participation_id == p.id,
            ExamAnswer.question_id.in_(p.exam.question_ids),
            ExamAnswer.is_correct.is_(True),
        )
    ).scalar_one()
    p.score = percentage(correct, len(p.exam.question_ids))
    p.status = ParticipationStatus.AUTO_SUBMITTED
    p.completed_at = now
    return True


def close_expired_participations(
    db: Session, now: datetime | None = None, batch_size: int | None = None
) -> Dict[str, int]:
    """
    Auto-submit in-progress participations of exams whose window has closed.

    Each participation is committed on its own so one failure does not stop
    the rest of the batch.
    """
    now = resolve(now)
    rows = db.execute(
        select(ExamParticipation.id, Exam.end_date)
        .join(Exam, Exam.id == ExamParticipation.exam_id)
        .where(ExamParticipation.status == ParticipationStatus.IN_PROGRESS)
        .order_by(ExamParticipation.id)
        .limit(batch_size or settings.SWEEP_BATCH_SIZE)
    ).all()
    db.rollback()

    closed = failed = 0
    for participation_id, end_date in rows:
        if end_date >= now:
            continue
        try:
            if _auto_submit(db, participation_id, now):
                db.commit()
                closed += 1
            else:
                db.rollback()
        except Exception:
            db.rollback()
            failed += 1
            metrics.sweep_failures.labels(kind="exam").inc()
            logger.exception("Failed to auto-submit participation %s", participation_id)

    if closed:
        metrics.sweep_closed.labels(kind="exam").inc(closed)
        logger.info("Auto-submitted %s of %s in-progress participations", closed, len(rows))
    return {"processed_count": len(rows), "closed_count": closed, "failed_count": failed}
