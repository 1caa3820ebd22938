from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from nomaqbank.api.deps import get_current_user, require_admin
from nomaqbank.core.clock import naive_utc
from nomaqbank.core.database import get_db
from nomaqbank.core.errors import Unauthorized
from nomaqbank.models.orm import AccessCategory, Question, User
from nomaqbank.services import entitlements, exam_sessions, exams

router = APIRouter()


class ExamIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    question_ids: List[int] = Field(min_length=1)
    enable_pause: bool = False
    pause_duration_minutes: Optional[int] = Field(default=None, gt=0)


class ExamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    question_ids: List[int]
    completion_time: int
    enable_pause: bool
    pause_duration_minutes: Optional[int] = None
    is_active: bool


class StartRequest(BaseModel):
    user_id: Optional[int] = None


class PauseRequest(BaseModel):
    manual_trigger: bool = False


class AnswerIn(BaseModel):
    question_id: int
    selected_answer: str = Field(min_length=1)
    is_flagged: bool = False


class SaveAnswersRequest(BaseModel):
    answers: List[AnswerIn]


class SubmitRequest(BaseModel):
    answers: List[AnswerIn]
    correct_answers: Optional[Dict[str, str]] = None
    is_auto_submit: bool = False


class SubmitResult(BaseModel):
    score: int
    correct_answers: int
    total_questions: int


def _exam_fields(payload: ExamIn) -> Dict[str, Any]:
    data = payload.model_dump()
    data["start_date"] = naive_utc(payload.start_date)
    data["end_date"] = naive_utc(payload.end_date)
    return data


# ============= Admin definitions =============

@router.get("", response_model=List[ExamOut])
def list_exams(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.list_exams(db, admin)


@router.post("", response_model=ExamOut, status_code=201)
def create_exam(payload: ExamIn, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.create_exam(db, admin, **_exam_fields(payload))


@router.get("/available", response_model=List[ExamOut])
def available_exams(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exams.list_available_exams(db, user)


@router.get("/stats")
def exam_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.exam_stats(db, admin)


@router.get("/history/me")
def my_score_history(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exam_sessions.get_my_score_history(db, user)


@router.get("/{exam_id}")
def get_exam(exam_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    exam = exams.get_exam(db, exam_id)
    if not user.is_admin:
        entitlements.require_access(db, user, AccessCategory.EXAM)
        if not exam.is_active:
            raise Unauthorized("This exam is not available")
    by_id = {q.id: q for q in db.execute(select(Question).where(Question.id.in_(exam.question_ids))).scalars()}
    questions = []
    for qid in exam.question_ids:
        q = by_id.get(qid)
        if q is None:
            continue
        item = {"id": q.id, "text": q.text, "options": q.options, "domain": q.domain}
        if user.is_admin:
            item["correct_answer"] = q.correct_answer
            item["explanation"] = q.explanation
        questions.append(item)
    return {"exam": ExamOut.model_validate(exam), "questions": questions}


@router.put("/{exam_id}", response_model=ExamOut)
def update_exam(exam_id: int, payload: ExamIn, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.update_exam(db, admin, exam_id, **_exam_fields(payload))


@router.delete("/{exam_id}")
def delete_exam(exam_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.delete_exam(db, admin, exam_id)


@router.post("/{exam_id}/activate", response_model=ExamOut)
def activate_exam(exam_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.set_exam_active(db, admin, exam_id, True)


@router.post("/{exam_id}/deactivate", response_model=ExamOut)
def deactivate_exam(exam_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return exams.set_exam_active(db, admin, exam_id, False)


# ============= Session lifecycle =============

@router.post("/{exam_id}/start")
def start_exam(
    exam_id: int,
    payload: Optional[StartRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    target = payload.user_id if payload else None
    return exam_sessions.start_exam(db, user, exam_id, target_user_id=target)


@router.post("/{exam_id}/pause")
def start_pause(
    exam_id: int,
    payload: Optional[PauseRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    manual = payload.manual_trigger if payload else False
    return exam_sessions.start_pause(db, user, exam_id, manual_trigger=manual)


@router.post("/{exam_id}/resume")
def resume_from_pause(exam_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exam_sessions.resume_from_pause(db, user, exam_id)


@router.post("/{exam_id}/answers")
def save_answers(
    exam_id: int, payload: SaveAnswersRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return exam_sessions.save_answers(db, user, exam_id, [a.model_dump() for a in payload.answers])


@router.post("/{exam_id}/submit", response_model=SubmitResult)
def submit_answers(
    exam_id: int, payload: SubmitRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return exam_sessions.submit_answers(
        db,
        user,
        exam_id,
        [a.model_dump() for a in payload.answers],
        correct_answers=payload.correct_answers,
        is_auto_submit=payload.is_auto_submit,
    )


# ============= Reads =============

@router.get("/{exam_id}/session")
def exam_session(exam_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exam_sessions.get_exam_session(db, user, exam_id)


@router.get("/{exam_id}/pause-status")
def pause_status(exam_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exam_sessions.get_pause_status(db, user, exam_id)


@router.get("/{exam_id}/questions/{question_index}/access")
def question_access(
    exam_id: int, question_index: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return exam_sessions.validate_question_access(db, user, exam_id, question_index)


@router.get("/{exam_id}/leaderboard")
def leaderboard(exam_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return exam_sessions.get_leaderboard(db, user, exam_id)


@router.get("/{exam_id}/results/{user_id}")
def participant_results(
    exam_id: int, user_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return exam_sessions.get_participant_results(db, user, exam_id, user_id)
