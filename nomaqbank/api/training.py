from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from nomaqbank.api.deps import get_current_user
from nomaqbank.core.database import get_db
from nomaqbank.models.orm import User
from nomaqbank.services import training

router = APIRouter()


class SessionCreate(BaseModel):
    question_count: int
    domain: Optional[str] = None
    objectives: Optional[List[str]] = None


class AnswerIn(BaseModel):
    question_id: int
    selected_answer: str = Field(min_length=1)


class AnswerBatch(BaseModel):
    answers: List[AnswerIn] = Field(min_length=1)


@router.post("/sessions", status_code=201)
def create_session(payload: SessionCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.create_session(db, user, payload.question_count, payload.domain, payload.objectives)


@router.get("/sessions/active")
def active_session(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_active_session(db, user)


@router.get("/sessions/history")
def history(limit: int = 20, offset: int = 0, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_history(db, user, limit=min(limit, 100), offset=offset)


@router.get("/stats")
def stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_stats(db, user)


@router.get("/domains")
def domains(_: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_available_domains(db)


@router.get("/objectives")
def objectives(domain: Optional[str] = None, _: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_available_objectives(db, domain)


@router.get("/history")
def score_history(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_score_history(db, user)


@router.delete("/sessions")
def delete_all_sessions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.delete_all_sessions(db, user)


@router.get("/sessions/{session_id}")
def get_session(session_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.get_session(db, user, session_id)


@router.post("/sessions/{session_id}/answers")
def save_answers(
    session_id: int, payload: AnswerBatch, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return training.save_answers_batch(db, user, session_id, [a.model_dump() for a in payload.answers])


@router.put("/sessions/{session_id}/answers/{question_id}")
def save_answer(
    session_id: int,
    question_id: int,
    payload: AnswerIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return training.save_answer(db, user, session_id, question_id, payload.selected_answer)


@router.post("/sessions/{session_id}/complete")
def complete_session(session_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.complete_session(db, user, session_id)


@router.post("/sessions/{session_id}/abandon")
def abandon_session(session_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.abandon_session(db, user, session_id)


@router.delete("/sessions/{session_id}")
def delete_session(session_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return training.delete_session(db, user, session_id)
