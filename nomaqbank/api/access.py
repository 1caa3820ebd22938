from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from nomaqbank.api.deps import get_current_user, require_admin
from nomaqbank.core.database import get_db
from nomaqbank.models.orm import User
from nomaqbank.services import entitlements
from nomaqbank.services.users import get_user

router = APIRouter()


class AccessWindow(BaseModel):
    expires_at: datetime
    days_remaining: int


class AccessStatus(BaseModel):
    exam_access: AccessWindow | None = None
    training_access: AccessWindow | None = None


@router.get("/me", response_model=AccessStatus)
def my_access(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return entitlements.get_access_status(db, user)


@router.get("/users/{user_id}", response_model=AccessStatus)
def user_access(user_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)):
    return entitlements.get_access_status(db, get_user(db, user_id))
