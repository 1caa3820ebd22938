from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from nomaqbank.core.auth import create_token
from nomaqbank.core.config import settings
from nomaqbank.core.database import get_db
from nomaqbank.core.errors import Unauthorized
from nomaqbank.models.orm import UserRole
from nomaqbank.services.users import ensure_user

router = APIRouter()


class MockLogin(BaseModel):
    external_id: str
    email: str
    name: str
    role: UserRole = UserRole.USER


@router.post("/mock-login")
def mock_login(payload: MockLogin, db: Session = Depends(get_db)):
    if not settings.ENABLE_MOCK_LOGIN or settings.is_production():
        raise Unauthorized("Mock login is disabled")
    user = ensure_user(db, payload.external_id, email=payload.email, name=payload.name, role=payload.role)
    token = create_token(user.external_id, user.role.value)
    return {"access_token": token, "token_type": "bearer", "user_id": user.id, "role": user.role.value}
