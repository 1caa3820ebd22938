from fastapi import Depends
from sqlalchemy.orm import Session

from nomaqbank.core.auth import TokenData, get_token_data
from nomaqbank.core.database import get_db
from nomaqbank.core.errors import NotFound
from nomaqbank.models.orm import User
from nomaqbank.services.users import ensure_admin, get_by_external_id


def get_current_user(token: TokenData = Depends(get_token_data), db: Session = Depends(get_db)) -> User:
    user = get_by_external_id(db, token.sub)
    if user is None:
        raise NotFound("User")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    ensure_admin(user)
    return user
