from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from nomaqbank.core.config import settings
from nomaqbank.core.errors import Unauthenticated


class TokenData(BaseModel):
    sub: str
    role: str = "user"


bearer = HTTPBearer(auto_error=False)


def create_token(external_id: str, role: str = "user", ttl_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes if ttl_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": external_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc
    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")
    return TokenData(sub=payload["sub"], role=payload.get("role", "user"))


def get_token_data(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> TokenData:
    if creds is None:
        raise Unauthenticated()
    return decode_token(creds.credentials)
