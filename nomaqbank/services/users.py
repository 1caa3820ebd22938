"""Mirror of identity-provider users, keyed by their external id."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from nomaqbank.core.clock import resolve
from nomaqbank.core.errors import NotFound, Unauthorized
from nomaqbank.models.orm import User, UserRole

logger = logging.getLogger(__name__)


def ensure_admin(user: User) -> None:
    if not user.is_admin:
        raise Unauthorized("Administrator role required")


def get_by_external_id(db: Session, external_id: str, *, include_deleted: bool = False) -> Optional[User]:
    stmt = select(User).where(User.external_id == external_id)
    if not include_deleted:
        stmt = stmt.where(User.is_deleted.is_(False))
    return db.execute(stmt).scalar_one_or_none()


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None or user.is_deleted:
        raise NotFound("User")
    return user


def _primary_email(profile: Dict[str, Any]) -> Optional[str]:
    addresses = profile.get("email_addresses") or []
    if addresses and isinstance(addresses[0], dict):
        return addresses[0].get("email_address")
    return profile.get("email")


def upsert_from_identity(db: Session, external_id: str, profile: Dict[str, Any]) -> User:
    """Create or refresh a user from an identity ``user.created``/``user.updated`` payload."""
    user = get_by_external_id(db, external_id, include_deleted=True)
    email = _primary_email(profile)
    name = " ".join(
        p.strip() for p in (profile.get("first_name"), profile.get("last_name")) if p and p.strip()
    ) or profile.get("name") or profile.get("username") or email or external_id
    if user is None:
        user = User(external_id=external_id, email=email or "", name=name, role=UserRole.USER)
        db.add(user)
        logger.info("Created user for identity %s", external_id)
    else:
        if user.is_deleted:
            user.restore()
        if email:
            user.email = email
        user.name = name
    user.username = profile.get("username") or user.username
    user.image_url = profile.get("image_url") or user.image_url
    db.commit()
    db.refresh(user)
    return user


def soft_delete_from_identity(db: Session, external_id: str, now: datetime | None = None) -> bool:
    user = get_by_external_id(db, external_id)
    if user is None:
        logger.warning("Identity deletion for unknown user %s", external_id)
        return False
    user.soft_delete(resolve(now))
    db.commit()
    logger.info("Soft-deleted user %s", external_id)
    return True


def ensure_user(db: Session, external_id: str, *, email: str, name: str, role: UserRole) -> User:
    """Create or update a local user directly; used by the development login."""
    user = get_by_external_id(db, external_id, include_deleted=True)
    if user is None:
        user = User(external_id=external_id, email=email, name=name, role=role)
        db.add(user)
    else:
        user.restore()
        user.email = email
        user.name = name
        user.role = role
    db.commit()
    db.refresh(user)
    return user
