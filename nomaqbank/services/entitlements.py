"""
Entitlement ledger.

One ``AccessGrant`` row per (user, category) holds the current expiry of that
access window. Completed transactions stack days onto the grant, refunds and
deletions of the transaction that backs it remove it again. Functions here
flush but never commit: callers own the unit of work.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from nomaqbank.core.clock import resolve
from nomaqbank.core.errors import AccessExpired
from nomaqbank.models.orm import (
    AccessCategory, AccessGrant, Transaction, TransactionStatus, User,
)

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)


def get_grant(db: Session, user_id: int, category: AccessCategory, *, lock: bool = False) -> Optional[AccessGrant]:
    stmt = select(AccessGrant).where(AccessGrant.user_id == user_id, AccessGrant.category == category)
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def has_access(db: Session, user: User, category: AccessCategory, now: datetime | None = None) -> bool:
    if user.is_admin:
        return True
    grant = get_grant(db, user.id, category)
    return grant is not None and grant.expires_at > resolve(now)


def require_access(db: Session, user: User, category: AccessCategory, now: datetime | None = None) -> None:
    if not has_access(db, user, category, now):
        raise AccessExpired(category.value)


def _window(grant: Optional[AccessGrant], now: datetime) -> Optional[Dict[str, Any]]:
    if grant is None or grant.expires_at <= now:
        return None
    return {
        "expires_at": grant.expires_at,
        "days_remaining": math.ceil((grant.expires_at - now) / DAY),
    }


def get_access_status(db: Session, user: User, now: datetime | None = None) -> Dict[str, Any]:
    """Remaining access per category; ``None`` where there is no live grant."""
    now = resolve(now)
    return {
        "exam_access": _window(get_grant(db, user.id, AccessCategory.EXAM), now),
        "training_access": _window(get_grant(db, user.id, AccessCategory.TRAINING), now),
    }


def grant_or_extend(
    db: Session,
    user_id: int,
    category: AccessCategory,
    duration_days: int,
    transaction_id: int,
    now: datetime | None = None,
) -> AccessGrant:
    """Stack ``duration_days`` onto the later of now and the current expiry."""
    now = resolve(now)
    grant = get_grant(db, user_id, category, lock=True)
    if grant is None:
        grant = AccessGrant(
            user_id=user_id,
            category=category,
            expires_at=now + timedelta(days=duration_days),
            last_transaction_id=transaction_id,
        )
        db.add(grant)
    else:
        grant.expires_at = max(now, grant.expires_at) + timedelta(days=duration_days)
        grant.last_transaction_id = transaction_id
    db.flush()
    logger.info(
        "Granted %s days of %s access to user %s (tx %s), expires %s",
        duration_days, category.value, user_id, transaction_id, grant.expires_at,
    )
    return grant


def _later_live_transaction(db: Session, tx: Transaction, now: datetime) -> Optional[Transaction]:
    candidates = db.execute(
        select(Transaction)
        .where(
            Transaction.user_id == tx.user_id,
            Transaction.category == tx.category,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.id != tx.id,
            Transaction.completed_at.is_not(None),
        )
        .order_by(Transaction.completed_at.desc(), Transaction.id.desc())
    ).scalars()
    reference = (tx.completed_at or datetime.min, tx.id)
    for candidate in candidates:
        if (candidate.completed_at, candidate.id) <= reference:
            return None
        if candidate.access_expires_at is not None and candidate.access_expires_at > now:
            return candidate
    return None


def revoke_if_current(db: Session, tx: Transaction, now: datetime | None = None) -> bool:
    """
    Remove the access a refunded or deleted transaction produced.

    Only acts when the grant still points at ``tx``. A later completed
    transaction that is still live takes the grant over; otherwise the grant
    is deleted. Returns whether ``tx``'s access was removed.
    """
    now = resolve(now)
    grant = get_grant(db, tx.user_id, tx.category, lock=True)
    if grant is None or grant.last_transaction_id != tx.id:
        return False

    successor = _later_live_transaction(db, tx, now)
    if successor is not None:
        grant.expires_at = successor.access_expires_at
        grant.last_transaction_id = successor.id
        logger.info("Grant %s recomputed from transaction %s", grant.id, successor.id)
    else:
        db.delete(grant)
        logger.info(
            "Revoked %s access of user %s after transaction %s",
            tx.category.value, tx.user_id, tx.id,
        )
    db.flush()
    return True


def access_impact(db: Session, tx: Transaction, now: datetime | None = None) -> Dict[str, Any]:
    """Preview whether refunding or deleting ``tx`` would remove access."""
    now = resolve(now)
    grant = get_grant(db, tx.user_id, tx.category)
    backs_grant = (
        grant is not None
        and grant.last_transaction_id == tx.id
        and tx.status == TransactionStatus.COMPLETED
    )
    return {
        "will_revoke_access": backs_grant and _later_live_transaction(db, tx, now) is None,
        "category": tx.category.value,
        "current_access_expires_at": grant.expires_at if grant is not None else None,
    }
