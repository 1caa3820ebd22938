"""
Payment transaction log and product catalogue.

Processor transactions move ``pending -> completed`` or ``pending -> failed``
once, driven by webhook events whose ids land in the ``payment_events`` dedup
set. Manual transactions are recorded completed by an admin and stay editable.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nomaqbank.core import metrics
from nomaqbank.core.clock import resolve
from nomaqbank.core.errors import InvalidInput, InvalidState, NotFound
from nomaqbank.models.orm import (
    AccessCategory, AccessProduct, PaymentEvent, PaymentEventKind, Transaction,
    TransactionOrigin, TransactionStatus, User,
)
from nomaqbank.services import entitlements
from nomaqbank.services.processor import StripeProcessor
from nomaqbank.services.users import ensure_admin, get_user

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)


# =====================================================
# Catalogue
# =====================================================

def get_product_by_code(db: Session, code: str) -> AccessProduct:
    product = db.execute(
        select(AccessProduct).where(AccessProduct.code == code, AccessProduct.is_current.is_(True))
    ).scalar_one_or_none()
    if product is None:
        raise NotFound("Product", f"Unknown product code {code!r}")
    return product


def list_products(db: Session, *, include_inactive: bool = False) -> List[AccessProduct]:
    stmt = select(AccessProduct).where(AccessProduct.is_current.is_(True))
    if not include_inactive:
        stmt = stmt.where(AccessProduct.is_active.is_(True))
    return list(db.execute(stmt.order_by(AccessProduct.category, AccessProduct.price)).scalars())


def upsert_product(db: Session, admin: User, code: str, **fields: Any) -> AccessProduct:
    """
    Create or update the current version of a product.

    A product already referenced by a transaction is never modified: a new
    version is inserted and the old one retired.
    """
    ensure_admin(admin)
    if fields.get("duration_days") is not None and fields["duration_days"] <= 0:
        raise InvalidInput("duration_days must be positive")
    if fields.get("price") is not None and fields["price"] < 0:
        raise InvalidInput("price cannot be negative")

    current = db.execute(
        select(AccessProduct).where(AccessProduct.code == code, AccessProduct.is_current.is_(True)).with_for_update()
    ).scalar_one_or_none()

    if current is None:
        missing = [k for k in ("name", "price", "currency", "duration_days", "category") if fields.get(k) is None]
        if missing:
            raise InvalidInput(f"Missing fields for new product: {', '.join(missing)}")
        product = AccessProduct(code=code, version=1, is_current=True, **fields)
        db.add(product)
    else:
        referenced = db.execute(
            select(func.count(Transaction.id)).where(Transaction.product_id == current.id)
        ).scalar_one()
        changes = {k: v for k, v in fields.items() if v is not None}
        if referenced:
            current.is_current = False
            db.flush()
            product = AccessProduct(
                code=code,
                version=current.version + 1,
                is_current=True,
                name=current.name,
                description=current.description,
                price=current.price,
                currency=current.currency,
                duration_days=current.duration_days,
                category=current.category,
                processor_price_ref=current.processor_price_ref,
                is_active=current.is_active,
            )
            for key, value in changes.items():
                setattr(product, key, value)
            db.add(product)
        else:
            product = current
            for key, value in changes.items():
                setattr(product, key, value)
    db.commit()
    db.refresh(product)
    logger.info("Product %s now at version %s", product.code, product.version)
    return product


# =====================================================
# Processor transactions
# =====================================================

def create_pending(
    db: Session, user: User, product: AccessProduct, external_ref: str, amount: float, currency: str
) -> Transaction:
    tx = Transaction(
        user_id=user.id,
        product_id=product.id,
        origin=TransactionOrigin.PROCESSOR,
        status=TransactionStatus.PENDING,
        amount=amount,
        currency=currency,
        category=product.category,
        duration_days=product.duration_days,
        external_ref=external_ref,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)
    return tx


def create_checkout(
    db: Session,
    user: User,
    product_code: str,
    success_url: str,
    cancel_url: str,
    processor: StripeProcessor,
) -> Dict[str, str]:
    product = get_product_by_code(db, product_code)
    if not product.is_active:
        raise InvalidState("This product is not available for purchase")
    session = processor.create_checkout(
        user=user, product=product, success_url=success_url, cancel_url=cancel_url
    )
    create_pending(db, user, product, session.session_id, product.price, product.currency)
    return {"checkout_url": session.url, "session_id": session.session_id}


def _seen_event(db: Session, idempotency_key: str) -> Optional[PaymentEvent]:
    return db.execute(
        select(PaymentEvent).where(PaymentEvent.idempotency_key == idempotency_key)
    ).scalar_one_or_none()


def _locked_by_ref(db: Session, external_ref: str) -> Transaction:
    tx = db.execute(
        select(Transaction).where(Transaction.external_ref == external_ref).with_for_update()
    ).scalar_one_or_none()
    if tx is None:
        raise NotFound("Transaction", f"No pending transaction for reference {external_ref}")
    return tx


def _apply_event(db: Session, tx: Transaction, key: str, kind: PaymentEventKind, now: datetime) -> Dict[str, Any]:
    db.add(PaymentEvent(idempotency_key=key, transaction_id=tx.id, kind=kind, received_at=now))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Payment event %s lost a concurrent race, treating as processed", key)
        metrics.payment_events.labels(kind=kind.value, outcome="duplicate").inc()
        return {"already_processed": True, "transaction_id": tx.id}
    return {"already_processed": False, "transaction_id": tx.id, "status": tx.status.value}


def complete_by_external_ref(
    db: Session,
    external_ref: str,
    idempotency_key: str,
    payment_ref: Optional[str] = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    now = resolve(now)
    seen = _seen_event(db, idempotency_key)
    if seen is not None:
        metrics.payment_events.labels(kind="completed", outcome="duplicate").inc()
        return {"already_processed": True, "transaction_id": seen.transaction_id}

    tx = _locked_by_ref(db, external_ref)
    if tx.status != TransactionStatus.PENDING:
        logger.info("Transaction %s already %s, ignoring completion %s", tx.id, tx.status.value, idempotency_key)
        result = _apply_event(db, tx, idempotency_key, PaymentEventKind.COMPLETED, now)
        result["already_processed"] = True
        return result

    tx.status = TransactionStatus.COMPLETED
    tx.completed_at = now
    tx.idempotency_key = idempotency_key
    tx.processor_payment_ref = payment_ref
    grant = entitlements.grant_or_extend(db, tx.user_id, tx.category, tx.duration_days, tx.id, now)
    tx.access_expires_at = grant.expires_at
    result = _apply_event(db, tx, idempotency_key, PaymentEventKind.COMPLETED, now)
    if not result["already_processed"]:
        metrics.payment_events.labels(kind="completed", outcome="applied").inc()
        logger.info("Transaction %s completed via %s", tx.id, idempotency_key)
    return result


def fail_by_external_ref(
    db: Session, external_ref: str, idempotency_key: str, now: datetime | None = None
) -> Dict[str, Any]:
    now = resolve(now)
    seen = _seen_event(db, idempotency_key)
    if seen is not None:
        metrics.payment_events.labels(kind="failed", outcome="duplicate").inc()
        return {"already_processed": True, "transaction_id": seen.transaction_id}

    tx = _locked_by_ref(db, external_ref)
    if tx.status != TransactionStatus.PENDING:
        logger.info("Transaction %s already %s, ignoring failure %s", tx.id, tx.status.value, idempotency_key)
        result = _apply_event(db, tx, idempotency_key, PaymentEventKind.FAILED, now)
        result["already_processed"] = True
        return result

    tx.status = TransactionStatus.FAILED
    tx.idempotency_key = idempotency_key
    result = _apply_event(db, tx, idempotency_key, PaymentEventKind.FAILED, now)
    if not result["already_processed"]:
        metrics.payment_events.labels(kind="failed", outcome="applied").inc()
        logger.info("Transaction %s failed via %s", tx.id, idempotency_key)
    return result


# =====================================================
# Manual transactions
# =====================================================

def record_manual(
    db: Session,
    admin: User,
    user_id: int,
    product_code: str,
    amount: float,
    currency: str,
    method: str,
    notes: Optional[str] = None,
    now: datetime | None = None,
) -> Transaction:
    ensure_admin(admin)
    now = resolve(now)
    user = get_user(db, user_id)
    product = get_product_by_code(db, product_code)
    tx = Transaction(
        user_id=user.id,
        product_id=product.id,
        origin=TransactionOrigin.MANUAL,
        status=TransactionStatus.COMPLETED,
        amount=amount,
        currency=currency,
        category=product.category,
        duration_days=product.duration_days,
        payment_method=method,
        notes=notes,
        recorded_by=admin.id,
        created_at=now,
        completed_at=now,
    )
    db.add(tx)
    db.flush()
    grant = entitlements.grant_or_extend(db, user.id, product.category, product.duration_days, tx.id, now)
    tx.access_expires_at = grant.expires_at
    db.commit()
    db.refresh(tx)
    logger.info("Admin %s recorded manual transaction %s for user %s", admin.id, tx.id, user.id)
    return tx


def _manual_tx(db: Session, transaction_id: int, action: str) -> Transaction:
    tx = db.execute(
        select(Transaction).where(Transaction.id == transaction_id).with_for_update()
    ).scalar_one_or_none()
    if tx is None:
        raise NotFound("Transaction")
    if tx.origin != TransactionOrigin.MANUAL:
        raise InvalidState(f"Only manual transactions can be {action}")
    return tx


def update_manual(
    db: Session,
    admin: User,
    transaction_id: int,
    *,
    amount: float,
    currency: str,
    method: str,
    notes: Optional[str] = None,
    status: Optional[TransactionStatus] = None,
    now: datetime | None = None,
) -> Transaction:
    ensure_admin(admin)
    now = resolve(now)
    tx = _manual_tx(db, transaction_id, "edited")
    if status is not None and status not in EDITABLE_STATUSES:
        raise InvalidInput("Manual transactions can only be marked completed or refunded")

    if status == TransactionStatus.REFUNDED and tx.status == TransactionStatus.COMPLETED:
        entitlements.revoke_if_current(db, tx, now)
    elif status == TransactionStatus.COMPLETED and tx.status == TransactionStatus.REFUNDED:
        grant = entitlements.grant_or_extend(db, tx.user_id, tx.category, tx.duration_days, tx.id, now)
        tx.completed_at = now
        tx.access_expires_at = grant.expires_at

    tx.amount = amount
    tx.currency = currency
    tx.payment_method = method
    tx.notes = notes
    if status is not None:
        tx.status = status
    db.commit()
    db.refresh(tx)
    return tx


def delete_manual(db: Session, admin: User, transaction_id: int, now: datetime | None = None) -> Dict[str, Any]:
    ensure_admin(admin)
    tx = _manual_tx(db, transaction_id, "deleted")
    revoked = False
    if tx.status == TransactionStatus.COMPLETED:
        revoked = entitlements.revoke_if_current(db, tx, now)
    db.delete(tx)
    db.commit()
    logger.info("Admin %s deleted manual transaction %s (access revoked: %s)", admin.id, transaction_id, revoked)
    return {"success": True, "access_revoked": revoked}


def get_access_impact(db: Session, admin: User, transaction_id: int, now: datetime | None = None) -> Dict[str, Any]:
    ensure_admin(admin)
    tx = db.get(Transaction, transaction_id)
    if tx is None:
        raise NotFound("Transaction")
    return entitlements.access_impact(db, tx, now)


# =====================================================
# Listings
# =====================================================

def list_my_transactions(db: Session, user: User) -> List[Transaction]:
    return list(db.execute(
        select(Transaction)
        .where(Transaction.user_id == user.id, Transaction.status != TransactionStatus.PENDING)
        .order_by(Transaction.created_at.desc())
    ).scalars())


def list_transactions(
    db: Session,
    admin: User,
    *,
    origin: Optional[TransactionOrigin] = None,
    status: Optional[TransactionStatus] = None,
    user_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Transaction]:
    ensure_admin(admin)
    stmt = select(Transaction)
    if origin is not None:
        stmt = stmt.where(Transaction.origin == origin)
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars())


def transaction_stats(db: Session, admin: User, now: datetime | None = None) -> Dict[str, Any]:
    ensure_admin(admin)
    now = resolve(now)
    completed = Transaction.status == TransactionStatus.COMPLETED
    total_count, total_revenue = db.execute(
        select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0)).where(completed)
    ).one()
    recent_count, recent_revenue = db.execute(
        select(func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0)).where(
            completed, Transaction.completed_at >= now - timedelta(days=30)
        )
    ).one()
    by_origin = dict(db.execute(
        select(Transaction.origin, func.count(Transaction.id)).group_by(Transaction.origin)
    ).all())
    by_category = dict(db.execute(
        select(Transaction.category, func.count(Transaction.id)).where(completed).group_by(Transaction.category)
    ).all())
    return {
        "total_revenue": round(float(total_revenue), 2),
        "total_completed": total_count,
        "recent_revenue": round(float(recent_revenue), 2),
        "recent_completed": recent_count,
        "by_origin": {o.value: by_origin.get(o, 0) for o in TransactionOrigin},
        "by_category": {c.value: by_category.get(c, 0) for c in AccessCategory},
    }
