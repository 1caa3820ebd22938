from datetime import timedelta

import pytest

from nomaqbank.core.errors import AccessExpired
from nomaqbank.models.orm import (
    AccessCategory, AccessGrant, Transaction, TransactionOrigin, TransactionStatus,
)
from nomaqbank.services import entitlements, payments
from tests.conftest import NOW

EXAM = AccessCategory.EXAM


def _tx(db, user, product, completed_at, expires_at, status=TransactionStatus.COMPLETED):
    tx = Transaction(
        user_id=user.id, product_id=product.id, origin=TransactionOrigin.MANUAL, status=status,
        amount=49.0, currency="usd", category=product.category, duration_days=product.duration_days,
        completed_at=completed_at, access_expires_at=expires_at,
    )
    db.add(tx)
    db.commit()
    return tx


def test_admin_always_has_access(db, admin):
    assert entitlements.has_access(db, admin, EXAM, NOW)
    assert entitlements.has_access(db, admin, AccessCategory.TRAINING, NOW)


def test_no_grant_means_no_access(db, user):
    assert not entitlements.has_access(db, user, EXAM, NOW)
    assert entitlements.get_access_status(db, user, NOW) == {"exam_access": None, "training_access": None}


def test_expired_grant_denies_access(db, user, products):
    tx = _tx(db, user, products["exam"], NOW - timedelta(days=40), NOW - timedelta(days=10))
    entitlements.grant_or_extend(db, user.id, EXAM, 30, tx.id, NOW - timedelta(days=40))
    db.commit()
    assert not entitlements.has_access(db, user, EXAM, NOW)
    assert entitlements.get_access_status(db, user, NOW)["exam_access"] is None


def test_grants_stack_instead_of_overwriting(db, user, products):
    first = _tx(db, user, products["exam"], NOW, None)
    second = _tx(db, user, products["exam"], NOW, None)
    entitlements.grant_or_extend(db, user.id, EXAM, 30, first.id, NOW)
    grant = entitlements.grant_or_extend(db, user.id, EXAM, 30, second.id, NOW)
    db.commit()

    assert grant.expires_at == NOW + timedelta(days=60)
    assert grant.last_transaction_id == second.id
    assert db.query(AccessGrant).count() == 1


def test_extension_after_expiry_starts_from_now(db, user, products):
    old = _tx(db, user, products["exam"], NOW - timedelta(days=40), None)
    entitlements.grant_or_extend(db, user.id, EXAM, 30, old.id, NOW - timedelta(days=40))
    new = _tx(db, user, products["exam"], NOW, None)
    grant = entitlements.grant_or_extend(db, user.id, EXAM, 30, new.id, NOW)
    assert grant.expires_at == NOW + timedelta(days=30)


def test_days_remaining_rounds_up(db, user, products):
    tx = _tx(db, user, products["exam"], NOW, None)
    entitlements.grant_or_extend(db, user.id, EXAM, 30, tx.id, NOW)
    db.commit()
    status = entitlements.get_access_status(db, user, NOW + timedelta(hours=1))
    assert status["exam_access"]["days_remaining"] == 30
    assert status["exam_access"]["expires_at"] == NOW + timedelta(days=30)
    assert status["training_access"] is None


def test_require_access_raises_access_expired(db, user):
    with pytest.raises(AccessExpired) as exc:
        entitlements.require_access(db, user, AccessCategory.TRAINING, NOW)
    assert exc.value.code == "ACCESS_EXPIRED"
    assert exc.value.category == "training"


def test_refunding_current_transaction_deletes_grant(db, admin, user, give_access):
    tx = give_access(user, now=NOW)
    payments.update_manual(
        db, admin, tx.id, amount=49.0, currency="usd", method="cash", status=TransactionStatus.REFUNDED, now=NOW
    )
    assert entitlements.get_grant(db, user.id, EXAM) is None


def test_refunding_superseded_transaction_leaves_grant(db, admin, user, give_access):
    older = give_access(user, now=NOW - timedelta(days=2))
    newer = give_access(user, now=NOW - timedelta(days=1))
    before = entitlements.get_grant(db, user.id, EXAM).expires_at

    payments.update_manual(
        db, admin, older.id, amount=49.0, currency="usd", method="cash", status=TransactionStatus.REFUNDED, now=NOW
    )

    grant = entitlements.get_grant(db, user.id, EXAM)
    assert grant is not None
    assert grant.expires_at == before
    assert grant.last_transaction_id == newer.id


def test_revoke_recomputes_from_later_live_transaction(db, user, products):
    older = _tx(db, user, products["exam"], NOW - timedelta(days=2), NOW + timedelta(days=28))
    later = _tx(db, user, products["exam"], NOW - timedelta(days=1), NOW + timedelta(days=29))
    db.add(AccessGrant(user_id=user.id, category=EXAM, expires_at=NOW + timedelta(days=58), last_transaction_id=older.id))
    db.commit()

    assert entitlements.revoke_if_current(db, older, NOW) is True
    db.commit()

    grant = entitlements.get_grant(db, user.id, EXAM)
    assert grant.last_transaction_id == later.id
    assert grant.expires_at == NOW + timedelta(days=29)


def test_access_impact_preview(db, admin, user, give_access):
    older = give_access(user, now=NOW - timedelta(days=2))
    newer = give_access(user, now=NOW - timedelta(days=1))

    assert payments.get_access_impact(db, admin, older.id, NOW)["will_revoke_access"] is False
    impact = payments.get_access_impact(db, admin, newer.id, NOW)
    assert impact["will_revoke_access"] is True
    assert impact["category"] == "exam"
    assert impact["current_access_expires_at"] == newer.access_expires_at
