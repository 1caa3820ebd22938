import hmac
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from nomaqbank.core.config import settings
from nomaqbank.core.database import get_db
from nomaqbank.core.errors import NotFound, Unauthenticated
from nomaqbank.services import payments, users
from nomaqbank.services.processor import StripeProcessor, get_processor

logger = logging.getLogger(__name__)

router = APIRouter()


def handle_payment_event(db: Session, event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event.get("type")
    event_id = event["id"]
    session = event.get("data", {}).get("object", {})
    logger.info("Payment webhook %s (%s)", event_id, event_type)

    try:
        if event_type == "checkout.session.completed":
            if session.get("payment_status") != "paid":
                return {"received": True, "ignored": "unpaid"}
            result = payments.complete_by_external_ref(
                db, session["id"], event_id, payment_ref=session.get("payment_intent")
            )
        elif event_type == "checkout.session.expired":
            result = payments.fail_by_external_ref(db, session["id"], event_id)
        else:
            return {"received": True, "ignored": event_type}
    except NotFound as exc:
        logger.warning("Payment webhook %s: %s", event_id, exc.message)
        return {"received": True, "ignored": "unknown_transaction"}
    return {"received": True, **result}


@router.post("/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    processor: StripeProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    payload = await request.body()
    event = processor.construct_event(payload, stripe_signature)
    return await run_in_threadpool(handle_payment_event, db, event)


@router.post("/identity")
def identity_webhook(
    event: Dict[str, Any],
    x_webhook_secret: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    expected = settings.IDENTITY_WEBHOOK_SECRET
    if expected is None or not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret, expected.get_secret_value()
    ):
        raise Unauthenticated("Invalid webhook secret")

    event_type = event.get("type")
    data = event.get("data") or {}
    external_id = data.get("id")
    if not external_id:
        return {"received": True, "ignored": "missing_id"}

    if event_type in ("user.created", "user.updated"):
        user = users.upsert_from_identity(db, external_id, data)
        return {"received": True, "user_id": user.id}
    if event_type == "user.deleted":
        return {"received": True, "deleted": users.soft_delete_from_identity(db, external_id)}
    logger.info("Ignoring identity event %s", event_type)
    return {"received": True, "ignored": event_type}
