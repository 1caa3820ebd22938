"""Hosted-checkout payment processor adapter (Stripe)."""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from nomaqbank.core.config import settings
from nomaqbank.core.errors import InvalidInput, InvalidState
from nomaqbank.models.orm import AccessProduct, User

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    session_id: str
    url: str


class StripeProcessor:
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_checkout(
        self, *, user: User, product: AccessProduct, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        if not self.api_key:
            raise InvalidState("Payment processor is not configured")
        if product.processor_price_ref:
            line_item: Dict[str, Any] = {"price": product.processor_price_ref, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": product.currency,
                    "unit_amount": int(round(product.price * 100)),
                    "product_data": {"name": product.name, "description": product.description or None},
                },
                "quantity": 1,
            }
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            mode="payment",
            line_items=[line_item],
            customer_email=user.email or None,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": str(user.id),
                "product_code": product.code,
                "product_version": str(product.version),
            },
        )
        logger.info("Created checkout session %s for user %s (%s)", session.id, user.id, product.code)
        return CheckoutSession(session_id=session.id, url=session.url)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and return the decoded event."""
        if not self.webhook_secret:
            raise InvalidState("Payment webhook secret is not configured")
        if not signature:
            raise InvalidInput("Missing webhook signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidInput("Invalid webhook signature") from exc
        except ValueError as exc:
            raise InvalidInput("Invalid webhook payload") from exc
        return json.loads(payload)


def get_processor() -> StripeProcessor:
    return StripeProcessor(
        api_key=settings.STRIPE_SECRET_KEY.get_secret_value() if settings.STRIPE_SECRET_KEY else None,
        webhook_secret=(
            settings.STRIPE_WEBHOOK_SECRET.get_secret_value() if settings.STRIPE_WEBHOOK_SECRET else None
        ),
    )
