"""Stripe SDK wrapper.

WHAT:
    The handful of Stripe calls the reconcilers need: webhook verification,
    customers, checkout session line items, payment intents, promotion
    codes and customer metadata updates. Results are returned as plain
    dicts.

WHY:
    Reconcilers depend on this narrow surface instead of the global
    `stripe` module, so tests swap in an in-memory fake and the API key is
    passed per call rather than mutated globally.

REFERENCES:
    - https://docs.stripe.com/api
    - https://docs.stripe.com/webhooks#verify-official-libraries
"""

import json
import logging
from typing import Any, Dict, List, Optional

import stripe

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Plain-dict copy of a StripeObject (its str() is the JSON body)."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class StripeGateway:
    """Thin, dict-returning facade over the Stripe SDK."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a dict.

        Raises:
            stripe.SignatureVerificationError: bad or missing signature
            ValueError: invalid payload or missing webhook secret
        """
        if not self.webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
        stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        # Keep the raw JSON rather than the SDK object for storage
        return json.loads(payload)

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.Customer.retrieve(customer_id, api_key=self.api_key))

    def update_customer_metadata(
        self,
        customer_id: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        customer = stripe.Customer.modify(
            customer_id,
            metadata=metadata,
            api_key=self.api_key,
            idempotency_key=idempotency_key,
        )
        return _to_dict(customer)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key))

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = stripe.checkout.Session.retrieve(
            session_id,
            expand=["total_details.breakdown.discounts.discount.promotion_code"],
            api_key=self.api_key,
        )
        return _to_dict(session)

    def find_checkout_session_for_payment(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        sessions = stripe.checkout.Session.list(
            payment_intent=payment_intent_id,
            limit=1,
            api_key=self.api_key,
        )
        data = _to_dict(sessions).get("data") or []
        return data[0] if data else None

    def list_checkout_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        items = stripe.checkout.Session.list_line_items(
            session_id,
            limit=100,
            expand=["data.price.product"],
            api_key=self.api_key,
        )
        return _to_dict(items).get("data") or []

    def retrieve_promotion_code(self, promotion_code_id: str) -> Dict[str, Any]:
        return _to_dict(stripe.PromotionCode.retrieve(promotion_code_id, api_key=self.api_key))

    def update_payment_intent_metadata(
        self,
        payment_intent_id: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        intent = stripe.PaymentIntent.modify(
            payment_intent_id,
            metadata=metadata,
            api_key=self.api_key,
            idempotency_key=idempotency_key,
        )
        return _to_dict(intent)
