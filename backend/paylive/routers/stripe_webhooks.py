"""Stripe webhook.

WHAT: POST /api/stripe/webhook -> checkout.session.completed
WHY: A completed checkout turns into a shipment, stock and credit movements
     and emails. Stripe retries on non-2xx, so every verified delivery is
     acknowledged; processing failures are reported and left to the saga
     reconciliation job.

REFERENCES:
    - https://docs.stripe.com/webhooks
    - paylive/services/checkout_reconciler.py
"""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_boxtal_client, get_email_service, get_settings, get_stripe_gateway
from ..models import WebhookProviderEnum
from ..services.boxtal_client import BoxtalClient
from ..services.checkout_reconciler import CheckoutReconciler
from ..services.email_service import EmailService
from ..services.stripe_gateway import StripeGateway
from ..services.webhook_events import is_event_processed, record_event, stripe_event_key
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe"])


@router.post(
    "/webhook",
    response_model=schemas.WebhookAck,
    response_model_exclude_none=True,
    summary="Stripe webhook handler",
    description="""
    Handled events:
        - checkout.session.completed: create (or replace) the shipment of the payment

    Security:
        - `stripe-signature` verified against STRIPE_WEBHOOK_SECRET
        - Idempotent: event ids are recorded, and the reconciler itself keys
          on the PaymentIntent id
    """,
)
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    email: EmailService = Depends(get_email_service),
):
    body = await request.body()
    try:
        event = stripe_gateway.construct_event(body, request.headers.get("stripe-signature"))
    except stripe.SignatureVerificationError as e:
        logger.warning(f"[STRIPE_WEBHOOK] Signature verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except ValueError as e:
        logger.error(f"[STRIPE_WEBHOOK] Invalid payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid payload: {e}")

    event_type = event.get("type") or "unknown"
    data_object = (event.get("data") or {}).get("object") or {}
    object_id = data_object.get("id")
    logger.info(f"[STRIPE_WEBHOOK] Received {event_type} ({event.get('id')})")

    event_key = stripe_event_key(event)
    if is_event_processed(event_key, db):
        logger.info(f"[STRIPE_WEBHOOK] Skipping duplicate event: {event_key}")
        return schemas.WebhookAck(received=True, action="skipped")

    if event_type != "checkout.session.completed":
        logger.info(f"[STRIPE_WEBHOOK] Unhandled event type: {event_type}")
        return schemas.WebhookAck(received=True, action="ignored")

    try:
        reconciler = CheckoutReconciler(db, stripe_gateway, boxtal, email, settings)
        outcome = await reconciler.reconcile(data_object, event_id=event.get("id"))
        record_event(event_key, WebhookProviderEnum.stripe, event_type, object_id, event, outcome.action, db)
        return schemas.WebhookAck(received=True, action=outcome.action)
    except Exception as e:
        db.rollback()
        logger.error(f"[STRIPE_WEBHOOK] Processing error for session {object_id}: {e}", exc_info=True)
        capture_exception(e, extra={"event_id": event.get("id"), "session_id": object_id})
        await email.send_admin_error(
            subject="Erreur webhook Stripe",
            message=f"Le traitement du paiement a échoué : {e}",
            context={"event_id": event.get("id"), "session_id": object_id},
        )
        record_event(event_key, WebhookProviderEnum.stripe, event_type, object_id, event, f"error: {e}", db)
        # Still 200 so Stripe does not retry; the saga job picks up partial work
        return schemas.WebhookAck(received=True, action="error")
