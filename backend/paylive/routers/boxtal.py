"""Boxtal endpoints.

WHAT:
    1. Proxy: parcel points and price quotes for the checkout page, shipping
       order management for store owners
    2. Webhook: POST /api/boxtal/webhook -> DOCUMENT_CREATED, TRACKING_CHANGED

WHY:
    Boxtal credentials stay on the server. Webhook deliveries are verified
    with the shared HMAC secret, de-duplicated, and always acknowledged once
    the signature is valid so Boxtal stops redelivering.

REFERENCES:
    - https://developer.boxtal.com/
    - paylive/services/tracking_reconciler.py
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    Settings,
    get_boxtal_client,
    get_current_identity,
    get_email_service,
    get_settings,
    get_stripe_gateway,
)
from ..models import WebhookProviderEnum
from ..services.boxtal_client import BoxtalAPIError, BoxtalClient, verify_boxtal_signature
from ..services.clerk_service import ClerkIdentity
from ..services.email_service import EmailService
from ..services.stripe_gateway import StripeGateway
from ..services.tracking_reconciler import TrackingReconciler
from ..services.webhook_events import boxtal_event_key, is_event_processed, record_event
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/boxtal", tags=["Boxtal"])

# Boxtal statuses passed through to the caller; anything else is a 500
PASSTHROUGH_STATUSES = {400, 404, 409, 422}


def _http_error(error: BoxtalAPIError, what: str) -> HTTPException:
    code = error.status_code if error.status_code in PASSTHROUGH_STATUSES else status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail={"error": what, "details": error.errors})


def _query_params(body: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {key: str(value) for key, value in (body or {}).items() if value is not None}


# =============================================================================
# PROXY
# =============================================================================

@router.post("/parcel-points", summary="Search parcel points")
async def parcel_points(
    body: Optional[Dict[str, Any]] = Body(default=None),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
):
    try:
        return await boxtal.search_parcel_points(_query_params(body))
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to get parcel points")


@router.post(
    "/cotation",
    response_class=Response,
    responses={200: {"content": {"application/xml": {}}}},
    summary="Price quotes (legacy v1 API, XML)",
)
async def cotation(
    body: Optional[Dict[str, Any]] = Body(default=None),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
):
    try:
        xml = await boxtal.get_rates(_query_params(body))
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to get quotes")
    return Response(content=xml, media_type="application/xml")


@router.post("/shipping-orders", summary="Create a shipping order")
async def create_shipping_order(
    payload: Dict[str, Any] = Body(...),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    try:
        order = await boxtal.create_shipping_order(payload)
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to create shipping order")
    logger.info(f"[BOXTAL] Shipping order created by {identity.clerk_id}")
    return order


@router.get("/shipping-orders/{order_id}", summary="Read a shipping order")
async def get_shipping_order(
    order_id: str,
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    try:
        return await boxtal.get_shipping_order(order_id)
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to get shipping order")


@router.delete("/shipping-orders/{order_id}", summary="Cancel a shipping order")
async def cancel_shipping_order(
    order_id: str,
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    try:
        result = await boxtal.cancel_shipping_order(order_id)
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to cancel shipping order")
    logger.info(f"[BOXTAL] Shipping order {order_id} cancelled by {identity.clerk_id}")
    return result


@router.get("/shipping-orders/{order_id}/documents", summary="Shipping documents (labels)")
async def shipping_documents(
    order_id: str,
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    try:
        return await boxtal.get_shipping_documents(order_id)
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to get shipping documents")


@router.get("/shipping-orders/{order_id}/tracking", summary="Tracking events")
async def shipping_tracking(
    order_id: str,
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    try:
        return await boxtal.get_tracking(order_id)
    except BoxtalAPIError as e:
        raise _http_error(e, "Failed to get tracking")


# =============================================================================
# WEBHOOK
# =============================================================================

@router.post(
    "/webhook",
    response_model=schemas.WebhookAck,
    response_model_exclude_none=True,
    summary="Boxtal webhook handler",
    description="""
    Handled events:
        - DOCUMENT_CREATED: store the label URL, mail the label to the store owner
        - TRACKING_CHANGED: status, tracking URL, final delivery cost

    Security:
        - HMAC-SHA256 of the raw body in `x-bxt-signature`
        - Idempotent: redeliveries of the same body are skipped
    """,
)
async def handle_boxtal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    email: EmailService = Depends(get_email_service),
):
    if not settings.BOXTAL_WEBHOOK_SECRET:
        logger.error("[BOXTAL] BOXTAL_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook secret not configured")

    body = await request.body()
    if not verify_boxtal_signature(body, request.headers.get("x-bxt-signature"), settings.BOXTAL_WEBHOOK_SECRET):
        logger.warning("[BOXTAL] Webhook signature verification failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event")

    event_type = event.get("type") or "unknown"
    order_id = event.get("shippingOrderId")
    logger.info(f"[BOXTAL] Received webhook {event_type} for {order_id}")

    event_key = boxtal_event_key(event, body)
    if is_event_processed(event_key, db):
        logger.info(f"[BOXTAL] Skipping duplicate event: {event_key}")
        return schemas.WebhookAck(received=True, action="skipped")

    try:
        outcome = await TrackingReconciler(db, stripe_gateway, boxtal, email).handle_event(event)
        record_event(event_key, WebhookProviderEnum.boxtal, event_type, order_id, event, outcome.action, db)
        return schemas.WebhookAck(received=True, action=outcome.action)
    except Exception as e:
        db.rollback()
        logger.error(f"[BOXTAL] Webhook processing error for {order_id}: {e}", exc_info=True)
        capture_exception(e, extra={"event_type": event_type, "shipping_order_id": order_id})
        await email.send_admin_error(
            subject="Erreur webhook Boxtal",
            message=f"Le traitement de l'évènement {event_type} a échoué : {e}",
            context={"shipping_order_id": order_id, "event_key": event_key},
        )
        record_event(event_key, WebhookProviderEnum.boxtal, event_type, order_id, event, f"error: {e}", db)
        # Still 200 so Boxtal does not redeliver forever
        return schemas.WebhookAck(received=True, action="error")
