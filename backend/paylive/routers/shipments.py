"""Shipment endpoints.

WHAT: Buyer order history, open-shipment editing, cancellation, return
      requests, invoices; store-owner shipment list
WHY: Every route acts on behalf of the authenticated Clerk user, resolved to
     a Stripe customer id for buyer actions

REFERENCES:
    - paylive/services/open_shipment_editor.py
    - paylive/services/invoice_renderer.py
"""

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    get_boxtal_client,
    get_current_customer,
    get_current_identity,
    get_email_service,
    get_stripe_gateway,
)
from ..models import Shipment, Store
from ..services import open_shipment_editor as editor
from ..services.boxtal_client import BoxtalAPIError, BoxtalClient
from ..services.clerk_service import ClerkIdentity
from ..services.email_service import EmailService
from ..services.invoice_renderer import invoice_number, render_invoice_pdf
from ..services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/shipments", tags=["Shipments"])


def _http_error(error: editor.OpenShipmentError) -> HTTPException:
    if isinstance(error, editor.OpenShipmentConflict):
        open_shipment = schemas.ShipmentOut.model_validate(error.open_shipment)
        return HTTPException(
            status_code=error.status_code,
            detail={"error": error.message, "openShipment": open_shipment.model_dump(mode="json")},
        )
    return HTTPException(status_code=error.status_code, detail=error.message)


def _store_by_slug(db: Session, slug: str) -> Store:
    store = db.query(Store).filter(Store.slug == slug).first()
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


# =============================================================================
# LISTINGS
# =============================================================================

@router.get(
    "/customer",
    response_model=schemas.ShipmentListResponse,
    summary="Shipments of a buyer",
    description="Newest first, optionally restricted to one store.",
)
def customer_shipments(
    stripe_id: Optional[str] = Query(default=None, alias="stripeId"),
    store_slug: Optional[str] = Query(default=None, alias="storeSlug"),
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    if not stripe_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="stripeId is required")
    if stripe_id != identity.stripe_customer_id and not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your shipments")

    query = db.query(Shipment).filter(Shipment.customer_stripe_id == stripe_id)
    if store_slug:
        query = query.filter(Shipment.store_id == _store_by_slug(db, store_slug).id)
    shipments = query.order_by(Shipment.id.desc()).all()
    return schemas.ShipmentListResponse(shipments=shipments)


@router.get(
    "/stores-for-customer/{stripe_id}",
    response_model=schemas.StoresForCustomerResponse,
    summary="Slugs of the stores a buyer ordered from",
)
def stores_for_customer(
    stripe_id: str,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    if stripe_id != identity.stripe_customer_id and not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your shipments")

    rows = (
        db.query(Store.slug)
        .join(Shipment, Shipment.store_id == Store.id)
        .filter(Shipment.customer_stripe_id == stripe_id)
        .distinct()
        .order_by(Store.slug)
        .all()
    )
    return schemas.StoresForCustomerResponse(slugs=[row.slug for row in rows])


@router.get(
    "/store/{store_slug}",
    response_model=schemas.StoreShipmentsResponse,
    summary="Shipments of a store (owner or admin)",
)
def store_shipments(
    store_slug: str,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    store = _store_by_slug(db, store_slug)
    if not identity.is_admin and store.clerk_id != identity.clerk_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this store")

    shipments = db.query(Shipment).filter(Shipment.store_id == store.id).order_by(Shipment.id.desc()).all()
    return schemas.StoreShipmentsResponse(shipments=shipments, store=store)


# =============================================================================
# OPEN-SHIPMENT EDITING
# =============================================================================

@router.post(
    "/open-shipment",
    response_model=schemas.OpenShipmentResponse,
    summary="Open a paid shipment for editing",
    description="""
    Restocks the shipment's items so they can be put back in the cart.
    Answers 409 with the currently open shipment when another shipment of
    the same store is open, unless `force` is set.
    """,
)
def open_shipment(
    payload: schemas.OpenShipmentRequest,
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
):
    try:
        shipment = editor.open_shipment(db, customer.stripe_customer_id, payload.shipment_id, force=payload.force)
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    return schemas.OpenShipmentResponse(success=True, shipment=shipment)


@router.post(
    "/open-shipment-by-payment",
    response_model=schemas.OpenShipmentResponse,
    summary="Open the shipment of a payment for editing",
)
def open_shipment_by_payment(
    payload: schemas.OpenShipmentByPaymentRequest,
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
):
    try:
        shipment = editor.open_shipment_by_payment(
            db,
            customer.stripe_customer_id,
            payload.payment_id,
            force=payload.force,
            store_id=payload.store_id,
        )
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    return schemas.OpenShipmentResponse(success=True, shipment=shipment)


@router.get(
    "/active-open-shipment",
    response_model=schemas.ActiveOpenShipmentResponse,
    response_model_by_alias=True,
    summary="Currently open shipment of the buyer for a store",
)
def active_open_shipment(
    store_id: int = Query(alias="storeId"),
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
):
    shipment = editor.get_active_open_shipment(db, customer.stripe_customer_id, store_id)
    return schemas.ActiveOpenShipmentResponse(open_shipment=shipment)


@router.post(
    "/cancel-open-shipment",
    response_model=schemas.CancelOpenShipmentResponse,
    summary="Abandon the current edit",
)
def cancel_open_shipment(
    payload: schemas.CancelOpenShipmentRequest,
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
):
    try:
        closed = editor.cancel_open_shipment(
            db, customer.stripe_customer_id, payload.store_id, payment_id=payload.payment_id
        )
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    return schemas.CancelOpenShipmentResponse(success=True, closed=closed)


@router.post(
    "/rebuild-carts-from-payment",
    response_model=schemas.RebuildCartsResponse,
    summary="Recreate cart rows from what a payment bought",
)
def rebuild_carts_from_payment(
    payload: schemas.RebuildCartsRequest,
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
):
    try:
        items = editor.rebuild_carts_from_payment(
            db, stripe_gateway, customer.stripe_customer_id, payload.payment_id, store_id=payload.store_id
        )
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    except stripe.StripeError as e:
        logger.error(f"[OPEN_SHIPMENT] Stripe lookup failed for {payload.payment_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe lookup failed")
    return schemas.RebuildCartsResponse(success=True, items=items)


# =============================================================================
# CANCELLATION, RETURN, INVOICE
# =============================================================================

@router.post(
    "/request-return",
    response_model=schemas.ShipmentResponse,
    summary="Ask the store for a return",
)
async def request_return(
    payload: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    customer: ClerkIdentity = Depends(get_current_customer),
    email: EmailService = Depends(get_email_service),
):
    try:
        shipment = await editor.request_return(
            db, email, customer.stripe_customer_id, payload.shipment_id, reason=payload.reason
        )
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    return schemas.ShipmentResponse(shipment=shipment)


@router.post(
    "/{shipment_id}/cancel",
    response_model=schemas.ShipmentResponse,
    summary="Cancel a shipment that has not been handed over yet",
)
async def cancel_shipment(
    shipment_id: int,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
    boxtal: BoxtalClient = Depends(get_boxtal_client),
    email: EmailService = Depends(get_email_service),
):
    try:
        shipment = await editor.cancel_shipment(db, boxtal, email, identity, shipment_id)
    except editor.OpenShipmentError as e:
        raise _http_error(e)
    except BoxtalAPIError as e:
        logger.error(f"[OPEN_SHIPMENT] Boxtal cancellation failed for shipment {shipment_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Boxtal cancellation failed")
    return schemas.ShipmentResponse(shipment=shipment)


@router.get(
    "/{shipment_id}/invoice",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}}},
    summary="Invoice PDF of a shipment",
)
def shipment_invoice(
    shipment_id: int,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
):
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shipment not found")

    store = shipment.store
    is_buyer = bool(identity.stripe_customer_id) and identity.stripe_customer_id == shipment.customer_stripe_id
    is_owner = store is not None and bool(store.clerk_id) and store.clerk_id == identity.clerk_id
    if not (is_buyer or is_owner or identity.is_admin):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to read this invoice")

    try:
        customer = stripe_gateway.retrieve_customer(shipment.customer_stripe_id)
    except stripe.StripeError as e:
        logger.warning(f"[INVOICE] Customer {shipment.customer_stripe_id} unavailable, invoice without buyer block: {e}")
        customer = None

    pdf = render_invoice_pdf(shipment, store, customer)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="facture-{invoice_number(shipment)}.pdf"'},
    )
