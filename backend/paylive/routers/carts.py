"""Cart endpoints.

WHAT: Add, list, update and remove pre-checkout cart rows; store-owner view
      of a store's carts; cart recap email
WHY: The checkout session is built from these rows, and the Stripe webhook
     uses them to know which paid items are still available

REFERENCES:
    - paylive/services/checkout_reconciler.py (consumes cart rows)
    - paylive/services/open_shipment_editor.py (rebuilds cart rows)
"""

import logging
from collections import OrderedDict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, get_current_customer, get_current_identity, get_email_service, get_settings
from ..models import CartItem, Store
from ..services.clerk_service import ClerkIdentity
from ..services.email_service import EmailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/carts", tags=["Carts"])


@router.post(
    "",
    response_model=schemas.CartCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a product to a cart",
)
def add_to_cart(payload: schemas.CartItemCreate, db: Session = Depends(get_db)):
    if db.get(Store, payload.store_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")

    existing = db.query(CartItem.id).filter(
        CartItem.customer_stripe_id == payload.customer_stripe_id,
        CartItem.store_id == payload.store_id,
        CartItem.product_reference == payload.product_reference,
    )
    if payload.payment_id:
        existing = existing.filter(CartItem.payment_id == payload.payment_id)
    else:
        existing = existing.filter(CartItem.payment_id.is_(None))
    if existing.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "reference_exists", "message": "This reference is already in a cart"},
        )

    item = CartItem(**payload.model_dump())
    db.add(item)
    db.commit()
    db.refresh(item)
    logger.info(f"[CARTS] {payload.customer_stripe_id} added {payload.product_reference} (store {payload.store_id})")
    return schemas.CartCreateResponse(success=True, item=item)


@router.get(
    "/summary",
    response_model=schemas.CartSummaryResponse,
    summary="Cart content grouped by store",
    description="""
    Rows of the buyer, newest first, grouped by store. When `paymentId` is
    given (editing a paid order) only rows bound to that payment and rows
    not bound to any payment are returned.
    """,
)
def cart_summary(
    stripe_id: Optional[str] = Query(default=None, alias="stripeId"),
    payment_id: Optional[str] = Query(default=None, alias="paymentId"),
    db: Session = Depends(get_db),
):
    if not stripe_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="stripeId is required")

    query = db.query(CartItem).filter(CartItem.customer_stripe_id == stripe_id)
    if payment_id:
        query = query.filter((CartItem.payment_id == payment_id) | (CartItem.payment_id.is_(None)))
    rows = query.order_by(CartItem.id.desc()).all()

    stores = {}
    store_ids = {row.store_id for row in rows}
    if store_ids:
        stores = {store.id: store for store in db.query(Store).filter(Store.id.in_(store_ids))}

    grouped: "OrderedDict[int, dict]" = OrderedDict()
    for row in rows:
        group = grouped.setdefault(row.store_id, {"store": stores.get(row.store_id), "total": 0.0, "items": []})
        group["items"].append(row)
        group["total"] += (row.value or 0) * (row.quantity or 1)

    items_by_store = [
        schemas.CartStoreGroup(store=group["store"], total=round(group["total"], 2), items=group["items"])
        for group in grouped.values()
    ]
    grand_total = round(sum(group.total for group in items_by_store), 2)
    return schemas.CartSummaryResponse(items_by_store=items_by_store, grand_total=grand_total)


@router.put("/{item_id}", response_model=schemas.CartCreateResponse, summary="Update a cart row")
def update_cart_item(item_id: int, payload: schemas.CartItemUpdate, db: Session = Depends(get_db)):
    item = db.get(CartItem, item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart item not found")

    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(item, field, value)
    db.commit()
    db.refresh(item)
    return schemas.CartCreateResponse(success=True, item=item)


@router.delete("", response_model=schemas.SuccessResponse, summary="Remove a cart row")
def delete_cart_item(payload: schemas.CartDeleteRequest, db: Session = Depends(get_db)):
    deleted = db.query(CartItem).filter(CartItem.id == payload.id).delete(synchronize_session=False)
    db.commit()
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart item not found")
    return schemas.SuccessResponse(success=True)


@router.get(
    "/store/{slug}",
    response_model=schemas.StoreCartsResponse,
    summary="Carts of a store (owner or admin)",
)
def store_carts(
    slug: str,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_identity),
):
    store = db.query(Store).filter(Store.slug == slug).first()
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    if not identity.is_admin and store.clerk_id != identity.clerk_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the owner of this store")

    items = db.query(CartItem).filter(CartItem.store_id == store.id).order_by(CartItem.id.desc()).all()
    return schemas.StoreCartsResponse(store=store, items=items)


@router.post("/recap", response_model=schemas.SuccessResponse, summary="Email the buyer a cart recap")
async def send_cart_recap(
    payload: schemas.CartRecapRequest,
    db: Session = Depends(get_db),
    identity: ClerkIdentity = Depends(get_current_customer),
    email: EmailService = Depends(get_email_service),
    settings: Settings = Depends(get_settings),
):
    store = db.get(Store, payload.store_id)
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    if not identity.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No email address on this account")

    rows = (
        db.query(CartItem)
        .filter(CartItem.customer_stripe_id == identity.stripe_customer_id, CartItem.store_id == store.id)
        .order_by(CartItem.id)
        .all()
    )
    if not rows:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart is empty")

    items = [
        {"reference": row.product_reference, "quantity": row.quantity, "description": row.description}
        for row in rows
    ]
    total = round(sum((row.value or 0) * (row.quantity or 1) for row in rows), 2)
    result = await email.send_cart_recap(
        to=identity.email,
        store_name=store.name,
        items=items,
        total_eur=total,
        checkout_url=f"{settings.FRONTEND_URL.rstrip('/')}/checkout/{store.slug}",
    )
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Recap email could not be sent")
    return schemas.SuccessResponse(success=True, message="Recap sent")
