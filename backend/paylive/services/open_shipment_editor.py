"""Open-shipment editor.

WHAT:
    Lets a buyer reopen a paid order to change it before it ships:
    - open a shipment (by id or by payment), restocking its items so they
      can be put back in the cart
    - query the active open shipment of a (buyer, store) pair
    - abandon the edit (items reserved again, rebuilt cart rows dropped)
    - rebuild the cart rows from the payment's Stripe line items
    Plus the other buyer actions on a shipment: cancel and return request.

WHY:
    At most one shipment per (buyer, store) may be open. The partial unique
    index `uq_shipments_one_open_per_customer_store` enforces it; the editor
    reports the conflict (409) or, with `force`, closes the other shipment
    first. Stock moves and flag changes share one transaction, so a failed
    stock update leaves the shipment closed.

REFERENCES:
    - paylive/services/stock_adjustment.py
    - paylive/routers/shipments.py (HTTP surface)
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import CANCELLABLE_STATUSES, CANCELLED_STATUS, CartItem, Shipment
from .checkout_reconciler import split_line_items
from .clerk_service import ClerkIdentity
from .product_reference import shipment_line_items
from .stock_adjustment import StockAdjustmentError, StockAdjustmentMode, apply_stock_adjustment

logger = logging.getLogger(__name__)


class OpenShipmentError(Exception):
    """Base error of the editor; `status_code` is the HTTP status to answer."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ShipmentNotFound(OpenShipmentError):
    status_code = 404


class ShipmentForbidden(OpenShipmentError):
    status_code = 403


class ShipmentNotEditable(OpenShipmentError):
    status_code = 400


class OpenShipmentStateError(OpenShipmentError):
    status_code = 500


class OpenShipmentConflict(OpenShipmentError):
    """Another shipment of the same (buyer, store) is already open."""

    status_code = 409

    def __init__(self, open_shipment: Shipment):
        super().__init__("Another shipment is already open for this store")
        self.open_shipment = open_shipment


# =============================================================================
# HELPERS
# =============================================================================

def _owned_shipment(db: Session, customer_stripe_id: str, shipment_id: int) -> Shipment:
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        raise ShipmentNotFound("Shipment not found")
    if shipment.customer_stripe_id != customer_stripe_id:
        raise ShipmentForbidden("This shipment belongs to another customer")
    return shipment


def _shipment_by_payment(
    db: Session, customer_stripe_id: str, payment_id: str, store_id: Optional[int] = None
) -> Shipment:
    query = db.query(Shipment).filter(Shipment.payment_id == payment_id)
    if store_id is not None:
        query = query.filter(Shipment.store_id == store_id)
    shipment = query.first()
    if shipment is None:
        raise ShipmentNotFound("Shipment not found for this payment")
    if shipment.customer_stripe_id != customer_stripe_id:
        raise ShipmentForbidden("This shipment belongs to another customer")
    return shipment


def _ensure_editable(shipment: Shipment) -> None:
    if shipment.status == CANCELLED_STATUS or shipment.cancel_requested:
        raise ShipmentNotEditable("Cancelled shipments cannot be edited")
    if shipment.is_final_destination:
        raise ShipmentNotEditable("Delivered shipments cannot be edited")


def _open_rows(db: Session, customer_stripe_id: str, store_id: int) -> List[Shipment]:
    return (
        db.query(Shipment)
        .filter(
            Shipment.customer_stripe_id == customer_stripe_id,
            Shipment.store_id == store_id,
            Shipment.is_open_shipment.is_(True),
        )
        .all()
    )


def _delete_payment_carts(db: Session, shipment: Shipment) -> int:
    return (
        db.query(CartItem)
        .filter(
            CartItem.customer_stripe_id == shipment.customer_stripe_id,
            CartItem.store_id == shipment.store_id,
            CartItem.payment_id == shipment.payment_id,
        )
        .delete(synchronize_session=False)
    )


def _close(db: Session, shipment: Shipment) -> None:
    """Reserve the items again, clear the flag, drop rebuilt cart rows."""
    apply_stock_adjustment(db, shipment.store_id, shipment_line_items(shipment), StockAdjustmentMode.unrestock)
    shipment.is_open_shipment = False
    deleted = _delete_payment_carts(db, shipment)
    db.flush()
    logger.info(f"[OPEN_SHIPMENT] Closed shipment {shipment.id} ({deleted} cart rows removed)")


def _open(db: Session, shipment: Shipment, force: bool) -> Shipment:
    if shipment.is_open_shipment:
        return shipment

    customer_id, store_id = shipment.customer_stripe_id, shipment.store_id
    conflicts = [row for row in _open_rows(db, customer_id, store_id) if row.id != shipment.id]
    if conflicts and not force:
        raise OpenShipmentConflict(conflicts[0])

    try:
        for other in conflicts:
            _close(db, other)
        shipment.is_open_shipment = True
        db.flush()
        apply_stock_adjustment(db, store_id, shipment_line_items(shipment), StockAdjustmentMode.restock)
        db.commit()
    except StockAdjustmentError as e:
        db.rollback()
        logger.error(f"[OPEN_SHIPMENT] Stock update failed, shipment {shipment.id} left closed: {e}")
        raise OpenShipmentStateError("Stock update failed, the shipment was not opened") from e
    except IntegrityError as e:
        # A concurrent request opened another shipment for the same pair
        db.rollback()
        current = get_active_open_shipment(db, customer_id, store_id)
        if current is not None and current.id != shipment.id:
            raise OpenShipmentConflict(current) from e
        raise OpenShipmentStateError("Could not open the shipment") from e

    logger.info(f"[OPEN_SHIPMENT] Opened shipment {shipment.id} (closed {[row.id for row in conflicts]})")
    return shipment


# =============================================================================
# OPERATIONS
# =============================================================================

def open_shipment(db: Session, customer_stripe_id: str, shipment_id: int, force: bool = False) -> Shipment:
    """Open a shipment for editing.

    Raises:
        ShipmentNotFound, ShipmentForbidden, ShipmentNotEditable,
        OpenShipmentConflict (without `force`), OpenShipmentStateError
    """
    shipment = _owned_shipment(db, customer_stripe_id, shipment_id)
    _ensure_editable(shipment)
    return _open(db, shipment, force)


def open_shipment_by_payment(
    db: Session,
    customer_stripe_id: str,
    payment_id: str,
    force: bool = False,
    store_id: Optional[int] = None,
) -> Shipment:
    shipment = _shipment_by_payment(db, customer_stripe_id, payment_id, store_id)
    _ensure_editable(shipment)
    return _open(db, shipment, force)


def get_active_open_shipment(db: Session, customer_stripe_id: str, store_id: int) -> Optional[Shipment]:
    return (
        db.query(Shipment)
        .filter(
            Shipment.customer_stripe_id == customer_stripe_id,
            Shipment.store_id == store_id,
            Shipment.is_open_shipment.is_(True),
        )
        .first()
    )


def cancel_open_shipment(
    db: Session,
    customer_stripe_id: str,
    store_id: int,
    payment_id: Optional[str] = None,
) -> List[int]:
    """Abandon the edit session of a (buyer, store) pair.

    Returns:
        Ids of the shipments that were closed.
    """
    rows = _open_rows(db, customer_stripe_id, store_id)
    closed = [row.id for row in rows]
    try:
        for row in rows:
            _close(db, row)
        if payment_id:
            db.query(CartItem).filter(
                CartItem.customer_stripe_id == customer_stripe_id,
                CartItem.store_id == store_id,
                CartItem.payment_id == payment_id,
            ).delete(synchronize_session=False)
        db.commit()
    except StockAdjustmentError as e:
        db.rollback()
        raise OpenShipmentStateError("Stock update failed, the edit was not cancelled") from e

    if get_active_open_shipment(db, customer_stripe_id, store_id) is not None:
        logger.error(f"[OPEN_SHIPMENT] Open shipment still present for {customer_stripe_id}/{store_id}")
        raise OpenShipmentStateError("An open shipment is still present")

    logger.info(f"[OPEN_SHIPMENT] Edit cancelled for {customer_stripe_id}/{store_id}, closed {closed}")
    return closed


def rebuild_carts_from_payment(
    db: Session,
    stripe_gateway,
    customer_stripe_id: str,
    payment_id: str,
    store_id: Optional[int] = None,
) -> List[CartItem]:
    """Replace the cart rows bound to `payment_id` with what was bought.

    Unit prices come from the Stripe line items (subtotal / quantity), the
    list of items from the shipment itself.
    """
    shipment = _shipment_by_payment(db, customer_stripe_id, payment_id, store_id)
    if not shipment.is_open_shipment:
        raise ShipmentNotEditable("Open the shipment before rebuilding its cart")

    session_id = shipment.session_id
    if not session_id:
        session = stripe_gateway.find_checkout_session_for_payment(payment_id)
        session_id = (session or {}).get("id")
    if not session_id:
        raise ShipmentNotFound("No checkout session found for this payment")

    paid_items, _ = split_line_items(stripe_gateway.list_checkout_line_items(session_id))

    _delete_payment_carts(db, shipment)
    rows: List[CartItem] = []
    for item in shipment_line_items(shipment):
        paid = next((p for p in paid_items if p.matches(item.reference)), None)
        if paid is None:
            logger.warning(f"[OPEN_SHIPMENT] {item.reference} not found in payment {payment_id}, skipped")
            continue
        unit_cents = paid.amount_subtotal / max(1, paid.quantity)
        row = CartItem(
            store_id=shipment.store_id,
            customer_stripe_id=customer_stripe_id,
            product_reference=item.reference,
            value=round(unit_cents / 100, 2),
            quantity=item.quantity,
            description=item.description or paid.name,
            payment_id=payment_id,
        )
        db.add(row)
        rows.append(row)
    db.commit()

    logger.info(f"[OPEN_SHIPMENT] Rebuilt {len(rows)} cart rows from payment {payment_id}")
    return rows


async def cancel_shipment(db: Session, boxtal, email, identity: ClerkIdentity, shipment_id: int) -> Shipment:
    """Cancel a shipment that has not left the store yet.

    Allowed for the buyer, the store owner and admins. The Boxtal order is
    cancelled first; the refund itself is handled by an admin.
    """
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        raise ShipmentNotFound("Shipment not found")

    store = shipment.store
    is_buyer = bool(identity.stripe_customer_id) and identity.stripe_customer_id == shipment.customer_stripe_id
    is_store_owner = store is not None and bool(store.clerk_id) and store.clerk_id == identity.clerk_id
    if not (is_buyer or is_store_owner or identity.is_admin):
        raise ShipmentForbidden("Not allowed to cancel this shipment")

    if (shipment.status or "") not in CANCELLABLE_STATUSES:
        raise ShipmentNotEditable("This shipment can no longer be cancelled")

    if shipment.shipment_id:
        await boxtal.cancel_shipping_order(shipment.shipment_id)

    was_open = shipment.is_open_shipment
    try:
        if was_open:
            # Items were released when the shipment was opened
            _delete_payment_carts(db, shipment)
        else:
            apply_stock_adjustment(db, shipment.store_id, shipment_line_items(shipment), StockAdjustmentMode.restock)
        shipment.status = CANCELLED_STATUS
        shipment.cancel_requested = True
        shipment.is_open_shipment = False
        db.commit()
    except StockAdjustmentError as e:
        db.rollback()
        raise OpenShipmentStateError("Stock update failed while cancelling") from e

    await email.send_admin_error(
        subject="Commande annulée : remboursement à effectuer",
        message="Une commande a été annulée, le paiement doit être remboursé.",
        context={
            "shipment": shipment.id,
            "payment_id": shipment.payment_id,
            "customer": shipment.customer_stripe_id,
            "store": store.slug if store is not None else None,
            "paid_value_cents": shipment.paid_value,
        },
    )
    logger.info(f"[OPEN_SHIPMENT] Shipment {shipment.id} cancelled by {identity.clerk_id}")
    return shipment


async def request_return(
    db: Session,
    email,
    customer_stripe_id: str,
    shipment_id: int,
    reason: Optional[str] = None,
) -> Shipment:
    shipment = _owned_shipment(db, customer_stripe_id, shipment_id)
    if shipment.status == CANCELLED_STATUS:
        raise ShipmentNotEditable("Cancelled shipments cannot be returned")

    shipment.return_requested = True
    db.commit()

    store = shipment.store
    await email.send_return_request(
        store_owner_email=store.owner_email if store is not None else None,
        store_name=store.name if store is not None else "",
        shipment_ref=shipment.shipment_id or str(shipment.id),
        customer_stripe_id=customer_stripe_id,
        reason=reason,
    )
    return shipment
