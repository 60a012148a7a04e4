"""Boxtal webhook reconciler.

WHAT:
    Applies Boxtal shipping events to shipments:
    - DOCUMENT_CREATED: stores the label URL (and mails the label to the
      store owner the first time)
    - TRACKING_CHANGED: updates status and tracking URL, emails the buyer on
      real status changes, and on final delivery records the actual
      delivery cost with a credit adjustment for the buyer

WHY:
    Boxtal redelivers events and repeats statuses. A status equal to the
    stored one, or to the last history entry, is a repeat; a final event
    that brings nothing new writes nothing.

REFERENCES:
    - https://developer.boxtal.com/ (webhooks)
    - paylive/routers/boxtal.py (caller)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import CANCELLED_STATUS, CreditReasonEnum, Shipment
from .boxtal_client import BoxtalAPIError
from .credit_ledger import (
    count_entries,
    ensure_opening_balance,
    get_balance,
    has_ledger,
    record_credit_entry,
    sum_entries,
    sync_balance_cache,
)
from .email_service import EmailAttachment
from .shipping_order import delivery_cost_from_order

logger = logging.getLogger(__name__)

HISTORY_DATE_KEYS = ("date", "datetime", "deliveredAt", "createdAt", "created_at", "timestamp")

# Epoch values above this are milliseconds
MILLISECONDS_THRESHOLD = 1e12


@dataclass
class TrackingOutcome:
    action: str
    shipment_id: Optional[int] = None
    status: Optional[str] = None
    emailed: bool = False
    adjustment_cents: int = 0


def parse_history_date(value: Any) -> Optional[datetime]:
    """Parse a Boxtal history timestamp to a naive UTC datetime.

    Accepts epoch seconds or milliseconds (numbers or digit strings) and
    ISO-8601 strings.
    """
    if value is None or isinstance(value, bool):
        return None

    numeric: Optional[float] = None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str) and value.strip().isdigit():
        numeric = float(value.strip())

    if numeric is not None:
        if numeric <= 0:
            return None
        seconds = numeric / 1000 if numeric > MILLISECONDS_THRESHOLD else numeric
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def delivery_date_from_history(history: List[Dict[str, Any]]) -> Optional[datetime]:
    """Most recent parseable date, scanning the history from the end."""
    for entry in reversed(history or []):
        if not isinstance(entry, dict):
            continue
        for key in HISTORY_DATE_KEYS:
            if entry.get(key) is None:
                continue
            parsed = parse_history_date(entry[key])
            if parsed is not None:
                return parsed
            break
    return None


class TrackingReconciler:
    """Dispatches Boxtal webhook events.

    Usage:
        outcome = await TrackingReconciler(db, stripe_gateway, boxtal, email).handle_event(event)
    """

    def __init__(self, db: Session, stripe_gateway, boxtal, email):
        self.db = db
        self.stripe = stripe_gateway
        self.boxtal = boxtal
        self.email = email

    async def handle_event(self, event: Dict[str, Any]) -> TrackingOutcome:
        event_type = event.get("type")
        if event_type == "DOCUMENT_CREATED":
            return await self.handle_document_created(event)
        if event_type == "TRACKING_CHANGED":
            return await self.handle_tracking_changed(event)
        logger.info(f"[TRACKING] Ignoring Boxtal event type {event_type}")
        return TrackingOutcome(action="ignored")

    def _find_shipment(self, shipping_order_id: Optional[str]) -> Optional[Shipment]:
        if not shipping_order_id:
            return None
        return self.db.query(Shipment).filter(Shipment.shipment_id == shipping_order_id).first()

    # ------------------------------------------------------------------
    # DOCUMENT_CREATED
    # ------------------------------------------------------------------

    async def handle_document_created(self, event: Dict[str, Any]) -> TrackingOutcome:
        order_id = event.get("shippingOrderId")
        documents = (event.get("payload") or {}).get("documents") or []
        doc_url = documents[0].get("url") if documents and isinstance(documents[0], dict) else None

        shipment = self._find_shipment(order_id)
        if shipment is None:
            logger.info(f"[TRACKING] DOCUMENT_CREATED: no shipment for {order_id}")
            return TrackingOutcome(action="not_found")

        if shipment.document_created:
            if doc_url and doc_url != shipment.document_url:
                shipment.document_url = doc_url
                self.db.commit()
            return TrackingOutcome(action="document_refreshed", shipment_id=shipment.id)

        shipment.document_created = True
        shipment.document_url = doc_url
        self.db.commit()

        emailed = False
        store = shipment.store
        if doc_url and store is not None and store.owner_email:
            try:
                content = await self.boxtal.download_document(doc_url)
            except BoxtalAPIError as e:
                logger.warning(f"[TRACKING] Label download failed for {order_id}: {e}")
                content = None
            if content:
                result = await self.email.send_store_owner_label(
                    to=store.owner_email,
                    store_name=store.name,
                    shipment_id=order_id,
                    label=EmailAttachment(filename=f"etiquette-{order_id}.pdf", content=content),
                )
                emailed = result.success

        logger.info(f"[TRACKING] Label stored for shipment {shipment.id}")
        return TrackingOutcome(action="document_stored", shipment_id=shipment.id, emailed=emailed)

    # ------------------------------------------------------------------
    # TRACKING_CHANGED
    # ------------------------------------------------------------------

    async def handle_tracking_changed(self, event: Dict[str, Any]) -> TrackingOutcome:
        order_id = event.get("shippingOrderId")
        trackings = (event.get("payload") or {}).get("trackings") or []
        tracking = trackings[0] if trackings and isinstance(trackings[0], dict) else {}

        shipment = self._find_shipment(order_id)
        if shipment is None:
            logger.info(f"[TRACKING] TRACKING_CHANGED: no shipment for {order_id}")
            return TrackingOutcome(action="not_found")

        if shipment.status == CANCELLED_STATUS:
            logger.info(f"[TRACKING] Shipment {shipment.id} is cancelled, ignoring tracking")
            return TrackingOutcome(action="cancelled", shipment_id=shipment.id, status=shipment.status)

        status = tracking.get("status")
        is_final = tracking.get("isFinal") is True
        history = tracking.get("history") if isinstance(tracking.get("history"), list) else []
        last_history_status = history[-1].get("status") if history and isinstance(history[-1], dict) else None

        if tracking.get("packageTrackingUrl"):
            shipment.tracking_url = tracking["packageTrackingUrl"]

        repeat = bool(status) and status in (shipment.status, last_history_status)
        if repeat and not is_final:
            self.db.commit()
            logger.info(f"[TRACKING] Status {status} unchanged for shipment {shipment.id}")
            return TrackingOutcome(action="unchanged", shipment_id=shipment.id, status=status)

        adjustment = 0
        if is_final:
            adjustment = await self._apply_final_delivery(shipment, history)

        changed = bool(status) and not repeat
        if changed:
            shipment.status = status
        self.db.commit()

        if adjustment:
            balance = get_balance(self.db, shipment.customer_stripe_id)
            sync_balance_cache(
                self.stripe,
                shipment.customer_stripe_id,
                balance,
                idempotency_key=f"credit-cache:delivery:{shipment.id}:{balance}",
            )

        emailed = False
        if changed:
            emailed = await self._email_status(shipment, status, tracking.get("message"))

        logger.info(
            f"[TRACKING] Shipment {shipment.id}: status={shipment.status} final={shipment.is_final_destination} "
            f"adjustment={adjustment}"
        )
        return TrackingOutcome(
            action="updated",
            shipment_id=shipment.id,
            status=shipment.status,
            emailed=emailed,
            adjustment_cents=adjustment,
        )

    async def _apply_final_delivery(self, shipment: Shipment, history: List[Dict[str, Any]]) -> int:
        """Record the actual delivery cost and date.

        Returns:
            The credit adjustment posted, in cents (0 when none).
        """
        order = None
        if shipment.shipment_id:
            try:
                order = await self.boxtal.get_shipping_order(shipment.shipment_id)
            except BoxtalAPIError as e:
                logger.warning(f"[TRACKING] Could not fetch order {shipment.shipment_id}: {e}")

        actual = delivery_cost_from_order(order) if order else None
        delivered_at = delivery_date_from_history(history)

        previous_cost = float(shipment.delivery_cost) if shipment.delivery_cost is not None else None
        same_cost = actual is None or (previous_cost is not None and abs(previous_cost - actual) < 0.001)
        same_date = delivered_at is None or shipment.delivery_date == delivered_at
        if shipment.is_final_destination and same_cost and same_date:
            logger.info(f"[TRACKING] Shipment {shipment.id} already final, nothing to record")
            return 0

        shipment.is_final_destination = True
        if actual is not None:
            shipment.delivery_cost = Decimal(f"{actual:.2f}")
        if delivered_at is not None:
            shipment.delivery_date = delivered_at
        if actual is None:
            return 0

        customer_id = shipment.customer_stripe_id
        estimated = float(shipment.estimated_delivery_cost or 0)
        target = round((estimated - actual) * 100)
        already = sum_entries(
            self.db, customer_id, reason=CreditReasonEnum.delivery_adjustment, shipment_id=shipment.id
        )
        delta = target - already
        if delta == 0:
            return 0
        posted = count_entries(self.db, customer_id, CreditReasonEnum.delivery_adjustment, shipment.id)

        if not has_ledger(self.db, customer_id):
            customer = self.stripe.retrieve_customer(customer_id)
            ensure_opening_balance(self.db, customer_id, customer.get("metadata"))
        record_credit_entry(
            self.db,
            customer_id,
            delta,
            CreditReasonEnum.delivery_adjustment,
            idempotency_key=f"delivery-adjustment:{shipment.id}:{posted}:{target}",
            shipment_id=shipment.id,
            payment_id=shipment.payment_id,
            note=f"Estimated {estimated:.2f} EUR, actual {actual:.2f} EUR",
        )
        return delta

    async def _email_status(self, shipment: Shipment, status: str, message: Optional[str]) -> bool:
        try:
            customer = self.stripe.retrieve_customer(shipment.customer_stripe_id)
        except Exception as e:
            logger.warning(f"[TRACKING] Could not load customer {shipment.customer_stripe_id}: {e}")
            return False
        store = shipment.store
        result = await self.email.send_customer_tracking_update(
            to=customer.get("email"),
            customer_name=customer.get("name") or (customer.get("metadata") or {}).get("name"),
            store_name=store.name if store is not None else None,
            status=status,
            message=message,
            tracking_url=shipment.tracking_url,
        )
        return result.success
