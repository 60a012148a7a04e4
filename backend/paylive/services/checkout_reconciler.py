"""Stripe `checkout.session.completed` reconciler.

WHAT:
    Turns a completed checkout into local state:
    1. De-duplicates the payment (saga intent row, unique payment_id)
    2. Reconciles what was paid with what is still in the buyer's cart and
       in stock; missing units and their shipping share are credited back
    3. Supersedes the open shipment being edited, if any
    4. Posts credit ledger entries (credit used, top-ups, delivery debt,
       sold-out refunds) and refreshes the Stripe balance cache
    5. Creates the Boxtal shipping order, the shipment row, reserves stock,
       fetches the label and tracking URL, clears the consumed cart rows
    6. Emails the buyer and the store owner

WHY:
    Every external effect is recorded as a saga step. A failure after the
    payment never loses the order: the shipment row is written with the raw
    Boxtal payload and the reconciliation job resumes the failed steps.

REFERENCES:
    - paylive/services/shipment_saga.py (step bookkeeping, retries)
    - paylive/services/credit_ledger.py
    - paylive/routers/stripe_webhooks.py (caller)
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from ..models import (
    CartItem,
    CreditReasonEnum,
    DeliveryMethodEnum,
    SagaStatusEnum,
    SagaStepStatusEnum,
    Shipment,
    StockItem,
    Store,
)
from .boxtal_client import BoxtalAPIError, fetch_label_with_retry, first_tracking_url
from .credit_ledger import (
    PaidLineItem,
    compute_missing_reference_credit,
    ensure_opening_balance,
    get_balance,
    record_credit_entry,
    sync_balance_cache,
)
from .email_service import EmailAttachment
from .product_reference import (
    LineItem,
    encode_product_reference,
    line_items_to_json,
    parse_product_reference,
    shipment_line_items,
)
from .shipment_saga import (
    STEP_BOXTAL_ORDER,
    STEP_CART_CLEANUP,
    STEP_CREDIT_CACHE,
    STEP_CREDIT_LEDGER,
    STEP_CUSTOMER_EMAIL,
    STEP_LABEL,
    STEP_OWNER_EMAIL,
    STEP_SHIPMENT_ROW,
    STEP_STOCK,
    STEP_SUPERSEDE,
    STEP_TRACKING,
    ShipmentSagaStore,
)
from .shipping_order import build_shipping_order_payload, delivery_cost_from_order, parse_weight_kg
from .stock_adjustment import (
    StockAdjustmentError,
    StockAdjustmentMode,
    apply_stock_adjustment,
    reserve_stock_for_payment,
    sellable_quantities,
)

logger = logging.getLogger(__name__)

# Synthetic line item used to settle a negative (delivery debt) balance
REGULARISATION_PATTERN = re.compile(r"r[ée]gularisation\s+livraison", re.IGNORECASE)

PLATFORM_PROMO_PREFIX = "PAYLIVE-"
CREDIT_PROMO_PREFIX = "CREDIT-"

# Packaging added to the summed product weights
PACKAGING_WEIGHT_KG = 0.4


@dataclass
class CheckoutOutcome:
    """What the reconciler did with one checkout session."""

    action: str  # created | credited | duplicate | blocked | aborted | ignored
    payment_id: Optional[str] = None
    shipment_id: Optional[int] = None
    credited_cents: int = 0
    missing_references: List[str] = field(default_factory=list)
    detail: Optional[str] = None


@dataclass
class _Promotions:
    codes: List[str] = field(default_factory=list)
    store_discount_cents: int = 0


@dataclass
class _StockCheck:
    """Cart-available items limited to the stock left after payment."""

    items: List[LineItem] = field(default_factory=list)
    credited_cents: int = 0
    credited_subtotal_cents: int = 0
    short_references: List[str] = field(default_factory=list)
    ordered_units: int = 0
    fulfilled_units: int = 0

    @property
    def is_short(self) -> bool:
        return self.fulfilled_units < self.ordered_units


# =============================================================================
# HELPERS
# =============================================================================

def _object_id(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _int_metadata(metadata: Dict[str, Any], key: str) -> int:
    try:
        return max(0, int(float(str(metadata.get(key) or 0))))
    except (TypeError, ValueError):
        return 0


def _json_metadata(metadata: Dict[str, Any], key: str) -> Optional[dict]:
    raw = metadata.get(key)
    if not raw:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"[CHECKOUT] Unparseable {key} metadata: {raw!r}")
        return None
    return value if isinstance(value, dict) and value else None


def is_regularisation_item(item: PaidLineItem) -> bool:
    return bool(REGULARISATION_PATTERN.search(item.name or ""))


def paid_line_item_from_stripe(raw: Dict[str, Any]) -> PaidLineItem:
    price = raw.get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        product_id = product.get("id")
        name = product.get("name") or raw.get("description")
    else:
        product_id = product
        name = raw.get("description")
    return PaidLineItem(
        product_id=product_id,
        name=name,
        quantity=int(raw.get("quantity") or 1),
        amount_total=int(raw.get("amount_total") or 0),
        amount_subtotal=int(raw.get("amount_subtotal") or raw.get("amount_total") or 0),
    )


def split_line_items(raw_items: List[Dict[str, Any]]) -> Tuple[List[PaidLineItem], List[PaidLineItem]]:
    """Separate product lines from delivery-debt regularisation lines."""
    products: List[PaidLineItem] = []
    regularisations: List[PaidLineItem] = []
    for raw in raw_items:
        item = paid_line_item_from_stripe(raw)
        (regularisations if is_regularisation_item(item) else products).append(item)
    return products, regularisations


def _promotions_from_session(session: Dict[str, Any]) -> _Promotions:
    promotions = _Promotions()
    breakdown = ((session.get("total_details") or {}).get("breakdown") or {}).get("discounts") or []
    for discount in breakdown:
        amount = max(0, int(discount.get("amount") or 0))
        promotion = (discount.get("discount") or {}).get("promotion_code")
        code = promotion.get("code") if isinstance(promotion, dict) else None
        if not code or code.upper().startswith(CREDIT_PROMO_PREFIX):
            continue
        promotions.codes.append(code)
        if not code.upper().startswith(PLATFORM_PROMO_PREFIX):
            promotions.store_discount_cents += amount
    return promotions


# =============================================================================
# RECONCILER
# =============================================================================

class CheckoutReconciler:
    """Applies one completed checkout session to the local state.

    Usage:
        reconciler = CheckoutReconciler(db, stripe_gateway, boxtal, email, settings)
        outcome = await reconciler.reconcile(event["data"]["object"], event_id=event["id"])
    """

    def __init__(
        self,
        db: Session,
        stripe_gateway,
        boxtal,
        email,
        settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.stripe = stripe_gateway
        self.boxtal = boxtal
        self.email = email
        self.settings = settings
        self.sleep = sleep
        self.sagas = ShipmentSagaStore(db)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def reconcile(self, session: Dict[str, Any], event_id: Optional[str] = None) -> CheckoutOutcome:
        session_id = session.get("id")
        metadata = dict(session.get("metadata") or {})
        payment_id = _object_id(session.get("payment_intent")) or session_id
        customer_id = _object_id(session.get("customer"))

        if not customer_id:
            logger.warning(f"[CHECKOUT] Session {session_id} has no customer, ignoring")
            return CheckoutOutcome(action="ignored", payment_id=payment_id, detail="no customer")

        if self.db.query(Shipment.id).filter(Shipment.payment_id == payment_id).first() is not None:
            logger.info(f"[CHECKOUT] Shipment already exists for {payment_id}")
            return CheckoutOutcome(action="duplicate", payment_id=payment_id)
        if self.sagas.get(payment_id) is not None:
            logger.info(f"[CHECKOUT] Saga already exists for {payment_id}")
            return CheckoutOutcome(action="duplicate", payment_id=payment_id)

        payment_intent: Dict[str, Any] = {}
        if not metadata.get("product_reference") and payment_id.startswith("pi_"):
            payment_intent = self.stripe.retrieve_payment_intent(payment_id)
            for key, value in (payment_intent.get("metadata") or {}).items():
                metadata.setdefault(key, value)

        store = self._resolve_store(metadata)
        if store is None:
            logger.error(f"[CHECKOUT] No store for session {session_id} (metadata={metadata})")
            await self.email.send_admin_error(
                subject="Paiement sans boutique",
                message="Un paiement a été reçu mais la boutique est introuvable.",
                context={"session_id": session_id, "payment_id": payment_id, "customer": customer_id},
            )
            return CheckoutOutcome(action="ignored", payment_id=payment_id, detail="unknown store")

        saga = self.sagas.begin(
            payment_id,
            session_id=session_id,
            event_id=event_id,
            customer_stripe_id=customer_id,
            store_id=store.id,
            payload={"session": session, "metadata": metadata},
        )
        if saga is None:
            return CheckoutOutcome(action="duplicate", payment_id=payment_id)

        try:
            return await self._run(saga, session, metadata, payment_id, customer_id, store)
        except Exception as e:
            self.db.rollback()
            self.sagas.finish(saga, SagaStatusEnum.aborted, error=e)
            raise

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_store(self, metadata: Dict[str, Any]) -> Optional[Store]:
        query = self.db.query(Store)
        store_id = metadata.get("store_id")
        if store_id and str(store_id).isdigit():
            store = query.filter(Store.id == int(store_id)).first()
            if store:
                return store
        if metadata.get("store_slug"):
            store = query.filter(Store.slug == metadata["store_slug"]).first()
            if store:
                return store
        if metadata.get("store_name"):
            return query.filter(Store.name == metadata["store_name"]).first()
        return None

    def _ordered_items(self, metadata: Dict[str, Any], paid_items: List[PaidLineItem]) -> List[LineItem]:
        items = parse_product_reference(metadata.get("product_reference"))
        if items:
            return items
        return [
            LineItem(reference=item.product_id or item.name, quantity=item.quantity, description=item.name)
            for item in paid_items
            if item.product_id or item.name
        ]

    def _split_availability(
        self, metadata: Dict[str, Any], customer_id: str, store: Store, ordered: List[LineItem]
    ) -> Tuple[List[LineItem], List[LineItem]]:
        """Items still in the buyer's cart are available, the others sold out."""
        if not metadata.get("product_reference"):
            return ordered, []
        cart_refs = {
            row.product_reference
            for row in self.db.query(CartItem.product_reference).filter(
                CartItem.customer_stripe_id == customer_id,
                CartItem.store_id == store.id,
            )
        }
        available = [item for item in ordered if item.reference in cart_refs]
        missing = [item for item in ordered if item.reference not in cart_refs]
        return available, missing

    def _limit_to_stock(self, store: Store, available: List[LineItem], paid_items: List[PaidLineItem]) -> _StockCheck:
        """Cap each item at the stock still sellable and price the shortfall.

        The unfulfilled share of a line is credited pro rata per unit of its
        paid amount. Items with no stock left are dropped.
        """
        check = _StockCheck(ordered_units=sum(item.quantity for item in available))
        try:
            remaining = sellable_quantities(self.db, store.id, [item.reference for item in available])
        except StockAdjustmentError as e:
            logger.warning(f"[CHECKOUT] Stock check skipped for store {store.id}: {e}")
            remaining = {}

        for item in available:
            left = remaining.get(item.reference)
            fulfilled_qty = item.quantity if left is None else min(item.quantity, left)
            if left is not None:
                remaining[item.reference] = left - fulfilled_qty
            check.fulfilled_units += fulfilled_qty
            if fulfilled_qty > 0:
                check.items.append(
                    LineItem(reference=item.reference, quantity=fulfilled_qty, description=item.description)
                )
            if fulfilled_qty == item.quantity:
                continue

            check.short_references.append(item.reference)
            paid = next((p for p in paid_items if p.matches(item.reference)), None)
            if paid is None or item.quantity <= 0:
                continue
            check.credited_cents += paid.amount_total - round(paid.amount_total * fulfilled_qty / item.quantity)
            check.credited_subtotal_cents += paid.amount_subtotal - round(
                paid.amount_subtotal * fulfilled_qty / item.quantity
            )

        if check.is_short:
            logger.info(
                f"[CHECKOUT] Stock short for {check.short_references}: "
                f"{check.fulfilled_units}/{check.ordered_units} units, crediting {check.credited_cents} cents"
            )
        return check

    async def _supersede(self, saga, metadata, customer_id: str, store: Store) -> Tuple[bool, Optional[dict]]:
        """Replace the open shipment the buyer was editing.

        Returns:
            (ok, snapshot of the superseded shipment). ok is False when the
            old Boxtal order could not be cancelled.
        """
        old_payment_id = metadata.get("open_shipment_payment_id")
        if not old_payment_id:
            return True, None

        old = (
            self.db.query(Shipment)
            .filter(Shipment.payment_id == old_payment_id, Shipment.customer_stripe_id == customer_id)
            .first()
        )
        if old is None:
            logger.warning(f"[CHECKOUT] Edited shipment {old_payment_id} not found, nothing to supersede")
            self.sagas.mark_step(saga, STEP_SUPERSEDE, SagaStepStatusEnum.skipped)
            return True, None

        snapshot = {"id": old.id, "payment_id": old.payment_id, "shipment_id": old.shipment_id}
        if old.shipment_id:
            try:
                await self.boxtal.cancel_shipping_order(old.shipment_id)
            except BoxtalAPIError as e:
                self.sagas.mark_step(saga, STEP_SUPERSEDE, SagaStepStatusEnum.failed, result=snapshot, error=e)
                return False, snapshot

        if not old.is_open_shipment:
            # Items of a closed shipment are still reserved; release them
            apply_stock_adjustment(self.db, old.store_id, shipment_line_items(old), StockAdjustmentMode.restock)

        self.db.query(CartItem).filter(
            CartItem.customer_stripe_id == customer_id,
            CartItem.store_id == store.id,
            CartItem.payment_id == old_payment_id,
        ).delete(synchronize_session=False)
        self.db.delete(old)
        self.db.flush()
        self.sagas.mark_step(saga, STEP_SUPERSEDE, SagaStepStatusEnum.succeeded, result=snapshot)
        logger.info(f"[CHECKOUT] Superseded shipment {snapshot}")
        return True, snapshot

    def _post_credit_entries(
        self,
        session_id: str,
        payment_id: str,
        customer_id: str,
        metadata: Dict[str, Any],
        regularisations: List[PaidLineItem],
        sold_out_cents: int,
    ) -> None:
        entries: List[Tuple[int, CreditReasonEnum, str]] = []

        # Credit carried by a promotion code takes precedence over the metadata amount
        promo_amount = 0
        promo_code_id = str(metadata.get("credit_promo_code_id") or "").strip()
        if promo_code_id:
            try:
                promo = self.stripe.retrieve_promotion_code(promo_code_id)
                promo_amount = _int_metadata(promo.get("metadata") or {}, "customer_credit_balance_amount_cents")
            except stripe.StripeError as e:
                logger.warning(f"[CHECKOUT] Could not read credit promotion code {promo_code_id}: {e}")

        credit_applied = _int_metadata(metadata, "credit_applied_cents")
        if promo_amount > 0:
            entries.append((-promo_amount, CreditReasonEnum.promo_credit_applied, f"promo-credit:{session_id}"))
        elif credit_applied > 0:
            entries.append((-credit_applied, CreditReasonEnum.credit_applied, f"credit-applied:{session_id}"))

        topup = _int_metadata(metadata, "temp_credit_topup_cents")
        if topup > 0:
            entries.append((topup, CreditReasonEnum.credit_topup, f"credit-topup:{session_id}"))

        debt_paid = _int_metadata(metadata, "delivery_debt_paid_cents") or sum(
            max(0, item.amount_total) for item in regularisations
        )
        if debt_paid > 0:
            entries.append((debt_paid, CreditReasonEnum.delivery_debt_settled, f"delivery-debt:{session_id}"))

        if sold_out_cents > 0:
            entries.append((sold_out_cents, CreditReasonEnum.sold_out_refund, f"sold-out:{session_id}"))

        for delta, reason, key in entries:
            record_credit_entry(self.db, customer_id, delta, reason, key, payment_id=payment_id)

    def _sync_credit_cache(self, saga, customer_id: str, session_id: str) -> None:
        balance = get_balance(self.db, customer_id)
        synced = sync_balance_cache(
            self.stripe, customer_id, balance, idempotency_key=f"credit-cache:{session_id}:{balance}"
        )
        self.sagas.mark_step(
            saga,
            STEP_CREDIT_CACHE,
            SagaStepStatusEnum.succeeded if synced else SagaStepStatusEnum.failed,
            result={"balance_cents": balance},
            error=None if synced else "stripe metadata update failed",
        )

    def _estimate_weight(self, metadata: Dict[str, Any], store: Store, items: List[LineItem], partial: bool) -> float:
        raw = metadata.get("weight") or metadata.get("weight_kg")
        if raw and not partial:
            return parse_weight_kg(raw)

        references = [item.reference for item in items]
        rows = (
            self.db.query(StockItem)
            .filter(
                StockItem.store_id == store.id,
                (StockItem.product_reference.in_(references)) | (StockItem.product_stripe_id.in_(references)),
            )
            .all()
        )
        weights = {}
        for row in rows:
            for key in (row.product_reference, row.product_stripe_id):
                if key and row.weight:
                    weights[key] = row.weight
        known = sum(weights[item.reference] * item.quantity for item in items if item.reference in weights)
        if known > 0:
            return round(known + PACKAGING_WEIGHT_KG, 3)
        return parse_weight_kg(raw)

    def _delete_consumed_carts(self, metadata: Dict[str, Any], customer_id: str, store: Store, items: List[LineItem]) -> int:
        query = self.db.query(CartItem).filter(
            CartItem.customer_stripe_id == customer_id,
            CartItem.store_id == store.id,
        )
        cart_ids = [int(part) for part in str(metadata.get("cart_item_ids") or "").split(",") if part.strip().isdigit()]
        if cart_ids:
            query = query.filter(CartItem.id.in_(cart_ids))
        else:
            query = query.filter(CartItem.product_reference.in_([item.reference for item in items]))
        return query.delete(synchronize_session=False)

    async def _fetch_label(self, saga, shipment: Shipment) -> Optional[EmailAttachment]:
        document, content = await fetch_label_with_retry(
            self.boxtal,
            shipment.shipment_id,
            attempts=self.settings.LABEL_FETCH_ATTEMPTS,
            delay_seconds=self.settings.LABEL_FETCH_DELAY_SECONDS,
            sleep=self.sleep,
        )
        if not document:
            self.sagas.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.failed, error="label not available yet")
            return None
        shipment.document_created = True
        shipment.document_url = document.get("url")
        self.sagas.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.succeeded, result={"url": shipment.document_url})
        if not content:
            return None
        return EmailAttachment(filename=f"etiquette-{shipment.shipment_id}.pdf", content=content)

    async def _fetch_tracking_url(self, saga, shipment: Shipment) -> None:
        try:
            url = first_tracking_url(await self.boxtal.get_tracking(shipment.shipment_id))
        except BoxtalAPIError as e:
            self.sagas.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.failed, error=e)
            return
        if url:
            shipment.tracking_url = url
            self.sagas.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.succeeded, result={"url": url})
        else:
            self.sagas.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.failed, error="no tracking url yet")

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def _block(self, saga, session, payment_id, customer_id, customer, store, payment_total, ordered) -> CheckoutOutcome:
        session_id = session.get("id")
        ensure_opening_balance(self.db, customer_id, customer.get("metadata"))
        record_credit_entry(
            self.db,
            customer_id,
            payment_total,
            CreditReasonEnum.sold_out_refund,
            f"sold-out:{session_id}",
            payment_id=payment_id,
            note="Nothing left to fulfill",
        )
        self.db.commit()
        self.sagas.mark_step(saga, STEP_CREDIT_LEDGER, SagaStepStatusEnum.succeeded, result={"credited_cents": payment_total})
        self._sync_credit_cache(saga, customer_id, session_id)

        if payment_id.startswith("pi_"):
            try:
                self.stripe.update_payment_intent_metadata(
                    payment_id, {"blocked_reason": "out_of_stock"}, idempotency_key=f"blocked:{payment_id}"
                )
            except Exception as e:
                logger.warning(f"[CHECKOUT] Could not flag payment {payment_id} as blocked: {e}")

        await self.email.send_admin_error(
            subject="Commande bloquée (rupture de stock)",
            message="Aucun article de la commande n'est encore disponible, le montant a été crédité.",
            context={
                "payment_id": payment_id,
                "customer": customer_id,
                "store": store.slug,
                "references": encode_product_reference(ordered),
                "credited_cents": payment_total,
            },
        )
        self.sagas.finish(saga, SagaStatusEnum.blocked)
        logger.info(f"[CHECKOUT] Blocked {payment_id}: nothing available, credited {payment_total} cents")
        return CheckoutOutcome(
            action="blocked",
            payment_id=payment_id,
            credited_cents=payment_total,
            missing_references=[item.reference for item in ordered],
        )

    async def _run(
        self,
        saga,
        session: Dict[str, Any],
        metadata: Dict[str, Any],
        payment_id: str,
        customer_id: str,
        store: Store,
    ) -> CheckoutOutcome:
        session_id = session.get("id")
        customer = self.stripe.retrieve_customer(customer_id)
        paid_items, regularisations = split_line_items(self.stripe.list_checkout_line_items(session_id))
        payment_total = max(0, int(session.get("amount_total") or 0))

        ordered = self._ordered_items(metadata, paid_items)
        available, missing = self._split_availability(metadata, customer_id, store, ordered)

        if not ordered:
            # Delivery-debt settlement or top-up only: nothing to ship
            ensure_opening_balance(self.db, customer_id, customer.get("metadata"))
            self._post_credit_entries(session_id, payment_id, customer_id, metadata, regularisations, 0)
            self.db.commit()
            self.sagas.mark_step(saga, STEP_CREDIT_LEDGER, SagaStepStatusEnum.succeeded)
            self._sync_credit_cache(saga, customer_id, session_id)
            self.sagas.finish(saga)
            return CheckoutOutcome(action="credited", payment_id=payment_id, detail="no product lines")

        in_cart = available
        stock_check = self._limit_to_stock(store, in_cart, paid_items)
        available = stock_check.items
        if not available:
            return await self._block(saga, session, payment_id, customer_id, customer, store, payment_total, ordered)

        missing_refs = {item.reference for item in missing}
        sold_out_cents = compute_missing_reference_credit(paid_items, missing_refs, payment_total)
        if missing:
            logger.info(f"[CHECKOUT] {payment_id}: sold out {sorted(missing_refs)}, crediting {sold_out_cents} cents")

        # Shipping is charged in proportion to the units that can still ship
        shipping_cost_cents = int((session.get("shipping_cost") or {}).get("amount_total") or 0)
        shipping_credit_cents = 0
        if stock_check.is_short and shipping_cost_cents > 0 and stock_check.ordered_units > 0:
            ratio = stock_check.fulfilled_units / stock_check.ordered_units
            shipping_credit_cents = shipping_cost_cents - round(shipping_cost_cents * ratio)
        if stock_check.is_short:
            missing_refs.update(stock_check.short_references)
            sold_out_cents = min(payment_total, sold_out_cents + stock_check.credited_cents + shipping_credit_cents)

        # Supersede the shipment being edited
        ok, superseded = await self._supersede(saga, metadata, customer_id, store)
        if not ok:
            await self.email.send_admin_error(
                subject="Modification de commande interrompue",
                message="L'annulation de l'ancienne expédition Boxtal a échoué, la nouvelle commande n'a pas été créée.",
                context={
                    "payment_id": payment_id,
                    "old_payment_id": metadata.get("open_shipment_payment_id"),
                    "old_shipment_id": superseded.get("shipment_id") if superseded else None,
                },
            )
            self.sagas.finish(saga, SagaStatusEnum.aborted, error="supersede failed")
            return CheckoutOutcome(action="aborted", payment_id=payment_id, detail="boxtal cancel failed")

        # Credit bookkeeping
        ensure_opening_balance(self.db, customer_id, customer.get("metadata"))
        self._post_credit_entries(session_id, payment_id, customer_id, metadata, regularisations, sold_out_cents)
        self.db.commit()
        self.sagas.mark_step(saga, STEP_CREDIT_LEDGER, SagaStepStatusEnum.succeeded, result={"sold_out_cents": sold_out_cents})
        self._sync_credit_cache(saga, customer_id, session_id)

        # Amounts
        if "total_details" not in session or not (session.get("total_details") or {}).get("breakdown"):
            try:
                session = {**session, **self.stripe.retrieve_checkout_session(session_id)}
            except Exception as e:
                logger.warning(f"[CHECKOUT] Could not expand discounts for {session_id}: {e}")
        promotions = _promotions_from_session(session)
        fulfilled = [item for item in paid_items if any(item.matches(i.reference) for i in in_cart)]
        if not missing:
            fulfilled = paid_items
        fulfilled_subtotal = sum(item.amount_subtotal for item in fulfilled) - stock_check.credited_subtotal_cents
        fulfilled_total = sum(item.amount_total for item in fulfilled) - stock_check.credited_cents
        store_earnings = max(0, fulfilled_subtotal - promotions.store_discount_cents)

        delivery_method = (
            metadata.get("delivery_method")
            or (customer.get("metadata") or {}).get("delivery_method")
            or DeliveryMethodEnum.pickup_point.value
        )
        delivery_network = metadata.get("delivery_network") or (customer.get("metadata") or {}).get("delivery_network")
        pickup_point = _json_metadata(metadata, "pickup_point") or _json_metadata(metadata, "parcel_point")
        dropoff_point = _json_metadata(metadata, "dropoff_point")
        weight = self._estimate_weight(metadata, store, available, partial=bool(missing) or stock_check.is_short)
        encoded = encode_product_reference(available)

        # Boxtal shipping order
        order: Optional[Dict[str, Any]] = None
        payload: Optional[Dict[str, Any]] = None
        if delivery_method != DeliveryMethodEnum.store_pickup.value:
            payload = build_shipping_order_payload(
                store=store,
                customer=customer,
                delivery_network=delivery_network,
                product_reference=encoded,
                declared_value_cents=fulfilled_total,
                weight_kg=weight,
                contact_email=self.settings.SHIPPING_CONTACT_EMAIL,
                owner_name=None,
                pickup_point=pickup_point,
                dropoff_point=dropoff_point,
            )
            try:
                order = await self.boxtal.create_shipping_order(payload)
            except BoxtalAPIError as e:
                self.sagas.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.failed, result={"payload": payload}, error=e)
                await self.email.send_admin_error(
                    subject="Création d'expédition Boxtal échouée",
                    message=str(e),
                    context={"payment_id": payment_id, "store": store.slug, "errors": e.errors},
                )

        content = (order or {}).get("content") or {}
        delivery_cost = delivery_cost_from_order(order) if order else None

        shipment = Shipment(
            payment_id=payment_id,
            session_id=session_id,
            store_id=store.id,
            customer_stripe_id=customer_id,
            line_items=line_items_to_json(available),
            product_reference=encoded,
            paid_value=payment_total,
            customer_spent_amount=max(0, payment_total - sold_out_cents),
            store_earnings_amount=store_earnings,
            promo_code=",".join(promotions.codes) or None,
            delivery_cost=Decimal(f"{delivery_cost:.2f}") if delivery_cost is not None else None,
            estimated_delivery_cost=Decimal(shipping_cost_cents - shipping_credit_cents) / 100,
            weight=weight,
            status=content.get("status") if order else None,
            delivery_method=delivery_method,
            delivery_network=delivery_network,
            pickup_point=pickup_point,
            dropoff_point=dropoff_point,
            shipment_id=content.get("id"),
            boxtal_shipping_json=payload if payload is not None and order is None else None,
            boxtal_shipment_creation_failed=payload is not None and order is None,
            is_open_shipment=False,
        )
        self.db.add(shipment)
        self.db.commit()
        saga.shipment_id = shipment.id
        self.sagas.mark_step(saga, STEP_SHIPMENT_ROW, SagaStepStatusEnum.succeeded, result={"id": shipment.id})
        if order:
            self.sagas.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.succeeded, result={"id": shipment.shipment_id})
        elif payload is None:
            self.sagas.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.skipped)

        # Stock reservation
        try:
            stock = reserve_stock_for_payment(self.db, store.id, available)
            self.db.commit()
            self.sagas.mark_step(
                saga, STEP_STOCK, SagaStepStatusEnum.succeeded,
                result={"rows": len(stock.adjusted), "unresolved": stock.unresolved},
            )
        except StockAdjustmentError as e:
            self.db.rollback()
            self.sagas.mark_step(saga, STEP_STOCK, SagaStepStatusEnum.failed, error=e)

        # Cart cleanup
        deleted = self._delete_consumed_carts(metadata, customer_id, store, available)
        self.db.commit()
        self.sagas.mark_step(saga, STEP_CART_CLEANUP, SagaStepStatusEnum.succeeded, result={"deleted": deleted})

        # Label and tracking URL
        label: Optional[EmailAttachment] = None
        if shipment.shipment_id:
            label = await self._fetch_label(saga, shipment)
            await self._fetch_tracking_url(saga, shipment)
            self.db.commit()
        elif payload is not None:
            self.sagas.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.failed, error="no shipping order")
            self.sagas.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.failed, error="no shipping order")

        # Emails
        await self._send_emails(saga, shipment, store, customer, session, superseded is not None, sold_out_cents, label)

        self.sagas.finish(saga)
        logger.info(
            f"[CHECKOUT] Shipment {shipment.id} created for {payment_id} "
            f"(boxtal={shipment.shipment_id}, credited={sold_out_cents})"
        )
        return CheckoutOutcome(
            action="created",
            payment_id=payment_id,
            shipment_id=shipment.id,
            credited_cents=sold_out_cents,
            missing_references=sorted(missing_refs),
        )

    async def _send_emails(
        self,
        saga,
        shipment: Shipment,
        store: Store,
        customer: Dict[str, Any],
        session: Dict[str, Any],
        modified: bool,
        credited_cents: int,
        label: Optional[EmailAttachment],
    ) -> None:
        lines = shipment.line_items or []
        customer_email = customer.get("email") or (session.get("customer_details") or {}).get("email")
        customer_name = customer.get("name") or (session.get("customer_details") or {}).get("name")

        if modified:
            sent = await self.email.send_customer_order_modified(
                to=customer_email,
                customer_name=customer_name,
                store_name=store.name,
                line_items=lines,
                amount_cents=shipment.paid_value or 0,
            )
        else:
            sent = await self.email.send_customer_confirmation(
                to=customer_email,
                customer_name=customer_name,
                store_name=store.name,
                line_items=lines,
                amount_cents=shipment.paid_value or 0,
                delivery_method=shipment.delivery_method,
                tracking_url=shipment.tracking_url,
                credited_cents=credited_cents,
            )
        self.sagas.mark_step(
            saga, STEP_CUSTOMER_EMAIL,
            SagaStepStatusEnum.succeeded if sent.success else SagaStepStatusEnum.failed,
            error=sent.error,
        )

        if modified:
            sent = await self.email.send_store_owner_order_modified(
                to=store.owner_email,
                store_name=store.name,
                customer_name=customer_name,
                line_items=lines,
                label=label,
            )
        else:
            sent = await self.email.send_store_owner_notification(
                to=store.owner_email,
                store_name=store.name,
                customer_name=customer_name,
                line_items=lines,
                earnings_cents=shipment.store_earnings_amount or 0,
                delivery_method=shipment.delivery_method,
                shipment_id=shipment.shipment_id,
                label=label,
            )
        self.sagas.mark_step(
            saga, STEP_OWNER_EMAIL,
            SagaStepStatusEnum.succeeded if sent.success else SagaStepStatusEnum.failed,
            error=sent.error,
        )
