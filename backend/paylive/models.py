"""SQLAlchemy ORM models and enums.

This module defines the checkout schema: stores and their stock, customer
carts, shipments (one per completed payment), the append-only credit ledger
with its materialized balance, the fulfillment saga outbox and the webhook
de-duplication log.

Customers have no table of their own: they are identified everywhere by
their Stripe customer id (`cus_...`).
"""

from datetime import datetime
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class DeliveryMethodEnum(str, enum.Enum):
    pickup_point = "pickup_point"
    home_delivery = "home_delivery"
    store_pickup = "store_pickup"


class CreditReasonEnum(str, enum.Enum):
    """Why a credit ledger entry was written.

    Positive deltas give the buyer store credit, negative ones consume it
    (or record a delivery debt when the real shipping cost was higher
    than what the buyer paid).
    """
    opening_balance = "opening_balance"
    sold_out_refund = "sold_out_refund"
    credit_applied = "credit_applied"
    promo_credit_applied = "promo_credit_applied"
    credit_topup = "credit_topup"
    delivery_debt_settled = "delivery_debt_settled"
    delivery_adjustment = "delivery_adjustment"


class SagaStatusEnum(str, enum.Enum):
    started = "started"
    blocked = "blocked"
    partial = "partial"
    completed = "completed"
    aborted = "aborted"


class SagaStepStatusEnum(str, enum.Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class WebhookProviderEnum(str, enum.Enum):
    stripe = "stripe"
    boxtal = "boxtal"


# Shipment status values that still allow a customer cancellation
CANCELLABLE_STATUSES = {"", "PENDING", "ANNOUNCED"}
CANCELLED_STATUS = "CANCELLED"


# Core models ----------------------------------------------------

class Store(Base):
    """Seller profile.

    `slug` is the public URL identity of the store, `clerk_id` the owner's
    auth identity. Payout fields are kept for the payout flow handled
    outside this service.
    """
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)
    clerk_id = Column(String, nullable=True, index=True)
    owner_email = Column(String, nullable=True)
    stripe_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    website = Column(String, nullable=True)
    # {"line1", "line2", "postal_code", "city", "country", "phone"}
    address = Column(JSON, nullable=True)
    iban_bic = Column(JSON, nullable=True)
    payout_created_at = Column(DateTime, nullable=True)
    payout_facture_id = Column(Integer, nullable=False, default=0)
    tva_applicable = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    stock_items = relationship("StockItem", back_populates="store", cascade="all, delete-orphan")
    shipments = relationship("Shipment", back_populates="store")

    def __str__(self):
        return self.name


class StockItem(Base):
    """Per-store inventory for one product.

    `quantity` NULL means the store does not track quantities for this
    product; only `bought` moves then. Both counters are only ever changed
    by additive deltas (see services/stock_adjustment.py).
    """
    __tablename__ = "stock"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    product_reference = Column(String, nullable=False)
    product_stripe_id = Column(String, nullable=True, index=True)
    quantity = Column(Integer, nullable=True)
    bought = Column(Integer, nullable=False, default=0)
    weight = Column(Float, nullable=True)  # kg
    created_at = Column(DateTime, default=datetime.utcnow)

    store = relationship("Store", back_populates="stock_items")

    __table_args__ = (
        UniqueConstraint("store_id", "product_reference", name="uq_stock_store_reference"),
        CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_stock_quantity_non_negative"),
        CheckConstraint("bought >= 0", name="ck_stock_bought_non_negative"),
    )

    def __str__(self):
        return f"{self.product_reference} (store {self.store_id})"


class CartItem(Base):
    """Pre-checkout line item.

    Rows rebuilt from a previous payment (open-shipment edit) carry that
    payment's id in `payment_id` so they can be purged with the edit.
    """
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_stripe_id = Column(String, nullable=False, index=True)
    product_reference = Column(String, nullable=False)
    value = Column(Float, nullable=False, default=0.0)  # unit price, euros
    quantity = Column(Integer, nullable=False, default=1)
    description = Column(Text, nullable=True)
    payment_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    store = relationship("Store")

    def __str__(self):
        return f"{self.product_reference} x{self.quantity}"


class Shipment(Base):
    """One fulfilled order, created once per completed payment.

    `line_items` is the structured source of truth for what was bought;
    `product_reference` keeps the legacy encoded string in sync for older
    readers and display. At most one row per (customer, store) may have
    `is_open_shipment` set, enforced by a partial unique index.
    """
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shipment_id = Column(String, nullable=True, index=True)  # Boxtal shipping order id
    payment_id = Column(String, nullable=False, unique=True)  # Stripe PaymentIntent id
    session_id = Column(String, nullable=True)

    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False, index=True)
    customer_stripe_id = Column(String, nullable=False, index=True)

    line_items = Column(JSON, nullable=True)
    product_reference = Column(Text, nullable=True)
    paid_value = Column(Integer, nullable=True)  # cents
    customer_spent_amount = Column(Integer, nullable=True)  # cents
    store_earnings_amount = Column(Integer, nullable=True)  # cents
    promo_code = Column(String, nullable=True)
    delivery_cost = Column(Numeric(10, 2), nullable=True)  # euros, VAT included
    estimated_delivery_cost = Column(Numeric(10, 2), nullable=True)  # euros paid at checkout
    weight = Column(Float, nullable=True)  # kg

    status = Column(String, nullable=True)
    delivery_method = Column(String, nullable=True)
    delivery_network = Column(String, nullable=True)
    pickup_point = Column(JSON, nullable=True)
    dropoff_point = Column(JSON, nullable=True)
    tracking_url = Column(String, nullable=True)
    is_final_destination = Column(Boolean, nullable=False, default=False)
    delivery_date = Column(DateTime, nullable=True)
    document_created = Column(Boolean, nullable=False, default=False)
    document_url = Column(String, nullable=True)
    boxtal_shipping_json = Column(JSON, nullable=True)
    boxtal_shipment_creation_failed = Column(Boolean, nullable=False, default=False)

    is_open_shipment = Column(Boolean, nullable=False, default=False)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    return_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="shipments")

    __table_args__ = (
        Index(
            "uq_shipments_one_open_per_customer_store",
            "customer_stripe_id",
            "store_id",
            unique=True,
            postgresql_where=text("is_open_shipment"),
            sqlite_where=text("is_open_shipment = 1"),
        ),
    )

    def __str__(self):
        return f"Shipment {self.id} ({self.payment_id})"


class CreditLedgerEntry(Base):
    """Append-only store-credit movement for one buyer.

    `idempotency_key` makes every business event write at most one entry,
    whatever the number of webhook deliveries.
    """
    __tablename__ = "credit_ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_stripe_id = Column(String, nullable=False, index=True)
    delta_cents = Column(Integer, nullable=False)
    reason = Column(Enum(CreditReasonEnum, name="credit_reason"), nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="SET NULL"), nullable=True, index=True)
    payment_id = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class CreditBalance(Base):
    """Materialized sum of a buyer's ledger entries."""
    __tablename__ = "credit_balances"

    customer_stripe_id = Column(String, primary_key=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FulfillmentSaga(Base):
    """Intent record written before any external effect of a payment.

    `payload` keeps the checkout session snapshot so the reconciliation job
    can resume failed steps without the original webhook.
    """
    __tablename__ = "fulfillment_sagas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, nullable=False, unique=True)
    session_id = Column(String, nullable=True)
    event_id = Column(String, nullable=True)
    customer_stripe_id = Column(String, nullable=True, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=True)
    status = Column(Enum(SagaStatusEnum, name="saga_status"), nullable=False, default=SagaStatusEnum.started)
    payload = Column(JSON, nullable=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="SET NULL"), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship(
        "FulfillmentSagaStep",
        back_populates="saga",
        cascade="all, delete-orphan",
        order_by="FulfillmentSagaStep.id",
    )

    def __str__(self):
        return f"Saga {self.payment_id} [{self.status}]"


class FulfillmentSagaStep(Base):
    """Status of one external effect of a saga."""
    __tablename__ = "fulfillment_saga_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    saga_id = Column(Integer, ForeignKey("fulfillment_sagas.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(Enum(SagaStepStatusEnum, name="saga_step_status"), nullable=False, default=SagaStepStatusEnum.pending)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    saga = relationship("FulfillmentSaga", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("saga_id", "name", name="uq_saga_step_name"),
    )


class WebhookEvent(Base):
    """Processed webhook deliveries, used to skip redeliveries."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Enum(WebhookProviderEnum, name="webhook_provider"), nullable=False)
    event_key = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    object_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=True)
    processing_result = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
