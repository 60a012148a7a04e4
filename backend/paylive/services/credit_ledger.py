"""Buyer store-credit ledger.

WHAT:
    Append-only ledger of credit movements (`credit_ledger_entries`) with a
    materialized per-buyer balance (`credit_balances`). The Stripe customer
    `metadata.credit_balance` string is kept only as a display cache that
    the frontend and checkout-session creation still read.

WHY:
    Each entry carries an idempotency key derived from the business event
    (checkout session, shipment), so redelivered webhooks never apply the
    same credit twice. The balance row is updated with an atomic increment
    in the same transaction as the entry insert.

REFERENCES:
    - paylive/services/checkout_reconciler.py (sold-out refunds, credit use)
    - paylive/services/tracking_reconciler.py (delivery cost adjustments)
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import CreditBalance, CreditLedgerEntry, CreditReasonEnum

logger = logging.getLogger(__name__)


class CreditLedgerError(Exception):
    """Raised when a ledger entry could not be written."""


@dataclass
class PaidLineItem:
    """Amount actually charged by Stripe for one checkout line."""

    product_id: Optional[str]
    name: Optional[str]
    quantity: int
    amount_total: int  # cents
    amount_subtotal: int = 0  # cents, before discounts

    def matches(self, reference: str) -> bool:
        return reference in (self.product_id, self.name)


def compute_missing_reference_credit(
    line_items: Iterable[PaidLineItem],
    missing_references: Set[str],
    payment_total_cents: int,
) -> int:
    """Credit owed for references that could not be fulfilled.

    Sums the paid amount of every line item matching a missing reference and
    clamps the result to [0, payment_total_cents].
    """
    total = max(0, int(payment_total_cents or 0))
    if not missing_references or total == 0:
        return 0
    owed = 0
    for item in line_items:
        if any(item.matches(ref) for ref in missing_references):
            owed += max(0, int(item.amount_total or 0))
    return max(0, min(owed, total))


def get_balance(db: Session, customer_stripe_id: str) -> int:
    balance = db.get(CreditBalance, customer_stripe_id)
    return balance.balance_cents if balance else 0


def has_ledger(db: Session, customer_stripe_id: str) -> bool:
    return db.get(CreditBalance, customer_stripe_id) is not None


def _apply_to_balance(db: Session, customer_stripe_id: str, delta_cents: int) -> None:
    updated = db.execute(
        update(CreditBalance)
        .where(CreditBalance.customer_stripe_id == customer_stripe_id)
        .values(balance_cents=CreditBalance.balance_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )
    if updated.rowcount == 0:
        db.add(CreditBalance(customer_stripe_id=customer_stripe_id, balance_cents=delta_cents))
        db.flush()
    else:
        existing = db.get(CreditBalance, customer_stripe_id)
        if existing is not None:
            db.expire(existing)


def record_credit_entry(
    db: Session,
    customer_stripe_id: str,
    delta_cents: int,
    reason: CreditReasonEnum,
    idempotency_key: str,
    shipment_id: Optional[int] = None,
    payment_id: Optional[str] = None,
    note: Optional[str] = None,
) -> Tuple[CreditLedgerEntry, bool]:
    """Append a ledger entry unless its idempotency key was already used.

    Returns:
        (entry, created) where `created` is False for a replayed key.
        Nothing is committed; the caller owns the transaction.
    """
    existing = db.execute(
        select(CreditLedgerEntry).where(CreditLedgerEntry.idempotency_key == idempotency_key)
    ).scalar_one_or_none()
    if existing is not None:
        logger.info(f"[CREDIT] Skipping replayed entry {idempotency_key}")
        return existing, False

    entry = CreditLedgerEntry(
        customer_stripe_id=customer_stripe_id,
        delta_cents=int(delta_cents),
        reason=reason,
        idempotency_key=idempotency_key,
        shipment_id=shipment_id,
        payment_id=payment_id,
        note=note,
    )
    try:
        db.add(entry)
        db.flush()
        _apply_to_balance(db, customer_stripe_id, int(delta_cents))
    except IntegrityError as e:
        # A concurrent delivery wrote the same key first; the caller must roll back
        raise CreditLedgerError(f"Could not record credit entry {idempotency_key}") from e

    logger.info(
        f"[CREDIT] {customer_stripe_id} {int(delta_cents):+d} cents ({reason.value}) key={idempotency_key}"
    )
    return entry, True


def sum_entries(
    db: Session,
    customer_stripe_id: str,
    reason: Optional[CreditReasonEnum] = None,
    shipment_id: Optional[int] = None,
) -> int:
    query = select(func.coalesce(func.sum(CreditLedgerEntry.delta_cents), 0)).where(
        CreditLedgerEntry.customer_stripe_id == customer_stripe_id
    )
    if reason is not None:
        query = query.where(CreditLedgerEntry.reason == reason)
    if shipment_id is not None:
        query = query.where(CreditLedgerEntry.shipment_id == shipment_id)
    return int(db.execute(query).scalar_one())


def count_entries(db: Session, customer_stripe_id: str, reason: CreditReasonEnum, shipment_id: int) -> int:
    query = select(func.count(CreditLedgerEntry.id)).where(
        CreditLedgerEntry.customer_stripe_id == customer_stripe_id,
        CreditLedgerEntry.reason == reason,
        CreditLedgerEntry.shipment_id == shipment_id,
    )
    return int(db.execute(query).scalar_one())


def parse_legacy_balance(metadata: Optional[dict]) -> int:
    """Read the string-encoded `credit_balance` from Stripe customer metadata."""
    raw = (metadata or {}).get("credit_balance")
    try:
        return int(float(str(raw).strip())) if raw not in (None, "") else 0
    except (TypeError, ValueError):
        return 0


def ensure_opening_balance(db: Session, customer_stripe_id: str, stripe_metadata: Optional[dict]) -> int:
    """Seed the ledger from the legacy Stripe metadata on first touch.

    Returns the current ledger balance.
    """
    if has_ledger(db, customer_stripe_id):
        return get_balance(db, customer_stripe_id)

    opening = parse_legacy_balance(stripe_metadata)
    record_credit_entry(
        db,
        customer_stripe_id,
        opening,
        CreditReasonEnum.opening_balance,
        idempotency_key=f"opening-balance:{customer_stripe_id}",
        note="Imported from Stripe customer metadata",
    )
    return get_balance(db, customer_stripe_id)


def sync_balance_cache(stripe_gateway, customer_stripe_id: str, balance_cents: int, idempotency_key: str) -> bool:
    """Write the ledger balance to the Stripe customer metadata cache.

    Best-effort: a failure is logged and reported, the ledger stays the
    source of truth and the reconciliation job retries the sync.
    """
    try:
        stripe_gateway.update_customer_metadata(
            customer_stripe_id,
            {"credit_balance": str(int(balance_cents))},
            idempotency_key=idempotency_key,
        )
        return True
    except Exception as e:
        logger.warning(f"[CREDIT] Stripe balance cache sync failed for {customer_stripe_id}: {e}")
        return False
