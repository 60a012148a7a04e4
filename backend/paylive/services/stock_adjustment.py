"""Stock adjustment engine.

WHAT:
    Applies additive quantity/bought deltas to `stock` rows for a list of
    line items, in one of two directions:

    - restock:   quantity += qty, bought = max(0, bought - qty)
                 (an order is reopened or cancelled, its units are sellable again)
    - unrestock: quantity = max(0, quantity - qty), bought += qty
                 (units are reserved again for an order)

    Rows whose quantity is NULL are untracked: only `bought` moves.

WHY:
    Every change is a single conditional UPDATE evaluated by the database,
    so two concurrent edits on the same product cannot lose an update the
    way a read-then-write sequence would.

REFERENCES:
    - paylive/services/open_shipment_editor.py (open, force-close, cancel)
    - paylive/services/checkout_reconciler.py (reservation after payment)
"""

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import StockItem
from .product_reference import LineItem, is_stripe_product_id

logger = logging.getLogger(__name__)


class StockAdjustmentMode(str, enum.Enum):
    restock = "restock"
    unrestock = "unrestock"


class StockAdjustmentError(Exception):
    """Raised when a stock row could not be read or updated."""


@dataclass
class StockAdjustmentResult:
    mode: StockAdjustmentMode
    adjusted: Dict[int, int] = field(default_factory=dict)  # stock id -> units moved
    unresolved: List[str] = field(default_factory=list)


def _resolve_stock_rows(
    db: Session, store_id: int, references: List[str]
) -> Dict[str, StockItem]:
    """Map references to stock rows with at most two batched queries."""
    product_ids = [r for r in references if is_stripe_product_id(r)]
    free_refs = [r for r in references if not is_stripe_product_id(r)]
    resolved: Dict[str, StockItem] = {}

    if product_ids:
        rows = db.execute(
            select(StockItem).where(
                StockItem.store_id == store_id,
                StockItem.product_stripe_id.in_(product_ids),
            )
        ).scalars().all()
        for row in rows:
            resolved.setdefault(row.product_stripe_id, row)

    if free_refs:
        rows = db.execute(
            select(StockItem).where(
                StockItem.store_id == store_id,
                StockItem.product_reference.in_(free_refs),
            )
        ).scalars().all()
        for row in rows:
            resolved.setdefault(row.product_reference, row)

    return resolved


def _adjustment_values(mode: StockAdjustmentMode, qty: int) -> dict:
    if mode == StockAdjustmentMode.restock:
        return {
            # NULL + qty stays NULL, so untracked rows keep their NULL quantity
            "quantity": StockItem.quantity + qty,
            "bought": case((StockItem.bought >= qty, StockItem.bought - qty), else_=0),
        }
    return {
        "quantity": case(
            (StockItem.quantity.is_(None), None),
            (StockItem.quantity >= qty, StockItem.quantity - qty),
            else_=0,
        ),
        "bought": StockItem.bought + qty,
    }


def apply_stock_adjustment(
    db: Session,
    store_id: int,
    items: Iterable[LineItem],
    mode: StockAdjustmentMode,
) -> StockAdjustmentResult:
    """Apply a restock/unrestock to the store's stock rows.

    The caller owns the transaction: nothing is committed here.

    Raises:
        StockAdjustmentError: on any database error
    """
    mode = StockAdjustmentMode(mode)
    result = StockAdjustmentResult(mode=mode)

    wanted: "OrderedDict[str, int]" = OrderedDict()
    for item in items:
        if not item.reference or item.quantity <= 0:
            continue
        wanted[item.reference] = wanted.get(item.reference, 0) + int(item.quantity)
    if not wanted:
        return result

    try:
        resolved = _resolve_stock_rows(db, store_id, list(wanted.keys()))

        per_row: "OrderedDict[int, int]" = OrderedDict()
        for reference, qty in wanted.items():
            row = resolved.get(reference)
            if row is None:
                result.unresolved.append(reference)
                continue
            per_row[row.id] = per_row.get(row.id, 0) + qty

        for stock_id, qty in per_row.items():
            db.execute(
                update(StockItem)
                .where(StockItem.id == stock_id)
                .values(**_adjustment_values(mode, qty))
                .execution_options(synchronize_session=False)
            )
            result.adjusted[stock_id] = qty

        # Refresh in-session copies so callers see the database values
        for row in resolved.values():
            db.expire(row)
    except SQLAlchemyError as e:
        logger.error(f"[STOCK] {mode.value} failed for store {store_id}: {e}")
        raise StockAdjustmentError(f"Stock {mode.value} failed for store {store_id}") from e

    if result.unresolved:
        logger.warning(
            f"[STOCK] {mode.value} store={store_id}: no stock row for {result.unresolved}"
        )
    logger.info(f"[STOCK] {mode.value} store={store_id} rows={dict(result.adjusted)}")
    return result


def reserve_stock_for_payment(db: Session, store_id: int, items: Iterable[LineItem]) -> StockAdjustmentResult:
    """Take the fulfilled items of a paid order out of sellable stock."""
    return apply_stock_adjustment(db, store_id, items, StockAdjustmentMode.unrestock)


def sellable_quantities(db: Session, store_id: int, references: Iterable[str]) -> Dict[str, Optional[int]]:
    """Current sellable quantity for each reference.

    Untracked rows (NULL quantity) and references with no stock row map to
    None, meaning "no limit".

    Raises:
        StockAdjustmentError: on any database error
    """
    wanted = list(OrderedDict.fromkeys(r for r in references if r))
    if not wanted:
        return {}
    try:
        resolved = _resolve_stock_rows(db, store_id, wanted)
    except SQLAlchemyError as e:
        logger.error(f"[STOCK] Stock read failed for store {store_id}: {e}")
        raise StockAdjustmentError(f"Stock read failed for store {store_id}") from e

    quantities: Dict[str, Optional[int]] = {}
    for reference in wanted:
        row = resolved.get(reference)
        quantities[reference] = None if row is None or row.quantity is None else max(0, int(row.quantity))
    return quantities
