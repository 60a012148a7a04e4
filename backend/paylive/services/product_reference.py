"""Product reference parsing and encoding.

WHAT:
    Converts between the legacy `product_reference` string stored on
    shipments (and in Stripe checkout metadata) and a structured list of
    line items `{reference, quantity, description}`.

WHY:
    Shipments now persist their line items as JSON (`shipments.line_items`).
    Rows written before that column existed, and every checkout session
    created by older frontends, still carry the delimited string, so the
    parser stays as the single way to read it.

GRAMMAR:
    raw       := segment (";" segment)*
    segment   := product_id                            bare Stripe product id
               | reference "**" qty ["@" token] ["(" description ")"]
               | reference ["@" qty] ["(" description ")"]

    - If every non-empty segment is a bare `prod_...` id, quantities are
      occurrence counts (legacy encoding without explicit quantities).
    - Otherwise quantity comes from `**qty`, then `@qty`, else 1. A
      quantity that is not a positive integer counts as 1.
    - Repeated references are merged: quantities summed, first non-empty
      description kept, order of first appearance kept.

REFERENCES:
    - paylive/services/stock_adjustment.py (consumes parsed items)
    - paylive/services/invoice_renderer.py (invoice lines)
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


PRODUCT_ID_PATTERN = re.compile(r"^prod_[A-Za-z0-9_]+$")
SEGMENT_SEPARATOR = ";"


@dataclass
class LineItem:
    """One product line of an order."""

    reference: str
    quantity: int = 1
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "quantity": self.quantity,
            "description": self.description,
        }


def is_stripe_product_id(reference: str) -> bool:
    return bool(PRODUCT_ID_PATTERN.match(reference or ""))


def _parse_quantity(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    raw = raw.strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def _parse_segment(segment: str) -> LineItem:
    description = None
    head = segment
    open_idx = segment.find("(")
    if open_idx != -1 and segment.endswith(")"):
        description = segment[open_idx + 1:-1].strip() or None
        head = segment[:open_idx]

    quantity = None
    if "**" in head:
        reference, _, rest = head.partition("**")
        # Anything after "@" in the explicit form is ignored
        quantity = _parse_quantity(rest.split("@", 1)[0])
    elif "@" in head:
        reference, _, rest = head.partition("@")
        quantity = _parse_quantity(rest)
    else:
        reference = head

    return LineItem(
        reference=reference.strip(),
        quantity=quantity or 1,
        description=description,
    )


def merge_line_items(items: Iterable[LineItem]) -> List[LineItem]:
    """Merge line items sharing a reference, keeping first-seen order."""
    merged: Dict[str, LineItem] = {}
    for item in items:
        if not item.reference:
            continue
        existing = merged.get(item.reference)
        if existing is None:
            merged[item.reference] = LineItem(item.reference, item.quantity, item.description)
            continue
        existing.quantity += item.quantity
        if not existing.description and item.description:
            existing.description = item.description
    return list(merged.values())


def parse_product_reference(raw: Optional[str]) -> List[LineItem]:
    """Parse a legacy `product_reference` string into merged line items."""
    if not raw or not raw.strip():
        return []

    segments = [s.strip() for s in raw.split(SEGMENT_SEPARATOR)]
    segments = [s for s in segments if s]
    if not segments:
        return []

    if all(is_stripe_product_id(s) for s in segments):
        return merge_line_items(LineItem(reference=s, quantity=1) for s in segments)

    return merge_line_items(_parse_segment(s) for s in segments)


def encode_product_reference(items: Iterable[LineItem]) -> str:
    """Encode line items as `reference**quantity(description)` joined by `;`."""
    parts = []
    for item in items:
        part = f"{item.reference}**{int(item.quantity)}"
        if item.description:
            part += f"({item.description})"
        parts.append(part)
    return SEGMENT_SEPARATOR.join(parts)


def line_items_to_json(items: Iterable[LineItem]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


def line_items_from_json(data: Optional[List[Dict[str, Any]]]) -> List[LineItem]:
    if not data:
        return []
    items = []
    for row in data:
        reference = str(row.get("reference") or "").strip()
        if not reference:
            continue
        quantity = row.get("quantity") or 1
        try:
            quantity = max(1, int(quantity))
        except (TypeError, ValueError):
            quantity = 1
        items.append(LineItem(reference, quantity, row.get("description") or None))
    return merge_line_items(items)


def shipment_line_items(shipment) -> List[LineItem]:
    """Line items of a shipment, falling back to the legacy string column."""
    if shipment.line_items:
        return line_items_from_json(shipment.line_items)
    return parse_product_reference(shipment.product_reference)
