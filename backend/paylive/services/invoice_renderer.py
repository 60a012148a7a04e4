"""Customer invoice PDF.

WHAT: Renders the invoice of one shipment with reportlab
WHY: Buyers download it from their orders page; it is built from the
     structured line items so edited orders show their current content

REFERENCES:
    - https://docs.reportlab.com/reportlab/userguide/ch5_platypus/
"""

import logging
from datetime import datetime
from html import escape
from io import BytesIO
from typing import Any, Dict, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .product_reference import shipment_line_items

logger = logging.getLogger(__name__)

VAT_EXEMPT_MENTION = "TVA non applicable, art. 293 B du CGI"
VAT_INCLUDED_MENTION = "Prix TTC, TVA incluse au taux en vigueur"


def invoice_number(shipment) -> str:
    return f"F-{shipment.id}"


def _eur(value: Optional[float]) -> str:
    amount = float(value or 0)
    return f"{amount:.2f} €".replace(".", ",")


def _address_lines(address: Optional[Dict[str, Any]]) -> list:
    if not address:
        return []
    city = " ".join(part for part in (address.get("postal_code"), address.get("city")) if part)
    return [line for line in (address.get("line1"), address.get("line2"), city, address.get("country")) if line]


def render_invoice_pdf(shipment, store, customer: Optional[Dict[str, Any]] = None) -> bytes:
    """Build the invoice PDF and return its bytes.

    Args:
        shipment: Shipment row
        store: Store row of the seller
        customer: Stripe customer dict (name, email, address), optional
    """
    customer = customer or {}
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=2 * cm,
        leftMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=2 * cm,
        title=f"Facture {invoice_number(shipment)}",
    )

    styles = getSampleStyleSheet()
    right = ParagraphStyle("InvoiceRight", parent=styles["Normal"], alignment=TA_RIGHT)
    elements = []

    # Seller
    elements.append(Paragraph(f"<b>{escape(store.name)}</b>", styles["Heading1"]))
    for line in _address_lines(store.address):
        elements.append(Paragraph(escape(str(line)), styles["Normal"]))
    if store.owner_email:
        elements.append(Paragraph(escape(store.owner_email), styles["Normal"]))
    elements.append(Spacer(1, 0.6 * cm))

    issued = shipment.created_at or datetime.utcnow()
    elements.append(Paragraph(f"<b>Facture {invoice_number(shipment)}</b>", right))
    elements.append(Paragraph(f"Date : {issued.strftime('%d/%m/%Y')}", right))
    elements.append(Paragraph(f"Paiement : {escape(shipment.payment_id)}", right))
    elements.append(Spacer(1, 0.6 * cm))

    # Buyer
    elements.append(Paragraph("<b>Client</b>", styles["Normal"]))
    if customer.get("name"):
        elements.append(Paragraph(escape(customer["name"]), styles["Normal"]))
    if customer.get("email"):
        elements.append(Paragraph(escape(customer["email"]), styles["Normal"]))
    buyer_address = (customer.get("shipping") or {}).get("address") or customer.get("address")
    for line in _address_lines(buyer_address):
        elements.append(Paragraph(escape(str(line)), styles["Normal"]))
    elements.append(Spacer(1, 0.8 * cm))

    # Lines
    table_data = [["Référence", "Description", "Qté"]]
    for item in shipment_line_items(shipment):
        table_data.append([
            Paragraph(escape(item.reference), styles["Normal"]),
            Paragraph(escape(item.description or ""), styles["Normal"]),
            str(item.quantity),
        ])
    table = Table(table_data, colWidths=[5 * cm, 10 * cm, 2 * cm], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#111827")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (2, 0), (2, -1), "CENTER"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#d1d5db")),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    elements.append(table)
    elements.append(Spacer(1, 0.6 * cm))

    # Totals
    totals = [
        ["Livraison", _eur(shipment.estimated_delivery_cost)],
        ["Total payé", _eur((shipment.paid_value or 0) / 100)],
    ]
    if shipment.promo_code:
        totals.insert(0, ["Code promo", shipment.promo_code])
    totals_table = Table(totals, colWidths=[13 * cm, 4 * cm])
    totals_table.setStyle(TableStyle([
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("LINEABOVE", (0, -1), (-1, -1), 0.5, colors.black),
    ]))
    elements.append(totals_table)
    elements.append(Spacer(1, 1 * cm))

    mention = VAT_INCLUDED_MENTION if store.tva_applicable else VAT_EXEMPT_MENTION
    elements.append(Paragraph(f"<i>{mention}</i>", styles["Normal"]))

    doc.build(elements)
    logger.info(f"[INVOICE] Rendered {invoice_number(shipment)} for shipment {shipment.id}")
    return buffer.getvalue()
