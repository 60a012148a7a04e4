"""Boxtal shipping order payload builder.

WHAT:
    Builds the v3.1 `shipping-order` request body for a paid checkout:
    package dimensions by carrier offer, declared value, recipient and
    sender addresses, relay point codes.

WHY:
    The built payload is stored on the shipment (`boxtal_shipping_json`)
    when order creation fails, and the saga reconciliation job replays it
    as-is.

REFERENCES:
    - https://developer.boxtal.com/ (Shipping API v3.1, shipping-order)
"""

import re
from typing import Any, Dict, Optional, Tuple


# (width, length, height) in cm, keyed by Boxtal shipping offer code
PACKAGE_DIMENSIONS: Dict[str, Tuple[int, int, int]] = {
    "MONR-CpourToi": (41, 64, 38),
    "MONR-DomicileFrance": (41, 64, 38),
    "SOGP-RelaisColis": (50, 80, 40),
    "CHRP-Chrono2ShopDirect": (30, 100, 20),
    "CHRP-Chrono18": (30, 100, 20),
    "UPSE-Express": (41, 64, 38),
    "POFR-ColissimoAccess": (24, 34, 26),
    "COPR-CoprRelaisDomicileNat": (49, 69, 29),
    "COPR-CoprRelaisRelaisNat": (49, 69, 29),
    "MONR-CpourToiEurope": (41, 64, 38),
    "CHRP-Chrono2ShopEurope": (30, 100, 20),
    "MONR-DomicileEurope": (41, 64, 38),
    "CHRP-ChronoInternationalClassic": (30, 100, 20),
    "DLVG-DelivengoEasy": (20, 60, 10),
    "FEDX-FedexRegionalEconomy": (20, 200, 10),
}
DEFAULT_PACKAGE_DIMENSIONS = (10, 10, 5)

# Boxtal content category "Accessoires de mode / vêtements"
PACKAGE_CONTENT_ID = "content:v1:40110"

# Boxtal prices are excl. VAT; buyers are charged VAT included
DELIVERY_VAT_RATE = 1.2

_WEIGHT_PATTERN = re.compile(r"^\s*([0-9]+(?:[.,][0-9]+)?)\s*(kg|g)?\s*$", re.IGNORECASE)


def package_dimensions(delivery_network: Optional[str]) -> Dict[str, int]:
    width, length, height = PACKAGE_DIMENSIONS.get(delivery_network or "", DEFAULT_PACKAGE_DIMENSIONS)
    return {"width": width, "length": length, "height": height}


def parse_weight_kg(raw: Any, default: float = 0.5) -> float:
    """Parse checkout weight metadata ("500g", "1.2kg", "1.2") into kg."""
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else default
    match = _WEIGHT_PATTERN.match(str(raw))
    if not match:
        return default
    value = float(match.group(1).replace(",", "."))
    if (match.group(2) or "kg").lower() == "g":
        value = value / 1000.0
    return value if value > 0 else default


def _split_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], parts[0]
    return " ".join(parts[:-1]), parts[-1]


def _clean_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    return phone.lstrip("+").replace(" ", "") or None


def build_recipient_address(customer: Dict[str, Any]) -> Dict[str, Any]:
    """RESIDENTIAL address from a Stripe customer (shipping first, then billing)."""
    shipping = customer.get("shipping") or {}
    address = shipping.get("address") or customer.get("address") or {}
    name = shipping.get("name") or customer.get("name")
    first_name, last_name = _split_name(name)
    return {
        "type": "RESIDENTIAL",
        "contact": {
            "email": customer.get("email"),
            "phone": _clean_phone(shipping.get("phone") or customer.get("phone")),
            "firstName": first_name,
            "lastName": last_name,
        },
        "location": {
            "city": address.get("city"),
            "street": address.get("line1"),
            "postalCode": address.get("postal_code"),
            "countryIsoCode": address.get("country") or "FR",
        },
    }


def build_sender_address(store, owner_name: Optional[str], contact_email: str) -> Dict[str, Any]:
    """BUSINESS address from the store profile."""
    address = store.address or {}
    first_name, last_name = _split_name(owner_name or store.name)
    street = address.get("line1") or ""
    return {
        "type": "BUSINESS",
        "contact": {
            "email": contact_email,
            "phone": _clean_phone(address.get("phone")),
            "firstName": first_name,
            "lastName": last_name,
            "company": store.name or "PayLive",
        },
        "location": {
            "city": address.get("city"),
            "street": street,
            "number": street.split(" ")[0] if street else None,
            "postalCode": address.get("postal_code"),
            "countryIsoCode": address.get("country") or "FR",
        },
    }


def build_shipping_order_payload(
    *,
    store,
    customer: Dict[str, Any],
    delivery_network: str,
    product_reference: str,
    declared_value_cents: int,
    weight_kg: float,
    contact_email: str,
    owner_name: Optional[str] = None,
    pickup_point: Optional[Dict[str, Any]] = None,
    dropoff_point: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the `POST /shipping/v3.1/shipping-order` body."""
    shipment: Dict[str, Any] = {
        "packages": [
            {
                "type": "PARCEL",
                "value": {"value": round((declared_value_cents or 0) / 100, 2), "currency": "EUR"},
                **package_dimensions(delivery_network),
                "weight": round(weight_kg, 3),
                "content": {
                    "id": PACKAGE_CONTENT_ID,
                    "description": f"{store.name} - {product_reference}",
                },
            }
        ],
        "toAddress": build_recipient_address(customer),
        "fromAddress": build_sender_address(store, owner_name, contact_email),
    }
    if pickup_point and pickup_point.get("code"):
        shipment["pickupPointCode"] = pickup_point["code"]
    if dropoff_point and dropoff_point.get("code"):
        shipment["dropOffPointCode"] = dropoff_point["code"]

    return {
        "insured": False,
        "shipment": shipment,
        "labelType": "PDF_A4",
        "shippingOfferCode": delivery_network,
    }


def delivery_cost_from_order(order: Dict[str, Any]) -> Optional[float]:
    """VAT-included delivery cost in euros from a Boxtal shipping order body."""
    content = order.get("content") if isinstance(order.get("content"), dict) else order
    price = (content or {}).get("deliveryPriceExclTax") or {}
    value = price.get("value")
    if value is None:
        return None
    try:
        return max(0.0, round(float(value) * DELIVERY_VAT_RATE, 2))
    except (TypeError, ValueError):
        return None
