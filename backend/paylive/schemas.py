"""Pydantic schemas for request/response payloads.

Request bodies use the camelCase keys the storefront sends (`shipmentId`,
`storeId`...) through aliases; responses are serialized with the same
aliases.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Generic Schemas

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"]
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(
        description="Error message",
        examples=["Shipment not found"]
    )


class WebhookAck(BaseModel):
    """Acknowledgement returned to Stripe and Boxtal."""

    received: bool = Field(default=True, description="Always true once the signature is valid")
    action: Optional[str] = Field(
        default=None,
        description="What was done with the event: processed, skipped, ignored or error",
    )


# Cart Schemas

def _quantity_or_one(value: Any) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 1
    return quantity if quantity > 0 else 1


class CartItemCreate(BaseModel):
    """Payload for adding a product to a buyer's cart."""

    customer_stripe_id: str = Field(min_length=1, description="Stripe customer id of the buyer")
    store_id: int = Field(description="Store the product belongs to")
    product_reference: str = Field(min_length=1, description="Stripe product id or free-text reference")
    value: float = Field(ge=0, description="Unit price in euros")
    quantity: int = Field(default=1, description="Units; invalid or non-positive values become 1")
    description: Optional[str] = Field(default=None, description="Variant or note shown to the buyer")
    payment_id: Optional[str] = Field(default=None, description="Payment this row was rebuilt from")

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, value: Any) -> int:
        return _quantity_or_one(value)


class CartItemUpdate(BaseModel):
    """Fields a buyer may change on a cart row."""

    quantity: Optional[int] = Field(default=None, description="New quantity")
    value: Optional[float] = Field(default=None, ge=0, description="New unit price in euros")
    description: Optional[str] = Field(default=None, description="New description")

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, value: Any) -> Optional[int]:
        if value is None:
            return None
        return _quantity_or_one(value)


class CartDeleteRequest(BaseModel):
    id: int = Field(description="Cart row id")


class CartItemOut(BaseModel):
    """Cart row as stored."""

    id: int
    store_id: int
    customer_stripe_id: str
    product_reference: str
    value: float
    quantity: int
    description: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CartCreateResponse(BaseModel):
    success: bool = True
    item: CartItemOut


class StoreSummary(BaseModel):
    id: int
    name: str
    slug: str

    model_config = {"from_attributes": True}


class CartSummaryLine(BaseModel):
    id: int
    product_reference: str
    value: float
    quantity: int
    description: Optional[str] = None

    model_config = {"from_attributes": True}


class CartStoreGroup(BaseModel):
    store: Optional[StoreSummary] = None
    total: float = Field(description="Sum of value x quantity for this store, euros")
    items: List[CartSummaryLine]


class CartSummaryResponse(BaseModel):
    """Cart content grouped by store."""

    model_config = ConfigDict(populate_by_name=True)

    items_by_store: List[CartStoreGroup] = Field(alias="itemsByStore")
    grand_total: float = Field(alias="grandTotal", description="Sum over all stores, euros")


class StoreCartsResponse(BaseModel):
    """Every cart row of a store, for the store owner."""

    store: StoreSummary
    items: List[CartItemOut]


class CartRecapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_id: int = Field(alias="storeId", description="Store whose cart is summarized")


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


# Shipment Schemas

class ShipmentOut(BaseModel):
    """Shipment as returned to buyers and store owners."""

    id: int
    shipment_id: Optional[str] = Field(default=None, description="Boxtal shipping order id")
    payment_id: str
    store_id: int
    customer_stripe_id: str
    line_items: Optional[List[Dict[str, Any]]] = None
    product_reference: Optional[str] = None
    paid_value: Optional[int] = Field(default=None, description="Cents")
    customer_spent_amount: Optional[int] = Field(default=None, description="Cents")
    store_earnings_amount: Optional[int] = Field(default=None, description="Cents")
    promo_code: Optional[str] = None
    delivery_cost: Optional[float] = Field(default=None, description="Euros, VAT included")
    estimated_delivery_cost: Optional[float] = Field(default=None, description="Euros paid at checkout")
    weight: Optional[float] = None
    status: Optional[str] = None
    delivery_method: Optional[str] = None
    delivery_network: Optional[str] = None
    pickup_point: Optional[Dict[str, Any]] = None
    dropoff_point: Optional[Dict[str, Any]] = None
    tracking_url: Optional[str] = None
    is_final_destination: bool = False
    delivery_date: Optional[datetime] = None
    document_created: bool = False
    document_url: Optional[str] = None
    is_open_shipment: bool = False
    cancel_requested: bool = False
    return_requested: bool = False
    created_at: Optional[datetime] = None
    store: Optional[StoreSummary] = None

    model_config = {"from_attributes": True}


class ShipmentResponse(BaseModel):
    shipment: ShipmentOut


class ShipmentListResponse(BaseModel):
    shipments: List[ShipmentOut]


class StoreShipmentsResponse(BaseModel):
    """Shipments of a store, newest first, for its owner."""

    shipments: List[ShipmentOut]
    store: StoreSummary


class OpenShipmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipment_id: int = Field(alias="shipmentId", description="Internal shipment id")
    force: bool = Field(default=False, description="Close any other open shipment of the same store first")


class OpenShipmentByPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(alias="paymentId", min_length=1, description="Stripe PaymentIntent id")
    store_id: Optional[int] = Field(default=None, alias="storeId")
    force: bool = False


class OpenShipmentResponse(BaseModel):
    success: bool = True
    shipment: ShipmentOut


class ActiveOpenShipmentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    open_shipment: Optional[ShipmentOut] = Field(default=None, alias="openShipment")


class CancelOpenShipmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_id: int = Field(alias="storeId")
    payment_id: Optional[str] = Field(default=None, alias="paymentId")


class CancelOpenShipmentResponse(BaseModel):
    success: bool = True
    closed: List[int] = Field(default_factory=list, description="Ids of the shipments closed")


class RebuildCartsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(alias="paymentId", min_length=1)
    store_id: Optional[int] = Field(default=None, alias="storeId")


class RebuildCartsResponse(BaseModel):
    success: bool = True
    items: List[CartItemOut]


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipment_id: int = Field(alias="shipmentId")
    reason: Optional[str] = None


class StoresForCustomerResponse(BaseModel):
    slugs: List[str]
