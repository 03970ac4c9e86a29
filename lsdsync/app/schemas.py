from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .validation import Contact, DeliveryStatus, OrderStatus, OrderType, PaymentStatus, PromoCode, PromotionKind


def new_id() -> str:
    return str(uuid.uuid4())


def _uuid_str(v):
    if v is None or v == "":
        return new_id()
    try:
        return str(uuid.UUID(str(v)))
    except ValueError as e:
        raise ValueError("id must be a UUID") from e


class _Record(BaseModel):
    # Remote tables may carry columns this client does not model; keep them round-tripping.
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, v):
        return _uuid_str(v)


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Address(_Record):
    department: str = ""
    commune: str = ""
    district: str = ""
    neighborhood: str = ""
    label: Optional[str] = None
    location: Optional[Location] = None
    is_active: bool = True
    deactivated_at: Optional[datetime] = None


class Courier(_Record):
    name: str = Field(min_length=1, max_length=120)
    contact: Contact = ""
    is_active: bool = True
    deactivated_at: Optional[datetime] = None


class OrderLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price


class Promotion(BaseModel):
    code: PromoCode = None
    kind: PromotionKind
    value: Decimal = Field(ge=0)


class PaymentDetails(BaseModel):
    total: Decimal = Decimal("0")
    total_after_discount: Decimal = Decimal("0")
    momo: Decimal = Decimal("0")
    cash: Decimal = Decimal("0")
    other: Decimal = Decimal("0")

    @property
    def paid(self) -> Decimal:
        return self.momo + self.cash + self.other


class Order(_Record):
    order_type: OrderType = "dine_in"
    client: str = "unidentified"
    client_contact: Contact = ""
    alt_contact: Contact = ""
    delivery_place: Optional[dict[str, Any]] = None
    delivery_instructions: str = ""
    courier_id: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[time] = None
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_status: DeliveryStatus = "pending"
    payment_status: PaymentStatus = "unpaid"
    order_status: OrderStatus = "open"
    items: list[OrderLine] = []
    promotion: Optional[Promotion] = None
    payment: PaymentDetails = Field(default_factory=PaymentDetails)
    seller_id: Optional[str] = None
    point_of_sale_id: Optional[str] = None
    # Bumped by the backend on every accepted write; local edits carry the value they were based on.
    version: int = 0


def apply_promotion(total: Decimal, promotion: Optional[Promotion]) -> tuple[Decimal, Decimal]:
    """Return (total_after_discount, discount). Never goes below zero."""
    total = Decimal(str(total))
    if promotion is None or not promotion.value:
        return total, Decimal("0")
    if promotion.kind == "percentage":
        discount = total * promotion.value / Decimal("100")
    else:
        discount = promotion.value
    return max(Decimal("0"), total - discount), discount


def order_total(order: Order) -> Decimal:
    return sum((line.line_total for line in order.items), Decimal("0")) + order.delivery_fee
