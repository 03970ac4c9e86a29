from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower().replace("-", "_")


# Queue vocabulary. Mirrors the CHECK constraint on `sync_queue` in `db.py`.
OPERATION_TYPES = ("CREATE", "UPDATE", "DEACTIVATE", "ACTIVATE", "DELETE")
QUEUE_STATUSES = ("pending", "processed", "failed")

# Which side wins when a failed queue entry is settled by hand.
ConflictSide = Annotated[Literal["remote", "local"], BeforeValidator(_to_lower_str)]

OrderType = Annotated[Literal["delivery", "dine_in"], BeforeValidator(_to_lower_str)]
DeliveryStatus = Annotated[Literal["pending", "in_progress", "delivered", "cancelled"], BeforeValidator(_to_lower_str)]
PaymentStatus = Annotated[Literal["unpaid", "partially_paid", "paid"], BeforeValidator(_to_lower_str)]
OrderStatus = Annotated[Literal["open", "completed", "cancelled"], BeforeValidator(_to_lower_str)]
PromotionKind = Annotated[Literal["percentage", "amount"], BeforeValidator(_to_lower_str)]
PromoCode = Annotated[Optional[str], BeforeValidator(_to_upper_str)]


# Phone numbers are typed on a till keypad; keep digits, spaces and a leading +.
Contact = Annotated[
    str,
    BeforeValidator(lambda v: "" if v is None else str(v).strip()),
    StringConstraints(max_length=32, pattern=r"^$|^\+?[0-9][0-9 ]*$"),
]
