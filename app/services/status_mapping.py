"""
Provider status vocabularies -> canonical OrderStatus / PaymentStatus.
Every mapper is total: unknown, empty or non-string input falls back to a default. Never raises.
"""
from typing import Optional

from app.models import OrderStatus, PaymentStatus, TERMINAL_STATUSES

__all__ = [
    "CARRIER_TO_CANONICAL",
    "FULFILLMENT_TO_CANONICAL",
    "TERMINAL_STATUSES",
    "is_terminal",
    "map_carrier_status",
    "map_source_fulfillment_status",
    "map_source_payment_status",
]

# Shopify fulfillment_status; null means unfulfilled
FULFILLMENT_TO_CANONICAL = {
    "fulfilled": OrderStatus.DELIVERED,
    "partial": OrderStatus.SHIPPED,
    "unfulfilled": OrderStatus.PENDING,
    "restocked": OrderStatus.PENDING,
}

# Shopify financial_status
FINANCIAL_TO_PAYMENT = {
    "paid": PaymentStatus.PAID,
    "partially_paid": PaymentStatus.UNPAID,
    "pending": PaymentStatus.UNPAID,
    "authorized": PaymentStatus.UNPAID,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.PAID,
    "voided": PaymentStatus.UNPAID,
}

# Carrier status_livrison / status values (English plus the French/Italian labels some accounts return)
CARRIER_TO_CANONICAL = {
    "new order": OrderStatus.PENDING,
    "pending": OrderStatus.PENDING,
    "incident": OrderStatus.PENDING,
    "confirmed": OrderStatus.CONFIRMED,
    "processing": OrderStatus.CONFIRMED,
    "packed": OrderStatus.CONFIRMED,
    "in_warehouse": OrderStatus.CONFIRMED,
    "redeployment": OrderStatus.CONFIRMED,
    "confermato": OrderStatus.CONFIRMED,
    "shipped": OrderStatus.SHIPPED,
    "sent": OrderStatus.SHIPPED,
    "in transit": OrderStatus.SHIPPED,
    "in_transit": OrderStatus.SHIPPED,
    "in delivery": OrderStatus.SHIPPED,
    "out_for_delivery": OrderStatus.SHIPPED,
    "out for delivery": OrderStatus.SHIPPED,
    "unpacked": OrderStatus.SHIPPED,
    "expédié": OrderStatus.SHIPPED,
    "spedito": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
    "livré": OrderStatus.DELIVERED,
    "livre": OrderStatus.DELIVERED,
    "consegnato": OrderStatus.DELIVERED,
    "returned": OrderStatus.RETURNED,
    "return": OrderStatus.RETURNED,
    "refused": OrderStatus.RETURNED,
    "retourné": OrderStatus.RETURNED,
    "reso": OrderStatus.RETURNED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.CANCELLED,
    "duplicated": OrderStatus.CANCELLED,
    "annulé": OrderStatus.CANCELLED,
    "annullato": OrderStatus.CANCELLED,
}


def _key(raw: Optional[str]) -> Optional[str]:
    if not raw or not isinstance(raw, str):
        return None
    return " ".join(raw.strip().lower().split())


def map_carrier_status(raw_status: Optional[str]) -> OrderStatus:
    """Map a carrier lead status to OrderStatus. Unknown -> PENDING (fail-open)."""
    key = _key(raw_status)
    if key is None:
        return OrderStatus.PENDING
    return (
        CARRIER_TO_CANONICAL.get(key)
        or CARRIER_TO_CANONICAL.get(key.replace("_", " "))
        or OrderStatus.PENDING
    )


def map_source_fulfillment_status(raw_status: Optional[str]) -> OrderStatus:
    key = _key(raw_status)
    if key is None:
        return OrderStatus.PENDING
    return FULFILLMENT_TO_CANONICAL.get(key, OrderStatus.PENDING)


def map_source_payment_status(raw_status: Optional[str]) -> PaymentStatus:
    key = _key(raw_status)
    if key is None:
        return PaymentStatus.UNPAID
    return FINANCIAL_TO_PAYMENT.get(key, PaymentStatus.UNPAID)


def is_terminal(status) -> bool:
    if status is None:
        return False
    try:
        return OrderStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return False
