"""Provider payment status -> local order status.

Shared by the webhook and polling paths. Only two kinds of transition are
acted on: the first successful payment (mark paid) and failure/cancellation
of an unpaid order. Every other mapped status is recorded as metadata.
"""
from dataclasses import dataclass
from typing import Optional

from shopline_payments import order_meta
from shopline_payments.dtos import Payment, normalize_status
from shopline_payments.models import Order

STATUS_MAP = {
    "CREATED": "pending",
    "CUSTOMER_ACTION": "pending",
    "PENDING": "pending",
    "PROCESSING": "on-hold",
    "AUTHORIZED": "on-hold",
    "SUCCEEDED": "processing",
    "CAPTURED": "processing",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
    "EXPIRED": "cancelled",
    "REFUNDED": "refunded",
    # No distinct partially-refunded local status.
    "PARTIALLY_REFUND": "processing",
}


@dataclass
class Transition:
    provider_status: str
    target: Optional[str]
    previous: str
    current: str
    marked_paid: bool = False

    @property
    def changed(self) -> bool:
        return self.marked_paid or self.previous != self.current


def target_status(provider_status: str) -> Optional[str]:
    return STATUS_MAP.get(normalize_status(provider_status))


def mark_paid(order: Order, trade_order_id: str = "") -> bool:
    """Mark an unpaid order paid with the provider trade id as reference."""
    if order.is_paid():
        return False
    order.payment_complete(trade_order_id)
    return True


def apply_status(order: Order, provider_status: str, trade_order_id: str = "", note: str = "") -> Transition:
    status = normalize_status(provider_status)
    target = STATUS_MAP.get(status)
    previous = order.status
    transition = Transition(provider_status=status, target=target, previous=previous, current=previous)

    if target is None or target == order.status:
        return transition

    if target == "processing":
        transition.marked_paid = mark_paid(order, trade_order_id)
    elif target in ("failed", "cancelled"):
        # A paid order never regresses to failed/cancelled.
        if not order.is_paid():
            order.update_status(target, note)

    transition.current = order.status
    return transition


def record_payment(order: Order, payment: Payment):
    """Store the payment projection on the order (metadata only)."""
    if payment.payment_method:
        order.update_meta(order_meta.PAYMENT_METHOD, payment.payment_method)
    order.update_meta(order_meta.TRADE_ORDER_ID, payment.trade_order_id)
    order.update_meta(order_meta.PAYMENT_STATUS, payment.normalized_status)
    order.update_meta(order_meta.PAYMENT_DETAIL, payment.to_dict())

    card = payment.card()
    if card.get("last"):
        order.update_meta(order_meta.CARD_LAST4, card["last"])
    if card.get("brand"):
        order.update_meta(order_meta.CARD_BRAND, card["brand"])
    instrument_id = (payment.payment_instrument or {}).get("instrumentId")
    if instrument_id:
        order.update_meta(order_meta.PAYMENT_INSTRUMENT_ID, instrument_id)

    next_action = payment.raw_data.get("nextAction")
    if isinstance(next_action, dict):
        order.update_meta(order_meta.NEXT_ACTION, next_action)


def apply_payment(order: Order, payment: Payment, note: str = "") -> Transition:
    record_payment(order, payment)
    return apply_status(order, payment.normalized_status, payment.trade_order_id, note)
