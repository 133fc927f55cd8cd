"""Order attribute keys and lookups.

Key names are persisted and must stay stable across versions.
"""
import json
from typing import Optional

from sqlalchemy.orm import Session

from shopline_payments.models import Order, OrderMeta

TRADE_ORDER_ID = "_shopline_trade_order_id"
SESSION_ID = "_shopline_session_id"
PAYMENT_METHOD = "_shopline_payment_method"
PAYMENT_STATUS = "_shopline_payment_status"
PAYMENT_DETAIL = "_shopline_payment_detail"
REFUND_DETAIL = "_shopline_refund_detail"
NEXT_ACTION = "_shopline_next_action"
CUSTOMER_ID = "_shopline_customer_id"
PAYMENT_INSTRUMENT_ID = "_shopline_payment_instrument_id"
CARD_LAST4 = "_shopline_card_last4"
CARD_BRAND = "_shopline_card_brand"
ERROR_CODE = "_shopline_error_code"
ERROR_MESSAGE = "_shopline_error_message"


def get_order(db: Session, order_id: int, lock: bool = False) -> Optional[Order]:
    query = db.query(Order).filter(Order.id == order_id)
    if lock:
        # Ignored by SQLite, row lock elsewhere.
        query = query.with_for_update()
    return query.first()


def get_order_by_trade_order_id(db: Session, trade_order_id: str, lock: bool = False) -> Optional[Order]:
    if not trade_order_id:
        return None
    query = (
        db.query(Order)
        .join(OrderMeta, OrderMeta.order_id == Order.id)
        .filter(OrderMeta.meta_key == TRADE_ORDER_ID)
        .filter(OrderMeta.meta_value == json.dumps(trade_order_id, ensure_ascii=False))
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def get_payment_detail(order: Order) -> dict:
    detail = order.get_meta(PAYMENT_DETAIL)
    return detail if isinstance(detail, dict) else {}
