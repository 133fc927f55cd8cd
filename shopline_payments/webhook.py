"""Inbound Shopline webhook processing.

A delivery goes received -> parsed -> order-resolved -> signature-verified ->
event-dispatched -> done and stops at the first failing stage. Nothing is
retried here; a 400 makes the provider redeliver.

The order is resolved before verification because the signature is checked
with the resolved order's gateway credentials. Saved-instrument events carry
no order: they are verified with the customer gateway's credentials and
applied to the account owning the Shopline customer id.
"""
import json
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from shopline_payments import customers, order_meta, state_mapper
from shopline_payments.config import CUSTOMER_GATEWAY_ID, Settings
from shopline_payments.dtos import (
    CUSTOMER_FIELDS,
    INSTRUMENT_FIELDS,
    Amount,
    Payment,
    Refund,
    normalize_status,
    resolve_field,
)
from shopline_payments.errors import (
    HandlerError,
    OrderResolutionError,
    ParseError,
    ShoplineError,
    VerificationError,
    WebhookResult,
)
from shopline_payments.logging_config import get_logger
from shopline_payments.models import CustomerAccount, Order
from shopline_payments.signature import SignatureVerifier, WebhookSignature

# Provider event names, current and legacy, to the handler that owns them.
EVENT_HANDLERS = {
    "payment.success": "payment_success",
    "trade.succeeded": "payment_success",
    "payment.failed": "payment_failed",
    "trade.failed": "payment_failed",
    "payment.cancelled": "payment_cancelled",
    "trade.cancelled": "payment_cancelled",
    "manual.trade.cancel.succeeded": "payment_cancelled",
    "trade.expired": "trade_expired",
    "trade.processing": "trade_processing",
    "trade.authorized": "trade_authorized",
    "trade.captured": "trade_captured",
    "manual.trade.capture.succeeded": "trade_captured",
    "trade.customer_action": "customer_action",
    "refund.success": "refund_succeeded",
    "refund.succeeded": "refund_succeeded",
    "trade.refund.succeeded": "refund_succeeded",
    "refund.failed": "refund_failed",
    "trade.refund.failed": "refund_failed",
}

# Customer-scoped events; every one of them invalidates the instrument cache.
CUSTOMER_EVENTS = {
    "customer.instrument.binded": "Payment instrument bound",
    "paymentInstrument.created": "Payment instrument bound",
    "customer.instrument.updated": "Payment instrument updated",
    "customer.instrument.unbinded": "Payment instrument unbound",
    "paymentInstrument.deleted": "Payment instrument unbound",
}

OPEN_STATUSES = ("pending", "on-hold")

# orders.id is a 32-bit INTEGER column.
MAX_ORDER_ID = 2 ** 31 - 1

GENERIC_HANDLER_ERROR = "Webhook handling failed"


def parse_merchant_trade_no(merchant_trade_no: Optional[str]) -> Optional[int]:
    """``{order_id}_{timestamp}`` -> order id."""
    if not merchant_trade_no or not isinstance(merchant_trade_no, str):
        return None
    head = merchant_trade_no.split("_", 1)[0]
    if not head.isascii() or not head.isdigit():
        return None
    order_id = int(head)
    return order_id if 0 < order_id <= MAX_ORDER_ID else None


class WebhookProcessor:
    def __init__(self, settings: Settings, verifier: Optional[SignatureVerifier] = None, logger=None):
        self.settings = settings
        self.logger = logger or get_logger(__name__)
        self.verifier = verifier or SignatureVerifier(
            tolerance_ms=settings.timestamp_tolerance_ms,
            expected_api_version=settings.expected_api_version,
            logger=self.logger,
        )

    def process_webhook(
        self, db: DBSession, body: Union[bytes, str], signature: Optional[WebhookSignature]
    ) -> WebhookResult:
        raw_body = body if isinstance(body, bytes) else body.encode("utf-8")
        log = self.logger.bind(body_length=len(raw_body))
        log.info("Webhook received", has_signature=signature is not None)

        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            log.error("Webhook JSON decode failed", error=str(exc))
            return WebhookResult.failure(ParseError("Invalid JSON"))
        if not isinstance(data, dict):
            log.error("Webhook body is not a JSON object")
            return WebhookResult.failure(ParseError("Invalid JSON"))

        event_type = data.get("eventType") or data.get("type") or ""
        event_data = data["data"] if isinstance(data.get("data"), dict) else data
        log = log.bind(event_type=event_type)

        if event_type in CUSTOMER_EVENTS:
            return self.process_customer_event(db, raw_body, signature, event_type, event_data, log)

        try:
            order = self.resolve_order(db, event_data)
        except OrderResolutionError as exc:
            log.error("Webhook order not found", merchant_trade_no=event_data.get("merchantTradeNo"),
                      trade_order_id=event_data.get("tradeOrderId"))
            return WebhookResult.failure(exc, event_type=event_type)

        order_id = order.id
        log = log.bind(order_id=order_id)

        try:
            self.verify(raw_body, signature, order.payment_method, log)
        except VerificationError as exc:
            db.rollback()
            return WebhookResult.failure(exc, order_id=order_id, event_type=event_type)

        try:
            self.handle_event(order, event_type, event_data, log)
            db.commit()
        except Exception as exc:
            db.rollback()
            error = exc if isinstance(exc, ShoplineError) else HandlerError(str(exc) or exc.__class__.__name__)
            log.exception("Webhook handling failed", error=error.message)
            self._record_failure(db, order_id, event_type, error.message, log)
            return WebhookResult.failure(self.public_error(error), order_id=order_id, event_type=event_type)

        log.info("Webhook processed")
        return WebhookResult.ok(order_id=order_id, event_type=event_type)

    def process_customer_event(
        self,
        db: DBSession,
        raw_body: bytes,
        signature: Optional[WebhookSignature],
        event_type: str,
        data: dict,
        log,
    ) -> WebhookResult:
        customer_id, _ = resolve_field(data, CUSTOMER_FIELDS["customer_id"], skip_empty=True)
        instrument = data.get("paymentInstrument") if isinstance(data.get("paymentInstrument"), dict) else {}
        instrument_id, _ = resolve_field(instrument, INSTRUMENT_FIELDS["instrument_id"])
        log = log.bind(customer_id=customer_id, instrument_id=instrument_id)

        try:
            self.verify(raw_body, signature, CUSTOMER_GATEWAY_ID, log)
        except VerificationError as exc:
            return WebhookResult.failure(exc, event_type=event_type)

        try:
            account = customers.get_account_by_customer_id(db, customer_id, lock=True)
            if account is None:
                # Unknown customers are acknowledged, a redelivery would not find them either.
                log.warning("Webhook customer not found, ignoring")
                return WebhookResult.ok(event_type=event_type)
            self.handle_customer_event(account, event_type, log)
            db.commit()
        except Exception as exc:
            db.rollback()
            error = exc if isinstance(exc, ShoplineError) else HandlerError(str(exc) or exc.__class__.__name__)
            log.exception("Webhook handling failed", error=error.message)
            return WebhookResult.failure(self.public_error(error), event_type=event_type)

        log.info("Webhook processed", user_id=account.user_id)
        return WebhookResult.ok(event_type=event_type)

    def verify(self, raw_body: bytes, signature: Optional[WebhookSignature], gateway_id: str, log):
        if self.settings.skip_webhook_verification():
            log.warning("Webhook signature verification skipped for local origin",
                        public_origin=self.settings.public_origin)
            return
        credentials = self.settings.credentials_for(gateway_id)
        try:
            self.verifier.verify_any(raw_body, signature, credentials.sign_key, credentials.api_key)
        except VerificationError as exc:
            log.error("Webhook signature verification failed", reason=exc.message)
            raise

    def public_error(self, error: ShoplineError) -> ShoplineError:
        """Error shown to the caller; production hides unexpected handler detail."""
        if self.settings.is_production and type(error) is HandlerError:
            return HandlerError(GENERIC_HANDLER_ERROR)
        return error

    def resolve_order(self, db: DBSession, data: dict) -> Order:
        try:
            order_id = parse_merchant_trade_no(data.get("merchantTradeNo"))
            if order_id:
                order = order_meta.get_order(db, order_id, lock=True)
                if order is not None:
                    return order

            trade_order_id = data.get("tradeOrderId")
            if trade_order_id and isinstance(trade_order_id, str):
                order = order_meta.get_order_by_trade_order_id(db, trade_order_id, lock=True)
                if order is not None:
                    return order
        except SQLAlchemyError as exc:
            db.rollback()
            self.logger.error("Webhook order lookup failed", error=str(exc))
            raise OrderResolutionError("Order not found") from exc

        raise OrderResolutionError("Order not found")

    def handle_event(self, order: Order, event_type: str, data: dict, log=None):
        log = log or self.logger.bind(order_id=order.id, event_type=event_type)
        handler_name = EVENT_HANDLERS.get(event_type)
        if handler_name is None:
            log.info("Unhandled webhook event type")
            return
        getattr(self, f"_handle_{handler_name}")(order, data, log)

    def handle_customer_event(self, account: CustomerAccount, event_type: str, log=None):
        log = log or self.logger.bind(user_id=account.user_id, event_type=event_type)
        account.clear_instruments_cache()
        log.info(CUSTOMER_EVENTS[event_type], user_id=account.user_id)

    def _record_failure(self, db: DBSession, order_id: int, event_type: str, message: str, log):
        try:
            order = db.get(Order, order_id)
            if order is None:
                return
            order.add_note(f"Shopline webhook {event_type or 'event'} failed: {message}")
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            log.exception("Unable to record webhook failure note")

    # Event handlers

    def _handle_payment_success(self, order: Order, data: dict, log):
        if order.is_paid():
            log.info("Order already paid, skipping")
            return

        payment = Payment.from_response(data)
        state_mapper.record_payment(order, payment)
        order.update_meta(order_meta.PAYMENT_STATUS, payment.normalized_status or "SUCCEEDED")
        state_mapper.mark_paid(order, payment.trade_order_id)
        order.add_note(
            f"Shopline payment succeeded. Payment method: {payment.payment_method_display()}, "
            f"trade order id: {payment.trade_order_id}."
        )

    def _handle_payment_failed(self, order: Order, data: dict, log):
        payment_msg = data.get("paymentMsg") if isinstance(data.get("paymentMsg"), dict) else {}
        error_code = data.get("errorCode") or payment_msg.get("code") or ""
        error_message = data.get("errorMessage") or payment_msg.get("msg") or "Payment failed"

        if order.is_paid():
            log.warning("Payment failure received for a paid order, ignoring", error_code=error_code)
            return

        if data.get("tradeOrderId"):
            order.update_meta(order_meta.TRADE_ORDER_ID, data["tradeOrderId"])
        order.update_meta(order_meta.ERROR_CODE, error_code)
        order.update_meta(order_meta.ERROR_MESSAGE, error_message)
        order.update_meta(order_meta.PAYMENT_STATUS, "FAILED")
        order.update_meta(order_meta.PAYMENT_DETAIL, data)
        state_mapper.apply_status(
            order, "FAILED", note=f"Shopline payment failed. Error code: {error_code}, message: {error_message}."
        )

    def _handle_payment_cancelled(self, order: Order, data: dict, log):
        self._close_open_order(order, data, "CANCELLED", "Shopline payment cancelled.", log)

    def _handle_trade_expired(self, order: Order, data: dict, log):
        self._close_open_order(order, data, "EXPIRED", "Shopline payment expired.", log)

    def _close_open_order(self, order: Order, data: dict, provider_status: str, note: str, log):
        if order.status not in OPEN_STATUSES:
            log.info("Order is not open, ignoring", status=order.status)
            return
        order.update_meta(order_meta.PAYMENT_STATUS, provider_status)
        order.update_meta(order_meta.PAYMENT_DETAIL, data)
        state_mapper.apply_status(order, provider_status, note=note)

    def _handle_trade_processing(self, order: Order, data: dict, log):
        if order.status != "pending":
            log.info("Order is not pending, ignoring", status=order.status)
            return
        order.update_meta(order_meta.PAYMENT_STATUS, "PROCESSING")
        order.update_meta(order_meta.PAYMENT_DETAIL, data)
        order.update_status("on-hold", "Shopline payment processing.")

    def _handle_trade_authorized(self, order: Order, data: dict, log):
        order.update_meta(order_meta.PAYMENT_STATUS, "AUTHORIZED")
        order.update_meta(order_meta.PAYMENT_DETAIL, data)
        order.add_note("Shopline payment authorized, awaiting capture.")

    def _handle_trade_captured(self, order: Order, data: dict, log):
        trade_order_id = data.get("tradeOrderId") or order.get_meta(order_meta.TRADE_ORDER_ID, "")
        state_mapper.mark_paid(order, trade_order_id)
        order.update_meta(order_meta.PAYMENT_STATUS, "CAPTURED")
        order.update_meta(order_meta.PAYMENT_DETAIL, data)
        order.add_note("Shopline payment captured.")

    def _handle_customer_action(self, order: Order, data: dict, log):
        log.info("Waiting for customer payment action", status=normalize_status(data.get("status")))

    def _handle_refund_succeeded(self, order: Order, data: dict, log):
        refund = Refund.from_response(data)
        amount = Amount.from_response(refund.amount)
        amount_text = amount.display() if amount else str(data.get("refundAmount") or "")
        order.update_meta(order_meta.REFUND_DETAIL, refund.to_dict())
        order.add_note(f"Shopline refund succeeded. Refund id: {refund.refund_order_id}, amount: {amount_text}.")

    def _handle_refund_failed(self, order: Order, data: dict, log):
        refund = Refund.from_response(data)
        error_code = data.get("errorCode") or (refund.refund_msg or {}).get("code") or ""
        error_message = data.get("errorMessage") or refund.error_message() or "Refund failed"
        order.update_meta(order_meta.REFUND_DETAIL, refund.to_dict())
        order.add_note(f"Shopline refund failed. Error code: {error_code}, message: {error_message}.")
        log.error("Shopline refund failed", error_code=error_code, error=error_message)
