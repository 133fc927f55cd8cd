"""Pull-side reconciliation of order status against Shopline.

Applies the same state mapper as the webhook path, so both converge on the
same local status whichever arrives first.
"""
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from shopline_payments import order_meta, state_mapper
from shopline_payments.config import SHOPLINE_GATEWAY_IDS, Settings, is_shopline_gateway
from shopline_payments.dtos import normalize_status
from shopline_payments.errors import BatchSyncResult, HandlerError, ShoplineError, SyncResult, TransportError
from shopline_payments.logging_config import get_logger
from shopline_payments.models import Order, utcnow
from shopline_payments.shopline_client import ShoplineClient

MISSING_REFERENCE_NOTE = "cannot sync: missing transaction reference"

ClientFactory = Callable[[Order], ShoplineClient]


class StatusReconciler:
    def __init__(self, settings: Settings, client_factory: ClientFactory, logger=None):
        self.settings = settings
        self.client_factory = client_factory
        self.logger = logger or get_logger(__name__)

    def _client_for(self, order: Order) -> ShoplineClient:
        client = self.client_factory(order)
        if not client.has_credentials():
            raise TransportError("Shopline API credentials are not configured")
        return client

    def sync_order(self, db: DBSession, order: Order) -> SyncResult:
        """Reconcile one order; failures become notes and results, never exceptions."""
        order_id = order.id
        log = self.logger.bind(order_id=order_id)
        trade_order_id = order.get_meta(order_meta.TRADE_ORDER_ID) or ""
        session_id = order.get_meta(order_meta.SESSION_ID) or ""

        if not trade_order_id and not session_id:
            order.add_note(MISSING_REFERENCE_NOTE)
            db.commit()
            log.warning("Order has no trade or session id, cannot sync")
            return SyncResult(order_id=order_id, synced=False, message=MISSING_REFERENCE_NOTE)

        try:
            client = self._client_for(order)
            if trade_order_id:
                result = self._sync_payment(order, client, trade_order_id)
            else:
                result = self._sync_session(order, client, session_id)
            db.commit()
        except Exception as exc:
            db.rollback()
            error = exc if isinstance(exc, ShoplineError) else HandlerError(str(exc) or exc.__class__.__name__)
            log.error("Shopline status sync failed", error=error.message, kind=error.kind.value)
            self._record_failure(db, order_id, error.message)
            return SyncResult(order_id=order_id, synced=False, message=error.message, kind=error.kind)

        log.info("Shopline status sync completed", status=result.status, synced=result.synced)
        return result

    def _sync_payment(self, order: Order, client: ShoplineClient, trade_order_id: str) -> SyncResult:
        payment = client.query_payment(trade_order_id)
        transition = state_mapper.apply_payment(order, payment)
        order.add_note(
            f"Synced Shopline payment status: {payment.normalized_status} ({payment.payment_method_display()})."
        )
        return SyncResult(
            order_id=order.id,
            synced=True,
            message=f"{transition.previous} -> {transition.current}",
            status=payment.normalized_status,
        )

    def _sync_session(self, order: Order, client: ShoplineClient, session_id: str) -> SyncResult:
        session = client.query_session(session_id)
        if session.trade_order_id:
            order.update_meta(order_meta.TRADE_ORDER_ID, session.trade_order_id)
            return self._sync_payment(order, client, session.trade_order_id)

        status = normalize_status(session.status) or "UNKNOWN"
        order.add_note(f"Session status is {status}; no trade order is available yet.")
        return SyncResult(order_id=order.id, synced=False, message="no trade order yet", status=status)

    def _record_failure(self, db: DBSession, order_id: int, message: str):
        try:
            order = db.get(Order, order_id)
            if order is None:
                return
            order.add_note(f"Shopline status sync failed: {message}")
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            self.logger.exception("Unable to record sync failure note", order_id=order_id)

    def pending_orders(self, db: DBSession, now: Optional[datetime] = None):
        now = now or utcnow()
        since = now - timedelta(hours=self.settings.sync_window_hours)
        orders = (
            db.query(Order)
            .filter(Order.status.in_(("pending", "on-hold")))
            .filter(Order.created_at > since)
            .filter(Order.payment_method.in_(SHOPLINE_GATEWAY_IDS) | Order.payment_method.like("shopline\\_%", escape="\\"))
            .order_by(Order.created_at.asc())
            .limit(self.settings.sync_batch_size)
            .all()
        )
        return orders

    def sync_pending_orders(
        self, db: DBSession, now: Optional[datetime] = None, stop_event: Optional[threading.Event] = None
    ) -> BatchSyncResult:
        """Batch job: recent pending/on-hold Shopline orders, one transaction each."""
        batch = BatchSyncResult()
        order_ids = [order.id for order in self.pending_orders(db, now)]
        self.logger.info("Scheduled Shopline sync started", orders=len(order_ids))

        for order_id in order_ids:
            if stop_event is not None and stop_event.is_set():
                batch.interrupted = True
                self.logger.info("Scheduled Shopline sync interrupted", remaining=len(order_ids) - batch.checked)
                break
            try:
                order = order_meta.get_order(db, order_id, lock=True)
                if order is None:
                    continue
                batch.results.append(self.sync_order(db, order))
            except Exception as exc:
                db.rollback()
                self.logger.exception("Scheduled Shopline sync failed", order_id=order_id, error=str(exc))
                batch.results.append(
                    SyncResult(order_id=order_id, synced=False, message=str(exc), kind=HandlerError.kind)
                )

        self.logger.info("Scheduled Shopline sync finished", checked=batch.checked, failed=batch.failed)
        return batch

    def cancel_payment(self, db: DBSession, order: Order, previous_status: str) -> bool:
        """Ask Shopline to cancel the trade of an order cancelled locally from pending/on-hold."""
        if not is_shopline_gateway(order.payment_method) or previous_status not in ("pending", "on-hold"):
            return False
        trade_order_id = order.get_meta(order_meta.TRADE_ORDER_ID) or ""
        if not trade_order_id:
            return False

        order_id = order.id
        try:
            response = self._client_for(order).cancel_payment(trade_order_id)
            status = normalize_status(response.get("status")) if isinstance(response.get("status"), str) else ""
            if status:
                order.update_meta(order_meta.PAYMENT_STATUS, status)
            order.add_note("Shopline payment cancel request sent.")
            db.commit()
            return True
        except Exception as exc:
            db.rollback()
            self.logger.error(
                "Failed to cancel Shopline payment", order_id=order_id, trade_order_id=trade_order_id, error=str(exc)
            )
            return False
