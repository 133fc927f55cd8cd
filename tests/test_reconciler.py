import json
import threading
from datetime import timedelta

import httpx
import pytest

from shopline_payments import order_meta
from shopline_payments.config import GatewayCredentials
from shopline_payments.errors import ErrorKind
from shopline_payments.models import Order, utcnow
from shopline_payments.reconciler import MISSING_REFERENCE_NOTE, StatusReconciler
from shopline_payments.shopline_client import ShoplineClient


class FakeShopline:
    """Routes provider endpoints to canned JSON responses and records calls."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.replace("/api/v1", "", 1)
        payload = json.loads(request.content)
        self.calls.append((endpoint, payload))
        handler = self.routes.get(endpoint)
        if handler is None:
            return httpx.Response(404, json={"code": "404", "msg": "not found"})
        return handler(payload) if callable(handler) else httpx.Response(200, json=handler)


@pytest.fixture
def fake():
    return FakeShopline()


@pytest.fixture
def reconciler(settings, fake):
    credentials = GatewayCredentials(merchant_id="merchant-1", api_key="api-key", sign_key="sign-key")

    def client_factory(order):
        return ShoplineClient(credentials, timeout=5, transport=httpx.MockTransport(fake))

    return StatusReconciler(settings, client_factory)


def notes_of(order):
    return [note.content for note in order.notes]


def test_session_without_trade_order_only_adds_note(db, make_order, reconciler, fake):
    order = make_order(10, meta={order_meta.SESSION_ID: "S1"})
    fake.routes["/trade/sessions/query"] = {"sessionId": "S1", "status": "PENDING"}

    result = reconciler.sync_order(db, order)

    assert not result.synced
    assert result.status == "PENDING"
    db.expire_all()
    order = db.get(Order, 10)
    assert order.status == "pending"
    assert any("PENDING" in note for note in notes_of(order))
    assert fake.calls == [("/trade/sessions/query", {"sessionId": "S1"})]


def test_missing_reference_never_contacts_provider(db, make_order, settings, mocker):
    client_factory = mocker.Mock()
    reconciler = StatusReconciler(settings, client_factory)
    order = make_order(11)

    result = reconciler.sync_order(db, order)

    assert not result.synced
    assert result.message == MISSING_REFERENCE_NOTE
    client_factory.assert_not_called()
    assert notes_of(db.get(Order, 11)) == [MISSING_REFERENCE_NOTE]


def test_trade_order_sync_marks_paid(db, make_order, reconciler, fake):
    order = make_order(12, meta={order_meta.TRADE_ORDER_ID: "T12"})
    fake.routes["/trade/payment/get"] = {"tradeOrderId": "T12", "status": "SUCCEEDED", "paymentMethod": "CreditCard"}

    result = reconciler.sync_order(db, order)

    assert result.synced
    assert result.status == "SUCCEEDED"
    db.expire_all()
    order = db.get(Order, 12)
    assert order.status == "processing"
    assert order.transaction_id == "T12"
    assert "Synced Shopline payment status: SUCCEEDED (Credit card)." in notes_of(order)


def test_session_with_trade_order_is_followed(db, make_order, reconciler, fake):
    order = make_order(13, meta={order_meta.SESSION_ID: "S13"})
    fake.routes["/trade/sessions/query"] = {
        "sessionId": "S13",
        "status": "SUCCEEDED",
        "paymentDetails": [{"tradeOrderId": "T13"}],
    }
    fake.routes["/trade/payment/get"] = {"tradeOrderId": "T13", "status": "FAILED"}

    result = reconciler.sync_order(db, order)

    assert result.synced
    db.expire_all()
    order = db.get(Order, 13)
    assert order.get_meta(order_meta.TRADE_ORDER_ID) == "T13"
    assert order.status == "failed"


def test_paid_order_is_not_regressed_by_poll(db, make_order, reconciler, fake):
    order = make_order(14, status="processing", date_paid=utcnow(), meta={order_meta.TRADE_ORDER_ID: "T14"})
    fake.routes["/trade/payment/get"] = {"tradeOrderId": "T14", "status": "PENDING"}

    reconciler.sync_order(db, order)

    db.expire_all()
    assert db.get(Order, 14).status == "processing"


def test_provider_error_becomes_failed_result_and_note(db, make_order, reconciler, fake):
    order = make_order(15, meta={order_meta.TRADE_ORDER_ID: "T15"})
    fake.routes["/trade/payment/get"] = lambda payload: httpx.Response(500, json={"msg": "upstream down"})

    result = reconciler.sync_order(db, order)

    assert not result.synced
    assert result.kind == ErrorKind.TRANSPORT
    db.expire_all()
    order = db.get(Order, 15)
    assert order.status == "pending"
    assert notes_of(order)[-1] == "Shopline status sync failed: upstream down"


def test_missing_credentials_is_transport_failure(db, make_order, settings):
    reconciler = StatusReconciler(settings, lambda order: ShoplineClient(GatewayCredentials()))
    order = make_order(16, meta={order_meta.TRADE_ORDER_ID: "T16"})

    result = reconciler.sync_order(db, order)

    assert result.kind == ErrorKind.TRANSPORT


def test_pending_orders_selection(db, make_order, reconciler):
    make_order(20)
    make_order(21, status="on-hold", payment_method="shopline_linepay")
    make_order(22, status="processing")
    make_order(23, payment_method="cod")
    make_order(24, created_at=utcnow() - timedelta(hours=25))
    make_order(25, payment_method="shoplinex")

    ids = [order.id for order in reconciler.pending_orders(db)]

    assert ids == [20, 21]


def test_batch_continues_after_failure(db, make_order, reconciler, fake):
    make_order(30, meta={order_meta.TRADE_ORDER_ID: "T30"})
    make_order(31)
    make_order(32, meta={order_meta.TRADE_ORDER_ID: "T32"})

    def payment(payload):
        if payload["tradeOrderId"] == "T30":
            raise httpx.ConnectError("connection refused")
        return httpx.Response(200, json={"tradeOrderId": payload["tradeOrderId"], "status": "SUCCEEDED"})

    fake.routes["/trade/payment/get"] = payment

    batch = reconciler.sync_pending_orders(db)

    assert batch.checked == 3
    assert batch.failed == 1
    db.expire_all()
    assert db.get(Order, 30).status == "pending"
    assert db.get(Order, 32).status == "processing"


def test_batch_stops_between_orders(db, make_order, reconciler, fake):
    make_order(40, meta={order_meta.TRADE_ORDER_ID: "T40"})
    make_order(41, meta={order_meta.TRADE_ORDER_ID: "T41"})
    stop_event = threading.Event()

    def payment(payload):
        stop_event.set()
        return httpx.Response(200, json={"tradeOrderId": payload["tradeOrderId"], "status": "PENDING"})

    fake.routes["/trade/payment/get"] = payment

    batch = reconciler.sync_pending_orders(db, stop_event=stop_event)

    assert batch.interrupted
    assert batch.checked == 1


def test_cancel_payment_requests_provider_cancel(db, make_order, reconciler, fake):
    order = make_order(50, status="cancelled", meta={order_meta.TRADE_ORDER_ID: "T50"})
    fake.routes["/trade/payment/cancel"] = {"tradeOrderId": "T50", "status": "CANCELLED"}

    assert reconciler.cancel_payment(db, order, "pending") is True
    assert fake.calls == [("/trade/payment/cancel", {"tradeOrderId": "T50"})]
    db.expire_all()
    order = db.get(Order, 50)
    assert order.get_meta(order_meta.PAYMENT_STATUS) == "CANCELLED"

    assert reconciler.cancel_payment(db, order, "processing") is False


def test_cancel_payment_failure_is_swallowed(db, make_order, reconciler, fake):
    order = make_order(51, status="cancelled", meta={order_meta.TRADE_ORDER_ID: "T51"})

    assert reconciler.cancel_payment(db, order, "on-hold") is False
