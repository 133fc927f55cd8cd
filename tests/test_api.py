import threading

from jose import jwt

from shopline_payments import order_meta
from shopline_payments.auth import verify_token
from shopline_payments.errors import SyncResult, TransportError
from shopline_payments.main import app as fastapi_app
from shopline_payments.models import CustomerAccount, Order
from shopline_payments.routes import get_customer_manager, get_reconciler
from shopline_payments.scheduler import ReconciliationScheduler
from shopline_payments.worker import make_sync_job


def test_admin_routes_require_a_valid_token(client, make_order, settings):
    make_order(1)
    fastapi_app.dependency_overrides.pop(verify_token)

    missing = client.get("/orders/1/payment")
    bad = client.get("/orders/1/payment", headers={"Authorization": "Bearer not-a-jwt"})
    token = jwt.encode({"sub": "admin"}, settings.jwt_secret, algorithm="HS256")
    good = client.get("/orders/1/payment", headers={"Authorization": f"Bearer {token}"})

    assert missing.status_code == 422
    assert bad.status_code == 401
    assert bad.json() == {"detail": "Invalid or missing token"}
    assert good.status_code == 200


def test_order_payment_projection(client, make_order):
    make_order(2, meta={order_meta.TRADE_ORDER_ID: "T2", order_meta.PAYMENT_DETAIL: {"tradeOrderId": "T2"}})

    response = client.get("/orders/2/payment")

    assert response.status_code == 200
    data = response.json()
    assert data["trade_order_id"] == "T2"
    assert data["payment_detail"] == {"tradeOrderId": "T2"}
    assert data["paid"] is False

    assert client.get("/orders/404/payment").status_code == 404


def test_sync_order_route(client, make_order, mocker):
    make_order(3, meta={order_meta.TRADE_ORDER_ID: "T3"})
    reconciler = mocker.Mock()
    reconciler.sync_order.return_value = SyncResult(order_id=3, synced=True, message="pending -> processing",
                                                    status="SUCCEEDED")
    fastapi_app.dependency_overrides[get_reconciler] = lambda: reconciler

    response = client.post("/orders/3/sync")

    assert response.status_code == 200
    assert response.json()["synced"] is True
    assert reconciler.sync_order.call_args.args[1].id == 3
    assert client.post("/orders/999/sync").status_code == 404


def test_sync_pending_route_uses_reconciler(client, make_order, mocker):
    make_order(4)
    make_order(5)
    reconciler = mocker.Mock()
    reconciler.sync_pending_orders.return_value.checked = 2
    reconciler.sync_pending_orders.return_value.failed = 0
    reconciler.sync_pending_orders.return_value.results = [SyncResult(order_id=4, synced=False)]
    fastapi_app.dependency_overrides[get_reconciler] = lambda: reconciler

    response = client.post("/orders/sync-pending")

    assert response.status_code == 200
    assert response.json()["checked"] == 2
    assert response.json()["results"][0]["order_id"] == 4


def test_cancel_order_route(client, make_order, session_factory, mocker):
    make_order(6, status="on-hold", meta={order_meta.TRADE_ORDER_ID: "T6"})
    make_order(7, status="processing")
    reconciler = mocker.Mock()
    reconciler.cancel_payment.return_value = True
    fastapi_app.dependency_overrides[get_reconciler] = lambda: reconciler

    response = client.post("/orders/6/cancel")

    assert response.status_code == 200
    assert response.json() == {"order_id": 6, "status": "cancelled", "provider_cancelled": True}
    assert reconciler.cancel_payment.call_args.args[2] == "on-hold"
    db = session_factory()
    assert db.get(Order, 6).status == "cancelled"
    db.close()

    assert client.post("/orders/7/cancel").status_code == 409


def test_customer_instrument_routes(client, db, mocker):
    db.add(CustomerAccount(user_id=20, shopline_customer_id="C20"))
    db.commit()
    manager = mocker.Mock()
    manager.get_instrument_models.return_value = []
    manager.unbind_payment_instrument.side_effect = [True, False]
    manager.get_or_create_customer_id.return_value = "C20"
    fastapi_app.dependency_overrides[get_customer_manager] = lambda: manager

    assert client.get("/customers/20/instruments").json() == {"instruments": []}
    assert client.get("/customers/21/instruments").status_code == 404
    assert client.delete("/customers/20/instruments/PI1").json() == {"status": "unbound"}
    assert client.delete("/customers/20/instruments/PI1").status_code == 502
    assert client.post("/customers/20/shopline-customer").json() == {"user_id": 20, "customer_id": "C20"}


def test_scheduler_runs_job_and_survives_failures(mocker):
    job = mocker.Mock(side_effect=[TransportError("down"), "ok"])
    scheduler = ReconciliationScheduler(job, interval=60)

    assert scheduler.run_once() is None
    assert scheduler.run_once() == "ok"
    job.assert_called_with(scheduler.stop_event)


def test_scheduler_run_forever_stops_on_event(mocker):
    scheduler = ReconciliationScheduler(mocker.Mock(), interval=60)
    scheduler.job.side_effect = lambda stop_event: stop_event.set()

    scheduler.run_forever()

    assert scheduler.job.call_count == 1


def test_worker_sync_job_closes_session(mocker):
    session = mocker.Mock()
    reconciler = mocker.Mock()
    stop_event = threading.Event()

    make_sync_job(reconciler, session_factory=lambda: session)(stop_event)

    reconciler.sync_pending_orders.assert_called_once_with(session, stop_event=stop_event)
    session.close.assert_called_once()
