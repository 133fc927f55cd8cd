from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from shopline_payments import order_meta
from shopline_payments.auth import verify_token
from shopline_payments.config import Settings, get_settings
from shopline_payments.customers import CustomerManager
from shopline_payments.database import get_db
from shopline_payments.models import CustomerAccount
from shopline_payments.reconciler import StatusReconciler
from shopline_payments.services import build_customer_manager, build_reconciler, build_webhook_processor
from shopline_payments.signature import LegacySignature, SignatureHeaders
from shopline_payments.webhook import WebhookProcessor

router = APIRouter()


def get_webhook_processor(settings: Settings = Depends(get_settings)) -> WebhookProcessor:
    return build_webhook_processor(settings)


def get_reconciler(settings: Settings = Depends(get_settings)) -> StatusReconciler:
    return build_reconciler(settings)


def get_customer_manager(settings: Settings = Depends(get_settings)) -> CustomerManager:
    return build_customer_manager(settings)


@router.post("/webhook")
async def shopline_webhook(
    request: Request,
    timestamp: Optional[str] = Header(None),
    api_version: Optional[str] = Header(None, alias="apiVersion"),
    sign: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    payload = await request.body()
    signature = SignatureHeaders(sign=sign or "", timestamp=timestamp or "", api_version=api_version or "")
    result = processor.process_webhook(db, payload, signature)
    return JSONResponse(result.to_response(), status_code=result.status_code)


@router.post("/wc-api/ys-shopline-webhook", deprecated=True)
@router.post("/wc-api/ys_shopline_webhook", deprecated=True)
async def legacy_shopline_webhook(
    request: Request,
    x_shopline_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    payload = await request.body()
    result = processor.process_webhook(db, payload, LegacySignature(signature=x_shopline_signature or ""))
    return JSONResponse(result.to_response(), status_code=result.status_code)


# Admin


@router.post("/orders/sync-pending")
def sync_pending_orders(
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
    auth=Depends(verify_token),
):
    batch = reconciler.sync_pending_orders(db)
    return {
        "checked": batch.checked,
        "failed": batch.failed,
        "results": [asdict(result) for result in batch.results],
    }


@router.post("/orders/{order_id}/sync")
def sync_order(
    order_id: int,
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
    auth=Depends(verify_token),
):
    order = order_meta.get_order(db, order_id, lock=True)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return asdict(reconciler.sync_order(db, order))


@router.get("/orders/{order_id}/payment")
def get_order_payment(order_id: int, db: Session = Depends(get_db), auth=Depends(verify_token)):
    order = order_meta.get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return {
        "order_id": order.id,
        "status": order.status,
        "paid": order.is_paid(),
        "transaction_id": order.transaction_id,
        "trade_order_id": order.get_meta(order_meta.TRADE_ORDER_ID),
        "payment_status": order.get_meta(order_meta.PAYMENT_STATUS),
        "payment_detail": order_meta.get_payment_detail(order),
        "notes": [note.content for note in order.notes],
    }


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_reconciler),
    auth=Depends(verify_token),
):
    order = order_meta.get_order(db, order_id, lock=True)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.status == "cancelled":
        return {"order_id": order_id, "status": order.status, "provider_cancelled": False}
    if order.status not in ("pending", "on-hold"):
        raise HTTPException(status_code=409, detail=f"Order cannot be cancelled from {order.status}")

    previous_status = order.status
    order.update_status("cancelled", "Cancelled by admin.")
    db.commit()

    provider_cancelled = reconciler.cancel_payment(db, order, previous_status)
    return {"order_id": order_id, "status": order.status, "provider_cancelled": provider_cancelled}


@router.get("/customers/{user_id}/instruments")
def list_payment_instruments(
    user_id: int,
    force_fresh: bool = False,
    db: Session = Depends(get_db),
    customers: CustomerManager = Depends(get_customer_manager),
    auth=Depends(verify_token),
):
    if db.get(CustomerAccount, user_id) is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    instruments = customers.get_instrument_models(db, user_id, force_fresh=force_fresh)
    return {
        "instruments": [
            {**instrument.to_dict(), "displayName": instrument.display_name(), "cardExpiry": instrument.card_expiry()}
            for instrument in instruments
        ]
    }


@router.delete("/customers/{user_id}/instruments/{instrument_id}")
def unbind_payment_instrument(
    user_id: int,
    instrument_id: str,
    db: Session = Depends(get_db),
    customers: CustomerManager = Depends(get_customer_manager),
    auth=Depends(verify_token),
):
    if db.get(CustomerAccount, user_id) is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    if not customers.unbind_payment_instrument(db, user_id, instrument_id):
        raise HTTPException(status_code=502, detail="Unable to unbind payment instrument")
    return {"status": "unbound"}


@router.post("/customers/{user_id}/shopline-customer")
def ensure_shopline_customer(
    user_id: int,
    db: Session = Depends(get_db),
    customers: CustomerManager = Depends(get_customer_manager),
    auth=Depends(verify_token),
):
    if db.get(CustomerAccount, user_id) is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    customer_id = customers.get_or_create_customer_id(db, user_id)
    if customer_id is None:
        raise HTTPException(status_code=502, detail="Unable to create Shopline customer")
    return {"user_id": user_id, "customer_id": customer_id}
