from shopline_payments.config import CUSTOMER_GATEWAY_ID, Settings
from shopline_payments.customers import CustomerManager
from shopline_payments.logging_config import get_logger
from shopline_payments.models import Order
from shopline_payments.reconciler import StatusReconciler
from shopline_payments.shopline_client import ShoplineClient, build_client
from shopline_payments.webhook import WebhookProcessor


def build_webhook_processor(settings: Settings) -> WebhookProcessor:
    return WebhookProcessor(settings, logger=get_logger("shopline_payments.webhook"))


def build_reconciler(settings: Settings) -> StatusReconciler:
    logger = get_logger("shopline_payments.reconciler")

    def client_for_order(order: Order) -> ShoplineClient:
        return build_client(settings.credentials_for(order.payment_method), settings.http_timeout, logger)

    return StatusReconciler(settings, client_for_order, logger=logger)


def build_customer_manager(settings: Settings) -> CustomerManager:
    logger = get_logger("shopline_payments.customers")
    client = build_client(settings.credentials_for(CUSTOMER_GATEWAY_ID), settings.http_timeout, logger)
    return CustomerManager(client, ttl=settings.instruments_cache_ttl, logger=logger)
