from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session as DBSession

from shopline_payments.dtos import Customer, PaymentInstrument
from shopline_payments.errors import ShoplineError
from shopline_payments.logging_config import get_logger
from shopline_payments.models import CustomerAccount, utcnow
from shopline_payments.shopline_client import ShoplineClient

INSTRUMENT_STATUS_FILTER = {"instrumentStatusList": ["ENABLED", "CREATED"]}


def get_account_by_customer_id(db: DBSession, customer_id: str, lock: bool = False) -> Optional[CustomerAccount]:
    if not customer_id:
        return None
    query = db.query(CustomerAccount).filter(CustomerAccount.shopline_customer_id == customer_id)
    if lock:
        query = query.with_for_update()
    return query.first()


class CustomerManager:
    """Maps local accounts to Shopline customers and caches their saved instruments."""

    def __init__(
        self,
        client: ShoplineClient,
        ttl: int = 3600,
        now: Callable[[], datetime] = utcnow,
        logger=None,
    ):
        self.client = client
        self.ttl = ttl
        self.now = now
        self.logger = logger or get_logger(__name__)

    def get_or_create_customer_id(self, db: DBSession, user_id: int) -> Optional[str]:
        account = db.get(CustomerAccount, user_id)
        if account is None:
            self.logger.warning("Customer account not found", user_id=user_id)
            return None
        if account.shopline_customer_id:
            return account.shopline_customer_id

        try:
            customer = self.client.create_customer(Customer.request_from_account(account))
        except ShoplineError as exc:
            self.logger.error("Failed to create Shopline customer", user_id=user_id, error=exc.message)
            return None

        account.shopline_customer_id = customer.customer_id
        db.commit()
        self.logger.info("Shopline customer created", user_id=user_id, customer_id=customer.customer_id)
        return customer.customer_id

    def _cache_is_fresh(self, account: CustomerAccount) -> bool:
        if account.instruments_cache is None or account.instruments_cached_at is None:
            return False
        return self.now() - account.instruments_cached_at < timedelta(seconds=self.ttl)

    def get_payment_instruments(self, db: DBSession, user_id: int, force_fresh: bool = False) -> List[dict]:
        account = db.get(CustomerAccount, user_id)
        if account is None or not account.shopline_customer_id:
            return []
        if not force_fresh and self._cache_is_fresh(account):
            return list(account.instruments_cache)

        try:
            instruments = self.client.query_payment_instruments(
                account.shopline_customer_id, INSTRUMENT_STATUS_FILTER
            )
        except ShoplineError as exc:
            self.logger.error("Failed to query payment instruments", user_id=user_id, error=exc.message)
            return []

        cached = [instrument.to_dict() for instrument in instruments]
        account.instruments_cache = cached
        account.instruments_cached_at = self.now()
        db.commit()
        return cached

    def get_instrument_models(self, db: DBSession, user_id: int, force_fresh: bool = False) -> List[PaymentInstrument]:
        return PaymentInstrument.from_response_list(self.get_payment_instruments(db, user_id, force_fresh))

    def unbind_payment_instrument(self, db: DBSession, user_id: int, instrument_id: str) -> bool:
        account = db.get(CustomerAccount, user_id)
        if account is None or not account.shopline_customer_id:
            return False

        try:
            self.client.unbind_payment_instrument(account.shopline_customer_id, instrument_id)
        except ShoplineError as exc:
            self.logger.error(
                "Failed to unbind payment instrument", user_id=user_id, instrument_id=instrument_id, error=exc.message
            )
            return False

        self.clear_instruments_cache(db, user_id)
        self.logger.info("Payment instrument unbound", user_id=user_id, instrument_id=instrument_id)
        return True

    def clear_instruments_cache(self, db: DBSession, user_id: int):
        account = db.get(CustomerAccount, user_id)
        if account is None:
            return
        account.clear_instruments_cache()
        db.commit()

    def delete_customer_id(self, db: DBSession, user_id: int):
        account = db.get(CustomerAccount, user_id)
        if account is None:
            return
        account.shopline_customer_id = None
        account.clear_instruments_cache()
        db.commit()

    def has_saved_instruments(self, db: DBSession, user_id: int) -> bool:
        return any(
            instrument.is_enabled() and not instrument.is_expired()
            for instrument in self.get_instrument_models(db, user_id)
        )
