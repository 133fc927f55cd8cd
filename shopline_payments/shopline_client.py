import random
import time
from typing import List, Optional

import httpx

from shopline_payments.config import GatewayCredentials
from shopline_payments.dtos import Customer, Payment, PaymentInstrument, Refund, Session
from shopline_payments.errors import ParseError, ShoplineAPIError, TransportError
from shopline_payments.logging_config import get_logger

DEFAULT_TIMEOUT = 30.0


class ShoplineClient:
    """Shopline Payments API client bound to one gateway's credentials."""

    def __init__(
        self,
        credentials: GatewayCredentials,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        logger=None,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self.logger = logger or get_logger(__name__)

    def has_credentials(self) -> bool:
        return self.credentials.has_credentials()

    def _headers(self, request_id: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "merchantId": self.credentials.merchant_id,
            "apiKey": self.credentials.api_key,
            "requestId": request_id,
        }
        if self.credentials.platform_id:
            headers["platformId"] = self.credentials.platform_id
        return headers

    @staticmethod
    def _request_id() -> str:
        return f"{int(time.time() * 1000)}{random.randint(1000, 9999)}"

    def _post(self, endpoint: str, data: dict) -> dict:
        request_id = self._request_id()
        log = self.logger.bind(request_id=request_id, endpoint=endpoint)
        log.debug("Shopline API request", data=data)

        try:
            with httpx.Client(
                base_url=self.credentials.api_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = client.post(endpoint, json=data, headers=self._headers(request_id))
        except httpx.TimeoutException as exc:
            log.error("Shopline API request timed out")
            raise TransportError(f"Shopline API request timed out: {endpoint}") from exc
        except httpx.HTTPError as exc:
            log.error("Shopline API request failed", error=str(exc))
            raise TransportError(f"Shopline API request failed: {exc}") from exc

        log.debug("Shopline API response", status_code=response.status_code, body=response.text)

        try:
            body = response.json()
        except ValueError as exc:
            raise ParseError(f"Unable to decode Shopline API response ({response.status_code})") from exc

        if response.status_code >= 400:
            body = body if isinstance(body, dict) else {}
            message = body.get("msg") or body.get("message") or f"Shopline API error, status {response.status_code}"
            code = str(body.get("code") or "api_error")
            log.error("Shopline API error", code=code, http_status=response.status_code, message=message)
            raise ShoplineAPIError(message, code=code, http_status=response.status_code)

        if not isinstance(body, dict):
            raise ParseError("Shopline API response is not a JSON object")
        return body

    # Trade

    def query_payment(self, trade_order_id: str) -> Payment:
        return Payment.from_response(self._post("/trade/payment/get", {"tradeOrderId": trade_order_id}))

    def query_session(self, session_id: str) -> Session:
        return Session.from_response(self._post("/trade/sessions/query", {"sessionId": session_id}))

    def cancel_payment(self, trade_order_id: str) -> dict:
        return self._post("/trade/payment/cancel", {"tradeOrderId": trade_order_id})

    def query_refund(self, refund_order_id: str) -> Refund:
        return Refund.from_response(self._post("/trade/refund/get", {"refundOrderId": refund_order_id}))

    # Customers and saved instruments

    def create_customer(self, request: dict) -> Customer:
        return Customer.from_response(self._post("/customer-paymentInstrument/customer/create", request))

    def query_payment_instruments(self, customer_id: str, filters: Optional[dict] = None) -> List[PaymentInstrument]:
        data = {"customerId": customer_id}
        if filters:
            data["paymentInstrument"] = filters
        response = self._post("/customer-paymentInstrument/paymentInstrument/query", data)
        return PaymentInstrument.from_response_list(response.get("paymentInstruments") or [])

    def unbind_payment_instrument(self, customer_id: str, instrument_id: str) -> dict:
        return self._post(
            "/customer-paymentInstrument/paymentInstrument/unbind",
            {"customerId": customer_id, "paymentInstrumentId": instrument_id},
        )


def build_client(credentials: GatewayCredentials, timeout: float = DEFAULT_TIMEOUT, logger=None) -> ShoplineClient:
    return ShoplineClient(credentials, timeout=timeout, logger=logger)
