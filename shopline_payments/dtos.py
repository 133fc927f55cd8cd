"""Typed views over Shopline Payments response and webhook payloads.

Upstream payloads are inconsistent between endpoints: the direct query API and
webhook bodies put the same logical field under different keys, sometimes
nested inside a ``payment`` object. Each logical field is therefore declared
once as an ordered tuple of candidate paths and resolved by
:func:`resolve_field`, first match wins. The path that matched is kept in
``resolved_paths`` so schema drift shows up in tests and logs.

Every record keeps the original payload in ``raw_data`` and ``to_dict()``
returns the provider's camelCase key names.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shopline_payments.errors import ParseError

PathPart = Union[str, int]
FieldPath = Tuple[PathPart, ...]

STATUS_ALIASES = {"SUCCESS": "SUCCEEDED"}

ZERO_DECIMAL_CURRENCIES = ("TWD", "JPY", "KRW", "VND")

PAYMENT_METHOD_LABELS = {
    "CreditCard": "Credit card",
    "LinePay": "LINE Pay",
    "JkoPay": "JKOPAY",
    "ApplePay": "Apple Pay",
    "VirtualAtm": "Virtual ATM account",
    "ChaileaseBnpl": "Chailease BNPL",
}

# Candidate paths per logical field, in lookup order.
PAYMENT_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "payment_method": (("paymentMethod",), ("payment", "paymentMethod")),
    "amount": (("amount",), ("order", "amount"), ("payment", "paidAmount")),
    "payment_detail": (("paymentDetail",), ("payment",)),
    "payment_instrument": (("paymentInstrument",), ("payment", "paymentInstrument")),
}
SESSION_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "trade_order_id": (("tradeOrderId",), ("paymentDetails", 0, "tradeOrderId")),
}
REFUND_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "refund_order_id": (("refundOrderId",), ("refundId",)),
}
CUSTOMER_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "customer_id": (("customerId",), ("paymentCustomerId",)),
}
INSTRUMENT_FIELDS: Dict[str, Sequence[FieldPath]] = {
    "instrument_id": (("instrumentId",), ("paymentInstrumentId",)),
}


def normalize_status(status: Optional[str]) -> str:
    """Uppercase canonical status, mapping legacy aliases."""
    normalized = (status or "").strip().upper()
    return STATUS_ALIASES.get(normalized, normalized)


def _dig(raw: Any, path: FieldPath) -> Any:
    value = raw
    for part in path:
        if isinstance(part, int):
            if not isinstance(value, list) or len(value) <= part:
                return None
        elif not isinstance(value, dict):
            return None
        value = value[part] if isinstance(part, int) else value.get(part)
        if value is None:
            return None
    return value


def resolve_field(
    raw: dict, candidates: Sequence[FieldPath], skip_empty: bool = False
) -> Tuple[Any, Optional[str]]:
    """Return ``(value, dotted path used)`` for the first candidate present.

    ``None`` always falls through to the next candidate; with ``skip_empty``
    empty strings, lists and dicts fall through too.
    """
    for path in candidates:
        value = _dig(raw, path)
        if value is None:
            continue
        if skip_empty and value in ("", [], {}):
            continue
        return value, ".".join(str(part) for part in path)
    return None, None


def _require_object(raw: Any, kind: str) -> dict:
    if not isinstance(raw, dict):
        raise ParseError(f"{kind} response is not a JSON object")
    return raw


class ShoplineRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_data: Dict[str, Any] = Field(default_factory=dict, repr=False)
    resolved_paths: Dict[str, Optional[str]] = Field(default_factory=dict, repr=False)

    @classmethod
    def _build(cls, kind: str, **values):
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ParseError(f"Invalid {kind} payload: {exc.errors()[0]['msg']}") from exc


class Amount(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: int
    currency: str = "TWD"

    @staticmethod
    def format_amount(amount: float, currency: str) -> int:
        """Convert a decimal amount to the provider's minor-unit integer."""
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return int(round(amount))
        return int(round(amount * 100))

    @classmethod
    def from_amount(cls, amount: float, currency: str = "TWD") -> "Amount":
        return cls(value=cls.format_amount(amount, currency), currency=currency)

    @classmethod
    def from_response(cls, raw: Optional[dict]) -> Optional["Amount"]:
        if not isinstance(raw, dict) or raw.get("value") is None:
            return None
        try:
            return cls(value=int(raw["value"]), currency=raw.get("currency") or "TWD")
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> dict:
        return {"value": self.value, "currency": self.currency}

    def display(self) -> str:
        if self.currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return f"{self.value} {self.currency}"
        return f"{self.value / 100:.2f} {self.currency}"


class Payment(ShoplineRecord):
    trade_order_id: str
    status: str = ""
    sub_status: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[Dict[str, Any]] = None
    payment_detail: Optional[Dict[str, Any]] = None
    payment_instrument: Optional[Dict[str, Any]] = None

    @classmethod
    def from_response(cls, raw: dict) -> "Payment":
        raw = _require_object(raw, "Payment")
        trade_order_id = raw.get("tradeOrderId")
        if not trade_order_id:
            raise ParseError("Response is missing tradeOrderId")

        values: Dict[str, Any] = {}
        paths: Dict[str, Optional[str]] = {}
        for name, candidates in PAYMENT_FIELDS.items():
            values[name], paths[name] = resolve_field(raw, candidates)

        # Non-object "payment" is never a detail record.
        if not isinstance(values["payment_detail"], dict):
            values["payment_detail"], paths["payment_detail"] = {}, None

        return cls._build(
            "Payment",
            trade_order_id=trade_order_id,
            status=raw.get("status") or "",
            sub_status=raw.get("subStatus"),
            raw_data=raw,
            resolved_paths=paths,
            **values,
        )

    @property
    def normalized_status(self) -> str:
        return normalize_status(self.status)

    def is_succeeded(self) -> bool:
        return self.normalized_status == "SUCCEEDED"

    def is_failed(self) -> bool:
        return self.normalized_status == "FAILED"

    def is_pending(self) -> bool:
        return self.normalized_status == "PENDING"

    def payment_method_display(self) -> str:
        if self.payment_method in PAYMENT_METHOD_LABELS:
            return PAYMENT_METHOD_LABELS[self.payment_method]
        return self.payment_method or "Unknown"

    def card(self) -> dict:
        card = (self.payment_instrument or {}).get("instrumentCard")
        return card if isinstance(card, dict) else {}

    def to_dict(self) -> dict:
        return {
            "tradeOrderId": self.trade_order_id,
            "status": self.status,
            "subStatus": self.sub_status,
            "paymentMethod": self.payment_method,
            "amount": self.amount,
            "paymentDetail": self.payment_detail,
            "paymentInstrument": self.payment_instrument,
        }


class Session(ShoplineRecord):
    session_id: str
    session_url: str = ""
    status: str = ""
    trade_order_id: Optional[str] = None

    @classmethod
    def from_response(cls, raw: dict) -> "Session":
        raw = _require_object(raw, "Session")
        if not raw.get("sessionId"):
            raise ParseError("Response is missing sessionId")

        trade_order_id, path = resolve_field(raw, SESSION_FIELDS["trade_order_id"], skip_empty=True)
        return cls._build(
            "Session",
            session_id=raw["sessionId"],
            session_url=raw.get("sessionUrl") or "",
            status=raw.get("status") or "",
            trade_order_id=trade_order_id,
            raw_data=raw,
            resolved_paths={"trade_order_id": path},
        )

    def is_expired(self) -> bool:
        return normalize_status(self.status) == "EXPIRED"

    def is_succeeded(self) -> bool:
        return normalize_status(self.status) == "SUCCEEDED"

    def is_pending(self) -> bool:
        return normalize_status(self.status) == "PENDING"

    def is_terminal(self) -> bool:
        return self.is_expired() or self.is_succeeded()

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "sessionUrl": self.session_url,
            "status": self.status,
            "tradeOrderId": self.trade_order_id,
        }


class Refund(ShoplineRecord):
    refund_order_id: str = ""
    trade_order_id: str = ""
    status: str = ""
    amount: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    refund_msg: Optional[Dict[str, Any]] = None

    @classmethod
    def from_response(cls, raw: dict) -> "Refund":
        raw = _require_object(raw, "Refund")
        refund_order_id, path = resolve_field(raw, REFUND_FIELDS["refund_order_id"])
        return cls._build(
            "Refund",
            refund_order_id=refund_order_id or "",
            trade_order_id=raw.get("tradeOrderId") or "",
            status=raw.get("status") or "",
            amount=raw.get("amount"),
            reason=raw.get("reason"),
            refund_msg=raw.get("refundMsg"),
            raw_data=raw,
            resolved_paths={"refund_order_id": path},
        )

    def is_succeeded(self) -> bool:
        return normalize_status(self.status) == "SUCCEEDED"

    def is_failed(self) -> bool:
        return normalize_status(self.status) == "FAILED"

    def has_error(self) -> bool:
        return bool((self.refund_msg or {}).get("code"))

    def error_message(self) -> str:
        if not self.has_error():
            return ""
        return f"[{self.refund_msg['code']}] {self.refund_msg.get('msg') or 'Unknown error'}"

    def to_dict(self) -> dict:
        return {
            self.resolved_paths.get("refund_order_id") or "refundOrderId": self.refund_order_id,
            "tradeOrderId": self.trade_order_id,
            "status": self.status,
            "amount": self.amount,
            "reason": self.reason,
            "refundMsg": self.refund_msg,
        }


class Customer(ShoplineRecord):
    customer_id: str
    reference_customer_id: str = ""
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_response(cls, raw: dict) -> "Customer":
        raw = _require_object(raw, "Customer")
        customer_id, path = resolve_field(raw, CUSTOMER_FIELDS["customer_id"], skip_empty=True)
        if not customer_id:
            raise ParseError("Response is missing customerId")
        return cls._build(
            "Customer",
            customer_id=customer_id,
            reference_customer_id=str(raw.get("referenceCustomerId") or ""),
            email=raw.get("email"),
            name=raw.get("name"),
            phone=raw.get("phone"),
            raw_data=raw,
            resolved_paths={"customer_id": path},
        )

    @staticmethod
    def request_from_account(account) -> dict:
        """Create-customer request body for a local account."""
        return {
            "referenceCustomerId": str(account.user_id),
            "email": account.email or "",
            "name": account.name or "",
            "phone": account.phone or "",
        }

    def to_dict(self) -> dict:
        return {
            "customerId": self.customer_id,
            "referenceCustomerId": self.reference_customer_id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
        }


class PaymentInstrument(ShoplineRecord):
    instrument_id: str = ""
    instrument_type: str = ""
    instrument_status: str = ""
    instrument_card: Optional[Dict[str, Any]] = None

    @classmethod
    def from_response(cls, raw: dict) -> "PaymentInstrument":
        raw = _require_object(raw, "PaymentInstrument")
        instrument_id, path = resolve_field(raw, INSTRUMENT_FIELDS["instrument_id"])
        return cls._build(
            "PaymentInstrument",
            instrument_id=instrument_id or "",
            instrument_type=raw.get("instrumentType") or "",
            instrument_status=raw.get("instrumentStatus") or "",
            instrument_card=raw.get("instrumentCard"),
            raw_data=raw,
            resolved_paths={"instrument_id": path},
        )

    @classmethod
    def from_response_list(cls, items: List[dict]) -> List["PaymentInstrument"]:
        return [cls.from_response(item) for item in items or []]

    def is_enabled(self) -> bool:
        return self.instrument_status.upper() == "ENABLED"

    def is_credit_card(self) -> bool:
        return self.instrument_type == "CreditCard"

    def is_expired(self) -> bool:
        return bool((self.instrument_card or {}).get("expired", False))

    @property
    def card_brand(self) -> str:
        return (self.instrument_card or {}).get("brand") or ""

    @property
    def card_last_four(self) -> str:
        return (self.instrument_card or {}).get("last") or ""

    def card_expiry(self) -> str:
        card = self.instrument_card or {}
        month = card.get("expireMonth") or card.get("expiryMonth") or ""
        year = card.get("expireYear") or card.get("expiryYear") or ""
        month, year = str(month), str(year)
        if not month.isdecimal() or not year.isdecimal() or not 1 <= int(month) <= 12:
            return ""
        if len(year) == 2:
            year = "20" + year
        return f"{int(month):02d}/{year}"

    def display_name(self) -> str:
        if not self.card_brand or not self.card_last_four:
            return self.instrument_type
        return f"{self.card_brand} •••• {self.card_last_four}"

    def to_dict(self) -> dict:
        return {
            "instrumentId": self.instrument_id,
            "instrumentType": self.instrument_type,
            "instrumentStatus": self.instrument_status,
            "instrumentCard": self.instrument_card,
        }
