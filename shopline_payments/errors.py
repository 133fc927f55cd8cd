"""Error taxonomy shared by the webhook and reconciliation paths.

Callers branch on ``ErrorKind`` instead of matching message strings.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    PARSE = "parse_error"
    VERIFICATION = "verification_error"
    ORDER_RESOLUTION = "order_resolution_error"
    TRANSPORT = "transport_error"
    HANDLER = "handler_error"


class ShoplineError(Exception):
    kind: ErrorKind = ErrorKind.HANDLER

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(ShoplineError):
    """Malformed or incomplete upstream payload."""

    kind = ErrorKind.PARSE


class VerificationError(ShoplineError):
    """Stale timestamp, missing headers or signature mismatch."""

    kind = ErrorKind.VERIFICATION


class OrderResolutionError(ShoplineError):
    kind = ErrorKind.ORDER_RESOLUTION


class TransportError(ShoplineError):
    """Network failure or timeout talking to the provider."""

    kind = ErrorKind.TRANSPORT


class ShoplineAPIError(TransportError):
    """Provider answered with an HTTP error status."""

    def __init__(self, message: str, code: str = "api_error", http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class HandlerError(ShoplineError):
    kind = ErrorKind.HANDLER


@dataclass
class WebhookResult:
    success: bool
    message: str = "OK"
    kind: Optional[ErrorKind] = None
    order_id: Optional[int] = None
    event_type: str = ""

    @classmethod
    def ok(cls, order_id: Optional[int] = None, event_type: str = "") -> "WebhookResult":
        return cls(success=True, order_id=order_id, event_type=event_type)

    @classmethod
    def failure(cls, error: ShoplineError, order_id: Optional[int] = None, event_type: str = "") -> "WebhookResult":
        return cls(success=False, message=error.message, kind=error.kind, order_id=order_id, event_type=event_type)

    @property
    def status_code(self) -> int:
        return 200 if self.success else 400

    def to_response(self) -> dict:
        if self.success:
            return {"status": "ok"}
        return {"error": self.message}


@dataclass
class SyncResult:
    order_id: int
    synced: bool
    message: str = ""
    status: Optional[str] = None
    kind: Optional[ErrorKind] = None


@dataclass
class BatchSyncResult:
    results: List[SyncResult] = field(default_factory=list)
    interrupted: bool = False

    @property
    def checked(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.kind is not None)
