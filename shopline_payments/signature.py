"""Webhook signature verification.

Security contract:
- Signature is hex HMAC-SHA256 over ``"{timestamp}.{body}"``, compared with
  ``hmac.compare_digest`` (constant time)
- ``timestamp`` header is epoch milliseconds; deliveries more than 5 minutes
  away from local time are rejected (replay protection)
- ``apiVersion`` other than the expected one is only logged
- Missing sign key -> verification always fails (fail-closed)
- The legacy ``X-Shopline-Signature`` header (HMAC-SHA256 of the raw body,
  keyed by the gateway API key) is deprecated
"""
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from shopline_payments.errors import VerificationError
from shopline_payments.logging_config import get_logger

TIMESTAMP_TOLERANCE_MS = 300000
EXPECTED_API_VERSION = "V1"


@dataclass(frozen=True)
class SignatureHeaders:
    sign: str = ""
    timestamp: str = ""
    api_version: str = ""


@dataclass(frozen=True)
class LegacySignature:
    signature: str = ""


WebhookSignature = Union[SignatureHeaders, LegacySignature]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _as_bytes(body: Union[bytes, str]) -> bytes:
    return body if isinstance(body, bytes) else body.encode("utf-8")


def compute_signature(body: Union[bytes, str], timestamp: Union[int, str], sign_key: str) -> str:
    payload = f"{timestamp}.".encode("utf-8") + _as_bytes(body)
    return hmac.new(sign_key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_legacy_signature(body: Union[bytes, str], api_key: str) -> str:
    return hmac.new(api_key.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


class SignatureVerifier:
    def __init__(
        self,
        tolerance_ms: int = TIMESTAMP_TOLERANCE_MS,
        expected_api_version: str = EXPECTED_API_VERSION,
        clock: Callable[[], int] = _now_ms,
        logger=None,
    ):
        self.tolerance_ms = tolerance_ms
        self.expected_api_version = expected_api_version
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def verify(self, body: Union[bytes, str], headers: SignatureHeaders, sign_key: str) -> bool:
        """Return True or raise VerificationError."""
        if not sign_key:
            self.logger.error("Webhook sign key is not configured, rejecting request")
            raise VerificationError("Webhook sign key is not configured")

        if not headers.sign or not headers.timestamp:
            self.logger.error(
                "Webhook is missing signature headers",
                has_sign=bool(headers.sign),
                has_timestamp=bool(headers.timestamp),
            )
            raise VerificationError("Missing signature headers")

        try:
            timestamp = int(headers.timestamp)
        except (TypeError, ValueError):
            raise VerificationError(f"Invalid timestamp header: {headers.timestamp!r}")

        now = self.clock()
        diff = abs(now - timestamp)
        if diff > self.tolerance_ms:
            self.logger.error("Webhook timestamp expired", timestamp=timestamp, current_time=now, diff_ms=diff)
            raise VerificationError(
                f"Webhook timestamp expired: timestamp={timestamp}, current_time={now}"
            )

        if headers.api_version and headers.api_version != self.expected_api_version:
            self.logger.warning(
                "Unexpected webhook apiVersion",
                api_version=headers.api_version,
                expected=self.expected_api_version,
            )

        expected = compute_signature(body, headers.timestamp, sign_key)
        if not hmac.compare_digest(expected.encode("utf-8"), headers.sign.encode("utf-8")):
            raise VerificationError("Invalid signature")
        return True

    def verify_legacy(self, body: Union[bytes, str], signature: LegacySignature, api_key: str) -> bool:
        # TODO: remove once the provider confirms X-Shopline-Signature is retired.
        self.logger.warning("Deprecated X-Shopline-Signature webhook surface used")
        if not api_key:
            raise VerificationError("Webhook API key is not configured")
        if not signature.signature:
            raise VerificationError("Missing signature headers")

        expected = compute_legacy_signature(body, api_key)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.signature.encode("utf-8")):
            raise VerificationError("Invalid signature")
        return True

    def verify_any(
        self,
        body: Union[bytes, str],
        signature: Optional[WebhookSignature],
        sign_key: str,
        api_key: str,
    ) -> bool:
        if isinstance(signature, LegacySignature):
            return self.verify_legacy(body, signature, api_key)
        return self.verify(body, signature or SignatureHeaders(), sign_key)
