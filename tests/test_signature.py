import hashlib
import hmac

import pytest

from shopline_payments.errors import ErrorKind, VerificationError
from shopline_payments.signature import (
    LegacySignature,
    SignatureHeaders,
    SignatureVerifier,
    compute_legacy_signature,
    compute_signature,
)

NOW_MS = 1_700_000_000_000
SIGN_KEY = "sign-key"
BODY = b'{"eventType":"payment.success","tradeOrderId":"T1"}'


@pytest.fixture
def verifier():
    return SignatureVerifier(tolerance_ms=300000, clock=lambda: NOW_MS)


def headers_for(body=BODY, timestamp=NOW_MS, key=SIGN_KEY, api_version="V1"):
    return SignatureHeaders(
        sign=compute_signature(body, timestamp, key), timestamp=str(timestamp), api_version=api_version
    )


def test_compute_signature_is_hmac_over_timestamp_dot_body():
    expected = hmac.new(b"k", b"123." + BODY, hashlib.sha256).hexdigest()
    assert compute_signature(BODY, 123, "k") == expected
    assert compute_signature(BODY.decode(), "123", "k") == expected


def test_valid_signature_is_accepted(verifier):
    assert verifier.verify(BODY, headers_for(), SIGN_KEY) is True


def test_timestamp_at_tolerance_edge_is_accepted(verifier):
    assert verifier.verify(BODY, headers_for(timestamp=NOW_MS - 300000), SIGN_KEY)
    assert verifier.verify(BODY, headers_for(timestamp=NOW_MS + 300000), SIGN_KEY)


def test_stale_timestamp_is_rejected_even_with_correct_hmac(verifier):
    with pytest.raises(VerificationError) as exc:
        verifier.verify(BODY, headers_for(timestamp=NOW_MS - 300001), SIGN_KEY)
    assert "expired" in exc.value.message
    assert exc.value.kind == ErrorKind.VERIFICATION


def test_tampered_body_is_rejected(verifier):
    with pytest.raises(VerificationError, match="Invalid signature"):
        verifier.verify(BODY + b" ", headers_for(), SIGN_KEY)


def test_wrong_key_is_rejected(verifier):
    with pytest.raises(VerificationError, match="Invalid signature"):
        verifier.verify(BODY, headers_for(key="other-key"), SIGN_KEY)


def test_missing_headers_are_rejected(verifier):
    with pytest.raises(VerificationError, match="Missing signature headers"):
        verifier.verify(BODY, SignatureHeaders(timestamp=str(NOW_MS)), SIGN_KEY)


def test_missing_sign_key_rejects_everything(verifier):
    with pytest.raises(VerificationError, match="not configured"):
        verifier.verify(BODY, headers_for(), "")


def test_non_numeric_timestamp_is_rejected(verifier):
    with pytest.raises(VerificationError, match="Invalid timestamp"):
        verifier.verify(BODY, SignatureHeaders(sign="abc", timestamp="yesterday"), SIGN_KEY)


def test_unexpected_api_version_only_warns(verifier):
    assert verifier.verify(BODY, headers_for(api_version="V2"), SIGN_KEY)


def test_legacy_signature(verifier):
    signature = LegacySignature(signature=compute_legacy_signature(BODY, "api-key"))
    assert verifier.verify_legacy(BODY, signature, "api-key")

    with pytest.raises(VerificationError, match="Invalid signature"):
        verifier.verify_legacy(BODY, signature, "another-api-key")


def test_verify_any_dispatches_on_signature_type(verifier):
    legacy = LegacySignature(signature=compute_legacy_signature(BODY, "api-key"))
    assert verifier.verify_any(BODY, legacy, SIGN_KEY, "api-key")
    assert verifier.verify_any(BODY, headers_for(), SIGN_KEY, "api-key")

    with pytest.raises(VerificationError, match="Missing signature headers"):
        verifier.verify_any(BODY, None, SIGN_KEY, "api-key")
