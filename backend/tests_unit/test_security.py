"""
Webhook Signature & Identity Hashing Tests (Unit)
=================================================

WHAT: HMAC verification of raw webhook bodies and PII hashing helpers.
WHY: A signature bug either drops every real webhook or accepts forged ones.

REFERENCES:
- backend/signalmatch/security.py
"""

import base64
import hashlib
import hmac
import os

import pytest

os.environ["TOKEN_ENCRYPTION_KEY"] = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="

from signalmatch.security import (
    decrypt_secret,
    hash_email,
    hash_if_plain,
    hash_phone,
    verify_webhook_hmac,
)


SECRET = "whsec_unit"
BODY = b'{"id": 1001, "total_price": "49.90"}'


def _sign(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def test_valid_signature_is_accepted() -> None:
    assert verify_webhook_hmac(SECRET, BODY, _sign(BODY)) is True
    assert verify_webhook_hmac(SECRET, BODY, f"  {_sign(BODY)} ") is True


def test_signature_is_bound_to_exact_body_bytes() -> None:
    reformatted = b'{"id":1001,"total_price":"49.90"}'
    assert verify_webhook_hmac(SECRET, reformatted, _sign(BODY)) is False


def test_wrong_secret_or_missing_header_is_rejected() -> None:
    assert verify_webhook_hmac("other", BODY, _sign(BODY)) is False
    assert verify_webhook_hmac(SECRET, BODY, None) is False
    assert verify_webhook_hmac(None, BODY, _sign(BODY)) is False


def test_hash_email_normalizes() -> None:
    assert hash_email(" Buyer@Example.COM ") == hashlib.sha256(b"buyer@example.com").hexdigest()
    assert hash_email("   ") is None
    assert hash_email(None) is None


def test_hash_phone_keeps_digits_and_plus() -> None:
    assert hash_phone("+31 (0)6-1234") == hashlib.sha256(b"+31061234").hexdigest()
    assert hash_phone("n/a") is None


def test_hash_if_plain_passes_digests_through() -> None:
    digest = hashlib.sha256(b"x").hexdigest()
    assert hash_if_plain(digest.upper()) == digest
    assert hash_if_plain(" Ada ") == hashlib.sha256(b"ada").hexdigest()


def test_decrypt_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        decrypt_secret("not-a-fernet-token", context="unit")
    with pytest.raises(ValueError):
        decrypt_secret("", context="unit")
