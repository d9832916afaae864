"""Security utilities: webhook signatures, identity hashing, secret encryption.

WHAT:
    - HMAC verification of inbound commerce webhooks
    - SHA-256 hashing of identity fields (email, phone, IP) before storage
    - Fernet encryption of per-store secrets (webhook secret, API tokens)

WHY:
    - Unsigned webhooks must never mutate the event store
    - Raw PII never lands in the tracking tables
    - Store secrets stay out of plaintext storage and logs

REFERENCES:
    - signalmatch/routers/shopify_webhooks.py (signature check)
    - signalmatch/services/signal_extractor.py (email hashing)
"""

import base64
import hashlib
import hmac
import logging
import os
import re
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from signalmatch.utils.env import load_env_file, require_env
    load_env_file()
    TOKEN_ENCRYPTION_KEY = require_env("TOKEN_ENCRYPTION_KEY")

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$")


# =============================================================================
# WEBHOOK SIGNATURES
# =============================================================================

def compute_webhook_hmac(secret: str, body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_hmac(secret: Optional[str], body: bytes, hmac_header: Optional[str]) -> bool:
    """Verify that a webhook body was signed with the store's shared secret.

    Args:
        secret: Plaintext shared secret for the store
        body: Raw request body bytes (must be the exact bytes received)
        hmac_header: Value of the X-Shopify-Hmac-Sha256 header

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret or not hmac_header:
        return False

    computed = compute_webhook_hmac(secret, body)

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(computed, hmac_header.strip())


# =============================================================================
# IDENTITY HASHING
# =============================================================================

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_email(email: Optional[str]) -> Optional[str]:
    """SHA-256 of the trimmed, lower-cased email; None for empty input."""
    if not email:
        return None
    clean = str(email).strip().lower()
    if not clean:
        return None
    return sha256_hex(clean)


def hash_phone(phone: Optional[str]) -> Optional[str]:
    """SHA-256 of the phone number reduced to digits and '+'."""
    if not phone:
        return None
    clean = re.sub(r"[^0-9+]", "", str(phone))
    if not clean:
        return None
    return sha256_hex(clean)


def hash_if_plain(value: Optional[str]) -> Optional[str]:
    """Hash a normalized value unless it already looks like a SHA-256 digest."""
    if not value:
        return None
    clean = str(value).strip().lower()
    if not clean:
        return None
    if _SHA256_HEX.match(clean):
        return clean
    return sha256_hex(clean)


# =============================================================================
# SECRET ENCRYPTION
# =============================================================================

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt store secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (webhook secret, access token).
        context:   Friendly label for logs (store/purpose).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret` using the shared Fernet key.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored secret.") from exc
