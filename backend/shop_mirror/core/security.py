"""
Security utilities: access token encryption, webhook HMAC and admin key checks.
"""
import base64
import hashlib
import hmac

from cryptography.fernet import Fernet, InvalidToken

from shop_mirror.core.config import settings
from shop_mirror.core.logging import get_logger

logger = get_logger(__name__)


def derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet-compatible key from the encryption key."""
    key = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(key)


# Token encryption
_fernet = Fernet(derive_fernet_key(settings.encryption_key))


def encrypt_token(token: str) -> str:
    """Encrypt a shop access token for storage."""
    return _fernet.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored shop access token."""
    try:
        return _fernet.decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        logger.error("Failed to decrypt token", error=str(e) or "invalid token")
        raise ValueError("Invalid encrypted token") from e


def verify_shopify_hmac(hmac_header: str | None, body: bytes) -> bool:
    """Verify a Shopify webhook HMAC signature (base64 SHA-256 over the raw body)."""
    if not settings.shopify_api_secret:
        logger.warning("Shopify API secret not configured, rejecting webhook")
        return False
    if not hmac_header:
        return False

    computed_hmac = base64.b64encode(
        hmac.new(
            settings.shopify_api_secret.encode(),
            body,
            hashlib.sha256,
        ).digest()
    ).decode()
    return hmac.compare_digest(computed_hmac, hmac_header)


def verify_admin_key(candidate: str | None) -> bool:
    """Constant-time comparison of an admin API key."""
    if not candidate:
        return False
    return hmac.compare_digest(candidate, settings.admin_api_key)
