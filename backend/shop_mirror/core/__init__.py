"""
Core package containing configuration, database, security, and logging.
"""
from shop_mirror.core.config import settings
from shop_mirror.core.database import Base, DbSession, get_db_context, get_db_session
from shop_mirror.core.logging import configure_logging, get_logger
from shop_mirror.core.security import (
    decrypt_token,
    encrypt_token,
    verify_admin_key,
    verify_shopify_hmac,
)

__all__ = [
    "settings",
    "Base",
    "DbSession",
    "get_db_session",
    "get_db_context",
    "configure_logging",
    "get_logger",
    "encrypt_token",
    "decrypt_token",
    "verify_admin_key",
    "verify_shopify_hmac",
]
