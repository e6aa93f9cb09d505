"""
Encryption of tenant credentials at rest and decrypted access for API clients.
"""
import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from oms.config import settings

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY"""
    key_str = settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """Encrypt a secret; empty values are stored as None"""
    if not token:
        return None
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted: Optional[str]) -> str:
    """Decrypt a secret. Values written before encryption was enabled are returned as-is."""
    if not encrypted:
        return ""
    f = Fernet(get_encryption_key())
    try:
        return f.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        logger.warning("Stored credential is not encrypted; using it as plain text")
        return encrypted


def get_shopify_credentials(client) -> dict:
    """Decrypted Shopify credentials for a Client row."""
    return {
        "store_id": (client.shopify_store_id or "").strip(),
        "api_key": (client.shopify_api_key or "").strip(),
        "api_secret": decrypt_token(client.shopify_api_secret),
        "access_token": decrypt_token(client.shopify_access_token),
    }


def get_shiprocket_credentials(client) -> dict:
    """Decrypted Shiprocket credentials for a Client row."""
    return {
        "email": (client.shiprocket_email or "").strip(),
        "password": decrypt_token(client.shiprocket_password),
        "api_key": decrypt_token(client.shiprocket_api_key),
    }
