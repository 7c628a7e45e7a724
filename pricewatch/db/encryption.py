"""Encryption for sensitive database fields.

Payment references attached to auto-buy settings are stored with Fernet
symmetric encryption and decrypted transparently on load.
"""

import base64
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from pricewatch.config import settings

logger = logging.getLogger(__name__)

_generated_key: bytes | None = None


def get_encryption_key() -> bytes:
    """
    Get the Fernet key from settings.

    Falls back to a process-local generated key when none is configured, so
    values written without a key cannot be read by another process.

    Returns:
        Urlsafe base64-encoded 32-byte key
    """
    global _generated_key

    key_str = settings.encryption_key
    if not key_str:
        if _generated_key is None:
            logger.warning(
                "ENCRYPTION_KEY not set, generating temporary key (not secure for production)"
            )
            _generated_key = Fernet.generate_key()
        return _generated_key

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
    except (ValueError, TypeError):
        key_bytes = b""
    if len(key_bytes) == 32:
        return base64.urlsafe_b64encode(key_bytes)
    # Derive a key from an arbitrary passphrase-style value
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy type that encrypts string values on write and decrypts on read.

    Usage:
        payment_reference: Mapped[Optional[str]] = mapped_column(EncryptedString(512))
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 256, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        return self._get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None
        try:
            return self._get_fernet().decrypt(value.encode()).decode()
        except InvalidToken:
            # A reference we cannot decrypt is treated as absent, which
            # keeps auto-buy from dispatching with it.
            logger.error(
                "Decryption failed for encrypted column (value_length=%d); "
                "check ENCRYPTION_KEY rotation",
                len(value),
            )
            return None
