"""
Security utilities: receipt encryption and access token verification.
"""

from typing import Any, Dict, Optional

import jwt
from cryptography.fernet import Fernet, InvalidToken

from .config import SecurityConfig, get_config
from .exceptions import AuthenticationError, ConfigurationError
from .logging_config import get_logger

logger = get_logger(__name__)

PLAINTEXT_PREFIX = "plain:"


class ReceiptCipher:
    """
    Encrypts raw store receipts at rest.

    Without ``SECURITY_ENCRYPTION_KEY`` receipts are stored as tagged
    plaintext so they stay distinguishable from Fernet tokens.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        if encryption_key:
            try:
                self._fernet = Fernet(encryption_key.encode("utf-8"))
            except ValueError as e:
                raise ConfigurationError(
                    "Encryption key must be a urlsafe base64 encoded 32 byte key",
                    config_key="SECURITY_ENCRYPTION_KEY",
                ) from e

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: str) -> str:
        if self._fernet is None:
            return PLAINTEXT_PREFIX + data
        return self._fernet.encrypt(data.encode("utf-8")).decode("utf-8")

    def decrypt(self, stored: str) -> str:
        """
        Raises:
            ConfigurationError: the value is encrypted but no key (or another key) is configured
        """
        if stored.startswith(PLAINTEXT_PREFIX):
            return stored[len(PLAINTEXT_PREFIX):]
        if self._fernet is None:
            raise ConfigurationError("Stored receipt is encrypted but no key is configured",
                                     config_key="SECURITY_ENCRYPTION_KEY")
        try:
            return self._fernet.decrypt(stored.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError("Stored receipt cannot be decrypted with the configured key",
                                     config_key="SECURITY_ENCRYPTION_KEY") from e


class TokenVerifier:
    """Verifies bearer tokens issued by the identity service."""

    def __init__(self, config: Optional[SecurityConfig] = None):
        self.config = config or get_config().security

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify and decode a JWT.

        Raises:
            AuthenticationError: missing key, expired or invalid token
        """
        if not self.config.secret_key:
            logger.error("SECURITY_SECRET_KEY is not set; rejecting all bearer tokens")
            raise AuthenticationError("Authentication is not configured")
        try:
            return jwt.decode(token, self.config.secret_key, algorithms=[self.config.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired", details={"error": "token_expired"})
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}", details={"error": "invalid_token"})

    def user_id_from_token(self, token: str) -> str:
        payload = self.verify_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Token has no subject", details={"error": "invalid_token"})
        return str(user_id)
