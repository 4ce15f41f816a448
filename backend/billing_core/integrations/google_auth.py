"""
Google service-account OAuth2 tokens.

The Play Developer API is called with a bearer token obtained by exchanging a
self-signed RS256 JWT at Google's token endpoint. The token is shared by all
concurrent callers and refreshed by at most one in-flight exchange.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import jwt
from cryptography.hazmat.primitives import serialization

from ..core.exceptions import ConfigurationError, ProviderFetchError, ProviderRequestError
from ..core.logging_config import get_logger

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
# Refresh this long before Google's expiry
TOKEN_SAFETY_BUFFER_SECONDS = 300

HttpSender = Callable[..., Awaitable[Tuple[int, Any]]]


@dataclass(frozen=True)
class ServiceAccountCredentials:
    client_email: str
    private_key: Any
    private_key_id: Optional[str] = None
    token_uri: Optional[str] = None


def load_service_account(value: Optional[str]) -> ServiceAccountCredentials:
    """
    Parse a service-account JSON key given inline or as a file path.

    Raises:
        ConfigurationError: missing, unreadable or incomplete key
    """
    if not value:
        raise ConfigurationError(
            "Google Play service account credentials not configured",
            config_key="GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
        )

    raw = value.strip()
    if not raw.startswith("{"):
        if not os.path.exists(raw):
            raise ConfigurationError(
                f"Google Play service account file not found: {raw}",
                config_key="GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
            )
        with open(raw, "r") as f:
            raw = f.read()

    try:
        info: Dict[str, Any] = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(
            "Google Play service account key is not valid JSON",
            config_key="GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
        ) from e

    missing = [k for k in ("client_email", "private_key") if not info.get(k)]
    if missing:
        raise ConfigurationError(
            f"Google Play service account key is missing: {', '.join(missing)}",
            config_key="GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
        )

    try:
        private_key = serialization.load_pem_private_key(info["private_key"].encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            "Google Play service account private key could not be loaded",
            config_key="GOOGLE_PLAY_SERVICE_ACCOUNT_JSON",
        ) from e

    return ServiceAccountCredentials(
        client_email=info["client_email"],
        private_key=private_key,
        private_key_id=info.get("private_key_id"),
        token_uri=info.get("token_uri"),
    )


class ServiceAccountTokenManager:
    """
    Cached access token for one service account.

    Lifecycle: the first ``get_token`` call performs the exchange; the token
    is reused until it is within the safety buffer of its expiry; ``invalidate``
    drops it (after a 401, or between tests).
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        http: HttpSender,
        token_uri: str,
        scope: str = ANDROID_PUBLISHER_SCOPE,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.http = http
        self.token_uri = credentials.token_uri or token_uri
        self.scope = scope
        self.clock = clock
        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        return (
            self._access_token is not None
            and self.clock() < self._expires_at - TOKEN_SAFETY_BUFFER_SECONDS
        )

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._access_token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._access_token
            await self._refresh()
            return self._access_token

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = 0.0

    def build_assertion(self, now: Optional[int] = None) -> str:
        """Self-signed JWT presented to the token endpoint."""
        issued_at = int(now if now is not None else self.clock())
        claims = {
            "iss": self.credentials.client_email,
            "scope": self.scope,
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": self.credentials.private_key_id} if self.credentials.private_key_id else None
        return jwt.encode(claims, self.credentials.private_key, algorithm="RS256", headers=headers)

    async def _refresh(self) -> None:
        now = int(self.clock())
        status, body = await self.http(
            "POST",
            self.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion(now)},
        )
        if status == 429 or status >= 500:
            raise ProviderFetchError(
                f"Google token endpoint returned HTTP {status}", "google_play", http_status=status
            )
        if status >= 400 or not isinstance(body, dict) or "access_token" not in body:
            code = body.get("error") if isinstance(body, dict) else None
            logger.error(f"Google token exchange failed with HTTP {status}: {code}")
            raise ProviderRequestError(
                "Google token exchange was rejected", "google_play", http_status=status, provider_code=code
            )

        self._access_token = body["access_token"]
        self._expires_at = now + int(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        self.refresh_count += 1
        logger.info(f"Google access token refreshed for {self.credentials.client_email}")
