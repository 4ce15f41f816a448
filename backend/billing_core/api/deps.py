"""
Common FastAPI dependencies used across the API.
"""
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..container import BillingContainer
from ..core.exceptions import AuthenticationError, ConfigurationError
from ..integrations.payment_providers.registry import ProviderRegistry
from ..subscriptions.service import SubscriptionService
from ..subscriptions.webhooks import WebhookProcessor

# HTTP Bearer scheme for access tokens
http_bearer = HTTPBearer(auto_error=False)


def get_container(request: Request) -> BillingContainer:
    container: Optional[BillingContainer] = getattr(request.app.state, "billing", None)
    if container is None:
        raise ConfigurationError("Billing pipeline is not initialized")
    return container


def get_subscription_service(container: BillingContainer = Depends(get_container)) -> SubscriptionService:
    return container.subscriptions


def get_webhook_processor(container: BillingContainer = Depends(get_container)) -> WebhookProcessor:
    return container.webhooks


def get_registry(container: BillingContainer = Depends(get_container)) -> ProviderRegistry:
    return container.registry


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    container: BillingContainer = Depends(get_container),
) -> str:
    """
    Resolve the calling user from the bearer token.

    Raises:
        AuthenticationError: no token, or the token does not verify
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    return container.tokens.user_id_from_token(credentials.credentials)
