"""
Health check endpoints for monitoring and uptime.
"""
from fastapi import APIRouter, Depends

from ...integrations.payment_providers.registry import ProviderRegistry
from ...schemas.webhook import ProviderHealth, ProvidersHealthResponse
from ..deps import get_registry

router = APIRouter()


@router.get("/providers", response_model=ProvidersHealthResponse)
async def providers_health(registry: ProviderRegistry = Depends(get_registry)) -> ProvidersHealthResponse:
    """
    Report which payment providers are configured and what they can do.
    """
    providers = {name: ProviderHealth(**info) for name, info in registry.health().items()}
    configured = [p.configured for p in providers.values()]
    if all(configured):
        overall = "healthy"
    elif any(configured):
        overall = "degraded"
    else:
        overall = "unhealthy"
    return ProvidersHealthResponse(status=overall, providers=providers)
