"""
Webhook acknowledgement and health payloads.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel


class WebhookAck(BaseModel):
    success: bool = True
    status: str
    outcome: Optional[str] = None


class ProviderHealth(BaseModel):
    configured: bool
    operations: List[str] = []
    error: Optional[str] = None


class ProvidersHealthResponse(BaseModel):
    status: str
    providers: Dict[str, ProviderHealth]
