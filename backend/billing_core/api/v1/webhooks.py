"""
Payment provider webhook endpoints.

Each endpoint reads the raw body before anything parses it, since the
Razorpay signature covers the exact bytes received.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from ...schemas.webhook import WebhookAck
from ...subscriptions.webhooks import WebhookProcessor
from ..deps import get_webhook_processor

router = APIRouter()


@router.post("/razorpay", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookAck:
    """
    Handle Razorpay subscription and payment events.
    """
    body = await request.body()
    result = await processor.handle_razorpay(body, x_razorpay_signature, x_razorpay_event_id)
    return WebhookAck(**result.to_dict())


@router.post("/google-play", response_model=WebhookAck)
async def google_play_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookAck:
    """
    Handle Google Play real-time developer notifications pushed by Pub/Sub.
    """
    body = await request.body()
    result = await processor.handle_google_play(body, token)
    return WebhookAck(**result.to_dict())


@router.post("/apple", response_model=WebhookAck)
async def app_store_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookAck:
    """
    Handle App Store Server Notifications V2.
    """
    body = await request.body()
    result = await processor.handle_app_store(body)
    return WebhookAck(**result.to_dict())
