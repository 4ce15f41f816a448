"""
Subscription management endpoints for the authenticated user.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status

from ...schemas.subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    ReceiptSubmissionRequest,
    ReceiptSubmissionResponse,
    SubscriptionDetailResponse,
)
from ...subscriptions.service import SubscriptionService
from ..deps import get_current_user_id, get_subscription_service

router = APIRouter()


@router.post("", response_model=CreateSubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CreateSubscriptionResponse:
    """
    Start a hosted checkout subscription and return the authorization link.
    """
    return await service.create_subscription(user_id, request.plan_code, request.notes)


@router.get("/current", response_model=SubscriptionDetailResponse)
async def get_current_subscription(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionDetailResponse:
    return await service.get_active_subscription(user_id)


@router.post("/receipts", response_model=ReceiptSubmissionResponse)
async def submit_receipt(
    request: ReceiptSubmissionRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> ReceiptSubmissionResponse:
    """
    Validate an in-app purchase receipt from the Android or iOS store.
    """
    return await service.submit_receipt(user_id, request.receipt, request.platform)


@router.get("/{subscription_id}", response_model=SubscriptionDetailResponse)
async def get_subscription(
    subscription_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionDetailResponse:
    return await service.get_subscription(user_id, subscription_id)


@router.post("/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    request: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CancelSubscriptionResponse:
    """
    Cancel immediately or at the end of the current billing period.
    """
    request = request or CancelSubscriptionRequest()
    return await service.cancel_subscription(
        user_id, subscription_id, request.cancel_at_cycle_end, request.reason
    )


@router.post("/{subscription_id}/resume", response_model=SubscriptionDetailResponse)
async def resume_subscription(
    subscription_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionDetailResponse:
    return await service.resume_subscription(user_id, subscription_id)


@router.post("/{subscription_id}/sync", response_model=SubscriptionDetailResponse)
async def sync_subscription(
    subscription_id: UUID,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionDetailResponse:
    """
    Fetch the live state from the provider and reconcile the local record.
    """
    return await service.sync_subscription(user_id, subscription_id)
