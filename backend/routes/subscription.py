"""Subscription app-selection routes (session-authenticated).

The account is resolved from the session token; request bodies never identify the user.

GET  /api/subscription/update-apps - current app selection
POST /api/subscription/update-apps - change apps, reprice, sync entitlements
POST /api/subscription/preview     - price tier, monthly cost and proration for a change
"""
from fastapi import APIRouter, Depends
import logging

from models import AccountRecord, UpdateAppsRequest
from middleware import require_session
from services.billing_service import billing_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("/update-apps")
async def get_subscription_apps(account: AccountRecord = Depends(require_session)):
    return await billing_service.get_subscription_apps(account)


@router.post("/update-apps")
async def update_subscription_apps(
    request: UpdateAppsRequest,
    account: AccountRecord = Depends(require_session),
):
    return await billing_service.update_subscription_apps(
        account, request.new_apps, is_yearly=request.is_yearly
    )


@router.post("/preview")
async def preview_subscription_change(
    request: UpdateAppsRequest,
    account: AccountRecord = Depends(require_session),
):
    return await billing_service.preview_subscription_change(
        account, request.new_apps, is_yearly=request.is_yearly
    )
