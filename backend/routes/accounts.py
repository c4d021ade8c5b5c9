"""Central account endpoints called by the apps and by billing.

GET  /verifyAppAccess     - access decision for one app (each app's access gate)
GET  /grantLifetime       - admin lifetime grant, central + per app
POST /updateSubscription  - authoritative billing write (x-admin-key)
GET  /getAccount          - one account with per-app sync state
GET  /adminDashboard      - status counts and account list
GET  /deleteUser          - delete the central account (event history is kept)
All routes require the admin key.
"""
from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from models import AccountRecord, SubscriptionStatus, UpdateSubscriptionRequest, now_ms
from middleware import require_admin_key
from services.access_check import evaluate_access
from services.account_store import account_store
from services.promo_service import grant_lifetime_access
from utils.audit import get_events_for_email
from utils.errors import NotFoundError
from utils.validation import normalize_email, parse_app, parse_apps_csv

logger = logging.getLogger(__name__)
router = APIRouter(tags=["accounts"], dependencies=[Depends(require_admin_key)])


def account_to_response(account: AccountRecord) -> dict:
    return {
        "userId": account.account_id,
        "email": account.email,
        "name": account.name,
        "subscriptionStatus": account.subscription_status,
        "entitledApps": list(account.entitled_apps),
        "grandfathered": account.grandfathered,
        "grandfatheredRate": account.grandfathered_rate,
        "grandfatheredFrom": account.grandfathered_from,
        "stripeCustomerId": account.stripe_customer_id,
        "stripeSubscriptionId": account.stripe_subscription_id,
        "billingInterval": account.billing_interval,
        "trialExpiresAt": account.trial_expires_at,
        "subscriptionEndsAt": account.subscription_ends_at,
        "createdAt": account.created_at,
        "migratedAt": account.migrated_at,
        "onboardingCompleted": dict(account.onboarding_completed),
        "couponCode": account.coupon_code,
    }


@router.get("/verifyAppAccess")
async def verify_app_access(email: str = Query(...), app: str = Query(...)):
    app_name = parse_app(app)
    account = await account_store.get_by_email(normalize_email(email))
    result = evaluate_access(account, app_name, now_ms())
    return result.model_dump(by_alias=True)


@router.get("/grantLifetime")
async def grant_lifetime(email: str = Query(...), apps: Optional[str] = Query(None)):
    return await grant_lifetime_access(normalize_email(email), parse_apps_csv(apps))


@router.post("/updateSubscription")
async def update_subscription(request: UpdateSubscriptionRequest):
    return await account_store.update_subscription(request)


@router.get("/getAccount")
async def get_account(email: str = Query(...), include_events: bool = Query(False, alias="includeEvents")):
    normalized = normalize_email(email)
    account = await account_store.get_by_email(normalized)
    if account is None:
        raise NotFoundError(f"No account for {normalized}")

    response = account_to_response(account)
    response["appSyncStatus"] = await account_store.get_app_sync_status(normalized)
    if include_events:
        response["events"] = await get_events_for_email(normalized)
    return response


@router.get("/adminDashboard")
async def admin_dashboard(limit: int = Query(500, ge=1, le=5000)):
    accounts = await account_store.list_accounts(limit=limit)
    counts = {status.value: 0 for status in SubscriptionStatus}
    for account in accounts:
        counts[account.subscription_status] = counts.get(account.subscription_status, 0) + 1
    return {
        "total": len(accounts),
        "byStatus": counts,
        "grandfathered": sum(1 for a in accounts if a.grandfathered),
        "users": [account_to_response(a) for a in accounts],
    }


@router.get("/deleteUser")
async def delete_user(email: str = Query(...), reason: str = Query("Admin deletion")):
    return await account_store.delete_account(normalize_email(email), reason=reason)
