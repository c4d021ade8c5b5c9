"""
Lifetime grants - promo code signups and admin grants.

The central account is set to lifetime first, then every requested app is granted
concurrently through the Entitlement Synchronizer. Partial app failure is a success
with a failed list; failure on every app raises ProvisioningFailedError (HTTP 500).
"""
import os
import logging
from typing import Any, Dict, List, Optional

from models import ALL_APPS, SubscriptionEventType, SubscriptionStatus, SyncStatus
from services.account_store import account_store
from services.entitlement_sync import BillingRefs, sync_app_access
from utils.errors import ProvisioningFailedError, ValidationError
from utils.validation import normalize_email, parse_apps

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME_CODES = "DAWSFRIEND,DEWITT"


def get_lifetime_codes() -> List[str]:
    raw = os.getenv("PROMO_LIFETIME_CODES", DEFAULT_LIFETIME_CODES)
    return [c.strip().upper() for c in raw.split(",") if c.strip()]


def validate_promo_code(promo_code: Optional[str]) -> str:
    normalized = (promo_code or "").strip().upper()
    if not normalized:
        raise ValidationError("Promo code is required")
    if normalized not in get_lifetime_codes():
        raise ValidationError("Invalid promo code")
    return normalized


async def grant_lifetime_access(
    email: str,
    apps: Optional[List[str]] = None,
    event_type: SubscriptionEventType = SubscriptionEventType.LIFETIME_GRANTED,
    coupon_code: Optional[str] = None,
    name: Optional[str] = None,
) -> Dict[str, Any]:
    """Grant lifetime centrally and on each app. Idempotent: every call is a set-state.

    Raises:
        ProvisioningFailedError: no app could be provisioned
    """
    email = normalize_email(email)
    apps = parse_apps(apps) if apps else [a.value for a in ALL_APPS]

    account, created = await account_store.grant_lifetime(
        email, apps, event_type=event_type, coupon_code=coupon_code, name=name
    )

    # Empty previous set: every requested app gets a lifetime set-state call
    sync = await sync_app_access(
        email,
        apps,
        [],
        BillingRefs(
            account_id=account.account_id,
            stripe_customer_id=account.stripe_customer_id,
            stripe_subscription_id=account.stripe_subscription_id,
            lifetime=True,
        ),
    )
    for app in sync.granted:
        await account_store.record_app_sync_status(email, app, SyncStatus.SYNCED)
    for error in sync.errors:
        await account_store.record_app_sync_status(email, error["app"], SyncStatus.FAILED, error["message"])

    logger.info(
        "Lifetime grant for %s: provisioned=%s failed=%s",
        email, sync.granted, sync.failed_apps,
    )

    if sync.errors and not sync.granted:
        raise ProvisioningFailedError(
            "Failed to provision app access. Please contact support.",
            sync.errors,
        )

    return {
        "success": True,
        "email": email,
        "userId": account.account_id,
        "created": created,
        "subscriptionStatus": SubscriptionStatus.LIFETIME.value,
        "provisioned": sync.granted,
        "failed": sync.failed_apps,
        "errors": sync.errors,
        "message": (
            f"Provisioned {len(sync.granted)}/{len(apps)} apps. Some apps may need manual provisioning."
            if sync.errors else "Lifetime access granted to all apps!"
        ),
    }


async def redeem_promo_code(email: str, promo_code: str, name: Optional[str] = None) -> Dict[str, Any]:
    code = validate_promo_code(promo_code)
    logger.info(f"Processing lifetime promo signup for {email} with code {code}")
    return await grant_lifetime_access(
        email,
        event_type=SubscriptionEventType.PROMO_REDEEMED,
        coupon_code=code,
        name=name,
    )
