"""
Billing Service - Stripe price tiers and the app-selection change flow.

Price tiers:
    1 app  -> that app's individual price ($4.99/mo)
    2 apps -> two-app price ($7.99/mo)
    3 apps -> three-app bundle ($9.99/mo or $99/yr)

Subscription metadata carries the selection: apps (sorted csv), bundle ("true"/"false"), app_count.
Subscriptions without apps metadata predate app selection and cover all apps.
"""
import os
import logging
import stripe
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models import ALL_APPS, AccountRecord, AppName, BillingInterval, SubscriptionEventType, SyncStatus
from services.account_store import account_store
from services.entitlement_sync import BillingRefs, sync_app_access
from utils.errors import BillingError, NotFoundError, ProvisioningFailedError, ValidationError
from utils.validation import parse_apps, is_app

logger = logging.getLogger(__name__)

stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

MODIFIABLE_SUBSCRIPTION_STATES = ("active", "trialing")

INDIVIDUAL_MONTHLY_COST = 4.99
TWO_APP_MONTHLY_COST = 7.99
THREE_APP_MONTHLY_COST = 9.99
THREE_APP_YEARLY_COST = 99.0

ALL_APP_VALUES = [a.value for a in ALL_APPS]

APP_DISPLAY_NAMES = {
    AppName.SAFETUNES.value: "SafeTunes",
    AppName.SAFETUBE.value: "SafeTube",
    AppName.SAFEREADS.value: "SafeReads",
}


def get_price_ids() -> Dict[str, str]:
    return {
        AppName.SAFETUNES.value: os.getenv("STRIPE_PRICE_SAFETUNES", "price_1SUXOjKgkIT46sg7RKwIgAVv"),
        AppName.SAFETUBE.value: os.getenv("STRIPE_PRICE_SAFETUBE", "price_1Spp7oKgkIT46sg7oJIKGfMG"),
        AppName.SAFEREADS.value: os.getenv("STRIPE_PRICE_SAFEREADS", ""),
        "two_app": os.getenv("STRIPE_PRICE_TWO_APP", "price_1SzNlSKgkIT46sg7T88Bxq6p"),
        "three_app_monthly": os.getenv("STRIPE_PRICE_THREE_APP_MONTHLY", "price_1SxaerKgkIT46sg7NHNy0wk8"),
        "three_app_yearly": os.getenv("STRIPE_PRICE_THREE_APP_YEARLY", "price_1SzLJUKgkIT46sg7xsKo2A71"),
    }


def get_price_id_for_apps(apps: List[str], is_yearly: bool) -> str:
    """Price for an app selection.

    Raises:
        ValidationError: empty selection or unconfigured individual price
    """
    if not apps:
        raise ValidationError("At least 1 app must be selected")

    prices = get_price_ids()
    if len(apps) == 1:
        price_id = prices.get(apps[0])
        if not price_id:
            raise ValidationError(f"Price not configured for {apps[0]}")
        return price_id
    if len(apps) == 2:
        return prices["two_app"]
    return prices["three_app_yearly"] if is_yearly else prices["three_app_monthly"]


def calculate_monthly_cost(apps: List[str], is_yearly: bool) -> float:
    if len(apps) == 1:
        return INDIVIDUAL_MONTHLY_COST
    if len(apps) == 2:
        return TWO_APP_MONTHLY_COST
    return round(THREE_APP_YEARLY_COST / 12, 2) if is_yearly else THREE_APP_MONTHLY_COST


def build_subscription_metadata(apps: List[str]) -> Dict[str, str]:
    return {
        "bundle": "true" if len(apps) > 1 else "false",
        "apps": ",".join(sorted(apps)),
        "app_count": str(len(apps)),
    }


def parse_apps_from_metadata(metadata: Optional[Dict[str, Any]]) -> List[str]:
    """Apps from subscription metadata; missing or unusable metadata means all apps."""
    raw = (metadata or {}).get("apps")
    if not raw:
        return [a.value for a in ALL_APPS]
    apps = [a.strip() for a in str(raw).split(",") if is_app(a.strip())]
    if not apps:
        return [a.value for a in ALL_APPS]
    return [a.value for a in ALL_APPS if a.value in apps]


def grandfather_updates_for(account: AccountRecord, apps: List[str]) -> Dict[str, Any]:
    """Grandfathering covers all apps; narrowing the selection ends it."""
    if account.grandfathered and set(apps) != set(ALL_APP_VALUES):
        return {"grandfathered": False, "grandfathered_rate": None, "grandfathered_from": None}
    return {}


def _current_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """current_period_end in seconds; newer API versions carry it on the item."""
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        period_end = items[0].get("current_period_end") if items else None
    return int(period_end) if period_end else None


def _iso(seconds: Optional[int]) -> Optional[str]:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat() if seconds else None


def _plan(apps: List[str], is_yearly: bool, price_id: Optional[str]) -> Dict[str, Any]:
    return {
        "apps": apps,
        "appNames": [APP_DISPLAY_NAMES[a] for a in apps],
        "monthlyPrice": calculate_monthly_cost(apps, is_yearly),
        "isYearly": is_yearly,
        "priceId": price_id,
    }


class BillingService:
    """Handles app-selection changes on an existing Stripe subscription."""

    async def get_subscription_apps(self, account: AccountRecord) -> Dict[str, Any]:
        if not account.stripe_subscription_id:
            raise NotFoundError("No subscription found. Please subscribe first.")
        try:
            subscription = stripe.Subscription.retrieve(account.stripe_subscription_id)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe retrieve failed for {account.email}: {e}")
            raise BillingError(str(e))

        items = (subscription.get("items") or {}).get("data") or []
        price = items[0].get("price", {}) if items else {}
        recurring = price.get("recurring") or {}
        return {
            "subscriptionId": subscription.get("id"),
            "status": subscription.get("status"),
            "apps": parse_apps_from_metadata(subscription.get("metadata")),
            "priceId": price.get("id"),
            "isYearly": recurring.get("interval") == "year",
            "entitledApps": list(account.entitled_apps),
        }

    async def preview_subscription_change(
        self,
        account: AccountRecord,
        new_apps: List[str],
        is_yearly: bool = False,
    ) -> Dict[str, Any]:
        """Price tier, monthly cost and proration for a selection change, without applying it.

        A failed proration preview is logged and reported as proration=None.
        """
        apps = parse_apps(new_apps)
        price_id = get_price_id_for_apps(apps, is_yearly)

        if not account.stripe_subscription_id:
            raise NotFoundError("No subscription found. Please subscribe first.")
        subscription_id = account.stripe_subscription_id

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe retrieve failed for {account.email}: {e}")
            raise BillingError(str(e), {"code": getattr(e, "code", None)})

        if subscription.get("status") not in MODIFIABLE_SUBSCRIPTION_STATES:
            raise BillingError("Subscription is not active")
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise BillingError("No subscription items found")
        current_item = items[0]
        current_price = current_item.get("price") or {}
        current_yearly = (current_price.get("recurring") or {}).get("interval") == "year"
        current_apps = parse_apps_from_metadata(subscription.get("metadata"))

        current_plan = _plan(current_apps, current_yearly, current_price.get("id"))
        new_plan = _plan(apps, is_yearly, price_id)

        proration = None
        if current_price.get("id") != price_id:
            try:
                invoice = stripe.Invoice.create_preview(
                    customer=subscription.get("customer") or account.stripe_customer_id,
                    subscription=subscription_id,
                    subscription_details={
                        "items": [{"id": current_item["id"], "price": price_id}],
                        "proration_behavior": "create_prorations",
                    },
                )
                lines = (invoice.get("lines") or {}).get("data") or []
                credit = sum(abs(line.get("amount", 0)) for line in lines if line.get("amount", 0) < 0)
                proration = {
                    "immediateCharge": (invoice.get("amount_due") or 0) / 100,
                    "creditApplied": credit / 100,
                    "nextBillingDate": _iso(_current_period_end(subscription)),
                }
            except stripe.error.StripeError as e:
                logger.warning(f"Proration preview failed for {account.email}: {e}")

        current_monthly = current_plan["monthlyPrice"]
        price_change = round(new_plan["monthlyPrice"] - current_monthly, 2)
        return {
            "currentPlan": current_plan,
            "newPlan": new_plan,
            "changes": {
                "appsAdded": [{"id": a, "name": APP_DISPLAY_NAMES[a]} for a in apps if a not in current_apps],
                "appsRemoved": [{"id": a, "name": APP_DISPLAY_NAMES[a]} for a in current_apps if a not in apps],
                "isUpgrade": price_change > 0,
                "isDowngrade": price_change < 0,
                "priceChange": price_change,
                "priceChangePercent": round(price_change / current_monthly * 100) if current_monthly else 0,
            },
            "proration": proration,
            "billingInfo": {
                "currentPeriodEnd": _iso(_current_period_end(subscription)),
                "status": subscription.get("status"),
            },
        }

    async def update_subscription_apps(
        self,
        account: AccountRecord,
        new_apps: List[str],
        is_yearly: bool = False,
    ) -> Dict[str, Any]:
        """Change the app selection: Stripe first, then the store, then per-app entitlements.

        The billing change is committed before entitlements are pushed. Apps whose push
        failed are returned in needsReconciliation and recorded as failed in app_sync_status.

        Raises:
            ValidationError: bad app names or empty selection
            NotFoundError: account has no subscription
            BillingError: Stripe rejected the change or subscription not modifiable
            ProvisioningFailedError: billing committed but every app push failed
        """
        apps = parse_apps(new_apps)
        price_id = get_price_id_for_apps(apps, is_yearly)

        if not account.stripe_subscription_id:
            raise NotFoundError("No subscription found. Please subscribe first.")
        subscription_id = account.stripe_subscription_id

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            if subscription.get("status") not in MODIFIABLE_SUBSCRIPTION_STATES:
                raise BillingError("Subscription is not active")

            previous_apps = parse_apps_from_metadata(subscription.get("metadata"))
            items = (subscription.get("items") or {}).get("data") or []
            if not items:
                raise BillingError("No subscription items found")
            current_item = items[0]

            metadata = build_subscription_metadata(apps)
            price_changed = (current_item.get("price") or {}).get("id") != price_id
            if price_changed:
                updated = stripe.Subscription.modify(
                    subscription_id,
                    items=[{"id": current_item["id"], "price": price_id}],
                    metadata=metadata,
                    proration_behavior="create_prorations",
                )
            else:
                updated = stripe.Subscription.modify(subscription_id, metadata=metadata)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe subscription update failed for {account.email}: {e}")
            raise BillingError(str(e), {"code": getattr(e, "code", None)})

        interval = BillingInterval.YEARLY.value if (is_yearly and len(apps) == 3) else BillingInterval.MONTHLY.value
        await account_store.apply_billing_update(
            account,
            {"entitled_apps": apps, "billing_interval": interval, **grandfather_updates_for(account, apps)},
            SubscriptionEventType.SUBSCRIPTION_APPS_CHANGED,
            event_data={
                "previous_apps": previous_apps,
                "new_apps": apps,
                "price_id": price_id,
                "price_changed": price_changed,
            },
        )

        sync = await sync_app_access(
            account.email,
            apps,
            previous_apps,
            BillingRefs(
                account_id=account.account_id,
                stripe_customer_id=account.stripe_customer_id,
                stripe_subscription_id=subscription_id,
            ),
        )
        for app in sync.granted + sync.revoked:
            await account_store.record_app_sync_status(account.email, app, SyncStatus.SYNCED)
        for error in sync.errors:
            await account_store.record_app_sync_status(
                account.email, error["app"], SyncStatus.FAILED, error["message"]
            )

        logger.info(
            "Subscription apps updated for %s: %s (price_changed=%s) granted=%s revoked=%s errors=%s",
            account.email, apps, price_changed, sync.granted, sync.revoked, sync.errors,
        )

        if sync.errors and not (sync.granted or sync.revoked):
            raise ProvisioningFailedError(
                "Subscription updated but app access could not be synced",
                sync.errors,
                extra={
                    "subscriptionId": subscription_id,
                    "newApps": apps,
                    "newPriceId": price_id,
                    "priceChanged": price_changed,
                },
            )

        return {
            "success": True,
            "subscriptionId": (updated or {}).get("id", subscription_id),
            "newApps": apps,
            "previousApps": previous_apps,
            "newPriceId": price_id,
            "priceChanged": price_changed,
            "monthlyCost": calculate_monthly_cost(apps, is_yearly),
            "granted": sync.granted,
            "revoked": sync.revoked,
            "errors": sync.errors,
            "needsReconciliation": sync.failed_apps,
        }


# Singleton instance
billing_service = BillingService()
