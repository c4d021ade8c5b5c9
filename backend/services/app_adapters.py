"""
Per-app user record adapters.

Each app's adminDashboard export uses its own field names:
- safetunes: trialExpiresAt, couponCode, subscriptionEndsAt, status may be "cancelled" or "unknown"
- safetube:  trialEndsAt
- safereads: trialExpiresAt, redeemedCoupon, subscriptionCurrentPeriodEnd, missing status means trial

The adapters turn them into AppUserRecord so the merge logic never sees the variance.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from models import AppName, AppUserRecord, SubscriptionStatus

logger = logging.getLogger(__name__)

_STATUS_ALIASES = {
    "cancelled": SubscriptionStatus.CANCELED.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "pastdue": SubscriptionStatus.PAST_DUE.value,
    "past-due": SubscriptionStatus.PAST_DUE.value,
}

_VALID_STATUSES = {s.value for s in SubscriptionStatus}


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_status(raw: Any) -> Optional[str]:
    """Map a per-app status string to SubscriptionStatus; None when unknown or missing."""
    if not raw or not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    value = _STATUS_ALIASES.get(value, value)
    return value if value in _VALID_STATUSES else None


def _timestamp(*values: Any) -> Optional[int]:
    """First positive numeric value as int epoch ms."""
    for value in values:
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value > 0:
            return int(value)
    return None


def _text(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _base_record(app: AppName, raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "app": app,
        "email": normalize_email(raw.get("email")),
        "name": _text(raw.get("name")),
        "stripe_customer_id": _text(raw.get("stripeCustomerId")),
        "stripe_subscription_id": _text(raw.get("stripeSubscriptionId")),
        "created_at": _timestamp(raw.get("createdAt")),
    }


def adapt_safetunes(raw: Dict[str, Any]) -> AppUserRecord:
    fields = _base_record(AppName.SAFETUNES, raw)
    fields.update(
        subscription_status=normalize_status(raw.get("subscriptionStatus")),
        trial_expires_at=_timestamp(raw.get("trialExpiresAt"), raw.get("trialEndsAt")),
        subscription_ends_at=_timestamp(raw.get("subscriptionEndsAt")),
        coupon_code=_text(raw.get("couponCode"), raw.get("redeemedCoupon")),
    )
    return AppUserRecord(**fields)


def adapt_safetube(raw: Dict[str, Any]) -> AppUserRecord:
    fields = _base_record(AppName.SAFETUBE, raw)
    fields.update(
        subscription_status=normalize_status(raw.get("subscriptionStatus")),
        trial_expires_at=_timestamp(raw.get("trialEndsAt"), raw.get("trialExpiresAt")),
        subscription_ends_at=_timestamp(raw.get("subscriptionEndsAt")),
        coupon_code=_text(raw.get("couponCode"), raw.get("redeemedCoupon")),
    )
    return AppUserRecord(**fields)


def adapt_safereads(raw: Dict[str, Any]) -> AppUserRecord:
    fields = _base_record(AppName.SAFEREADS, raw)
    fields.update(
        subscription_status=normalize_status(raw.get("subscriptionStatus")),
        trial_expires_at=_timestamp(raw.get("trialExpiresAt"), raw.get("trialEndsAt")),
        subscription_ends_at=_timestamp(
            raw.get("subscriptionEndsAt"), raw.get("subscriptionCurrentPeriodEnd")
        ),
        coupon_code=_text(raw.get("redeemedCoupon"), raw.get("couponCode")),
    )
    return AppUserRecord(**fields)


ADAPTERS: Dict[AppName, Callable[[Dict[str, Any]], AppUserRecord]] = {
    AppName.SAFETUNES: adapt_safetunes,
    AppName.SAFETUBE: adapt_safetube,
    AppName.SAFEREADS: adapt_safereads,
}


def extract_user_list(payload: Any) -> List[Dict[str, Any]]:
    """adminDashboard?format=json returns a bare list; some deployments wrap it in {"users": [...]}."""
    if isinstance(payload, list):
        return [u for u in payload if isinstance(u, dict)]
    if isinstance(payload, dict) and isinstance(payload.get("users"), list):
        return [u for u in payload["users"] if isinstance(u, dict)]
    raise ValueError("Unexpected user list payload")


def adapt_users(app: AppName, payload: Any) -> List[AppUserRecord]:
    """Normalize one app's export. Records without an email are dropped."""
    adapter = ADAPTERS[AppName(app)]
    users = extract_user_list(payload)
    records = [adapter(raw) for raw in users if normalize_email(raw.get("email"))]
    dropped = len(users) - len(records)
    if dropped:
        logger.warning("Dropped %s %s records without email", dropped, AppName(app).value)
    return records
