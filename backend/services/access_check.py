"""
Access decision for one account and one app.

Used by GET /verifyAppAccess, which each app calls from its own access gate.
"""
from typing import Optional

from models import AccessCheckResult, AccountRecord, AppName, SubscriptionStatus

PAST_DUE_GRACE_PERIOD_MS = 3 * 24 * 60 * 60 * 1000


def effective_status(account: AccountRecord, now: int) -> str:
    """A trial whose expiry has passed is treated as expired."""
    status = account.subscription_status
    if (
        status == SubscriptionStatus.TRIAL.value
        and account.trial_expires_at
        and account.trial_expires_at < now
    ):
        return SubscriptionStatus.EXPIRED.value
    return status


def _decide(account: AccountRecord, app: str, status: str, now: int):
    ends_at = account.subscription_ends_at

    if app not in account.entitled_apps:
        return False, "app_not_entitled"
    if status == SubscriptionStatus.TRIAL.value:
        return True, "trial_active"
    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.LIFETIME.value):
        return True, status
    if status == SubscriptionStatus.EXPIRED.value:
        return False, "trial_expired"
    if status == SubscriptionStatus.CANCELED.value:
        if ends_at and ends_at > now:
            return True, "canceled_but_active"
        return False, "subscription_canceled"
    if status == SubscriptionStatus.PAST_DUE.value:
        if ends_at and now - ends_at < PAST_DUE_GRACE_PERIOD_MS:
            return True, "past_due_grace_period"
        return False, "payment_failed"
    return False, "subscription_inactive"


def evaluate_access(account: Optional[AccountRecord], app: AppName, now: int) -> AccessCheckResult:
    if account is None:
        return AccessCheckResult(has_access=False, reason="account_not_found")

    app_value = AppName(app).value
    status = effective_status(account, now)
    has_access, reason = _decide(account, app_value, status, now)

    return AccessCheckResult(
        has_access=has_access,
        reason=reason,
        subscription_status=status,
        trial_expires_at=account.trial_expires_at,
        subscription_ends_at=account.subscription_ends_at,
        entitled_apps=list(account.entitled_apps),
        user_name=account.name,
        user_id=account.account_id,
        onboarding_completed=bool(account.onboarding_completed.get(app_value, False)),
    )
