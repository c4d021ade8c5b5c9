"""
Entitlement Synchronizer - push an app-set change out to the per-app backends.

to_grant  = new_apps - previous_apps
to_revoke = previous_apps - new_apps
Apps in both sets are not touched.

Grants set the app status to active (lifetime for lifetime accounts); revokes set it to expired.
All calls run concurrently and are awaited together. A failed app is reported in
SyncResult.errors and never rolls back or blocks the others. No retries here:
callers decide (see routes/admin.py retry-provision).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from models import ALL_APPS, AppName, SubscriptionEventType, SubscriptionStatus
from services.app_admin_client import app_admin_client
from utils.audit import record_subscription_event
from utils.validation import parse_apps

logger = logging.getLogger(__name__)


@dataclass
class BillingRefs:
    account_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    lifetime: bool = False


@dataclass
class SyncResult:
    granted: List[str] = field(default_factory=list)
    revoked: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def failed_apps(self) -> List[str]:
        return [e["app"] for e in self.errors]

    def to_dict(self) -> Dict[str, object]:
        return {"granted": self.granted, "revoked": self.revoked, "errors": self.errors}


def diff_app_sets(new_apps: Iterable[str], previous_apps: Iterable[str]):
    """Return (to_grant, to_revoke) in fixed app order.

    Raises:
        ValidationError: an app name outside the enumerated set
    """
    new_set = {AppName(a) for a in parse_apps(new_apps, allow_empty=True)}
    previous_set = {AppName(a) for a in parse_apps(previous_apps, allow_empty=True)}
    to_grant = [a for a in ALL_APPS if a in new_set and a not in previous_set]
    to_revoke = [a for a in ALL_APPS if a in previous_set and a not in new_set]
    return to_grant, to_revoke


async def _grant(app: AppName, email: str, lifetime: bool) -> None:
    if lifetime:
        await app_admin_client.grant_lifetime(app, email)
    else:
        await app_admin_client.set_subscription_status(app, email, SubscriptionStatus.ACTIVE.value)


async def _revoke(app: AppName, email: str) -> None:
    await app_admin_client.set_subscription_status(app, email, SubscriptionStatus.EXPIRED.value)


async def sync_app_access(
    email: str,
    new_apps: Iterable[str],
    previous_apps: Iterable[str],
    billing_refs: Optional[BillingRefs] = None,
) -> SyncResult:
    refs = billing_refs or BillingRefs()
    new_apps = parse_apps(new_apps, allow_empty=True)
    previous_apps = parse_apps(previous_apps, allow_empty=True)
    to_grant, to_revoke = diff_app_sets(new_apps, previous_apps)

    logger.info(
        "Syncing app access for %s: granting=%s revoking=%s",
        email, [a.value for a in to_grant], [a.value for a in to_revoke],
    )

    operations = [("grant", app, _grant(app, email, refs.lifetime)) for app in to_grant]
    operations += [("revoke", app, _revoke(app, email)) for app in to_revoke]

    outcomes = await asyncio.gather(*(op[2] for op in operations), return_exceptions=True)

    result = SyncResult()
    for (action, app, _), outcome in zip(operations, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.error(f"{action} {app.value} for {email} failed: {outcome}")
            result.errors.append({"app": app.value, "message": str(outcome)})
        elif action == "grant":
            result.granted.append(app.value)
        else:
            result.revoked.append(app.value)

    if result.errors:
        logger.warning(f"Partial entitlement sync for {email}: {result.errors}")

    await record_subscription_event(
        SubscriptionEventType.ENTITLEMENT_SYNC,
        email=email,
        account_id=refs.account_id,
        stripe_customer_id=refs.stripe_customer_id,
        stripe_subscription_id=refs.stripe_subscription_id,
        event_data={
            "new_apps": sorted(new_apps),
            "previous_apps": sorted(previous_apps),
            **result.to_dict(),
        },
        error_message="; ".join(f"{e['app']}: {e['message']}" for e in result.errors) or None,
    )
    return result


async def remove_user_from_apps(email: str, apps: Iterable[str], account_id: Optional[str] = None) -> SyncResult:
    """Delete the per-app user records.

    Same partial-failure policy as sync_app_access; removed apps are reported in `revoked`.
    """
    targets = [AppName(a) for a in parse_apps(apps)]
    outcomes = await asyncio.gather(
        *(app_admin_client.delete_user(app, email) for app in targets), return_exceptions=True
    )

    result = SyncResult()
    for app, outcome in zip(targets, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error(f"delete {app.value} user {email} failed: {outcome}")
            result.errors.append({"app": app.value, "message": str(outcome)})
        else:
            result.revoked.append(app.value)

    await record_subscription_event(
        SubscriptionEventType.APP_USER_DELETED,
        email=email,
        account_id=account_id,
        event_data={"apps": [a.value for a in targets], **result.to_dict()},
        error_message="; ".join(f"{e['app']}: {e['message']}" for e in result.errors) or None,
    )
    return result
