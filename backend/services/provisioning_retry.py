"""
Manual reconciliation: re-grant apps that failed to sync.

Each app is retried independently (MAX_RETRIES attempts, exponential backoff from
INITIAL_DELAY_SECONDS); apps run concurrently. The grant matches the central account:
lifetime accounts get a lifetime grant, everyone else is set active.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from models import ALL_APPS, SubscriptionEventType, SubscriptionStatus, SyncStatus
from services.account_store import account_store
from services.app_adapters import adapt_users
from services.app_admin_client import app_admin_client
from utils.audit import record_subscription_event
from utils.errors import ProvisioningFailedError
from utils.validation import normalize_email, parse_apps

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_DELAY_SECONDS = 1.0


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    operation_name: str,
    max_retries: int = MAX_RETRIES,
    initial_delay: float = INITIAL_DELAY_SECONDS,
) -> Dict[str, Any]:
    """Run operation up to max_retries times. Never raises for operation errors."""
    last_error = None
    for attempt in range(1, max_retries + 1):
        try:
            result = await operation()
            return {"success": True, "result": result, "attempts": attempt}
        except Exception as e:
            last_error = e
            logger.warning(f"{operation_name} attempt {attempt}/{max_retries} failed: {e}")
            if attempt < max_retries:
                await asyncio.sleep(initial_delay * (2 ** (attempt - 1)))
    return {"success": False, "error": str(last_error) if last_error else "Unknown error", "attempts": max_retries}


async def retry_provision(email: str, apps: List[str]) -> Dict[str, Any]:
    """Re-grant apps for one account.

    Returns success with per-app results; partial failure is success=False with 200.

    Raises:
        ValidationError: no valid apps
        ProvisioningFailedError: every app failed after all retries
    """
    email = normalize_email(email)
    apps = parse_apps(apps)

    account = await account_store.get_by_email(email)
    lifetime = account is None or account.subscription_status == SubscriptionStatus.LIFETIME.value

    async def grant(app: str):
        if lifetime:
            await app_admin_client.grant_lifetime(app, email)
        else:
            await app_admin_client.set_subscription_status(app, email, SubscriptionStatus.ACTIVE.value)

    logger.info(f"Manual retry provision for {email}, apps: {','.join(apps)}")
    outcomes = await asyncio.gather(
        *(with_retry(lambda app=app: grant(app), f"grant {app} access for {email}") for app in apps)
    )

    results = []
    for app, outcome in zip(apps, outcomes):
        if outcome["success"]:
            results.append({"app": app, "success": True})
            await account_store.record_app_sync_status(email, app, SyncStatus.SYNCED)
        else:
            results.append({
                "app": app,
                "success": False,
                "error": outcome["error"],
                "attempts": outcome["attempts"],
            })
            await account_store.record_app_sync_status(email, app, SyncStatus.FAILED, outcome["error"])

    successes = [r["app"] for r in results if r["success"]]
    failures = [r for r in results if not r["success"]]

    await record_subscription_event(
        SubscriptionEventType.PROVISION_RETRIED,
        email=email,
        account_id=account.account_id if account else None,
        event_data={"apps": apps, "succeeded": successes, "failed": [f["app"] for f in failures]},
        error_message="; ".join(f"{f['app']}: {f['error']}" for f in failures) or None,
    )

    if failures and not successes:
        raise ProvisioningFailedError(f"All provisioning attempts failed for {email}", failures)

    if failures:
        message = (
            f"Partial success: {', '.join(successes)} succeeded, "
            f"{', '.join(f['app'] for f in failures)} failed"
        )
    else:
        message = f"Successfully provisioned {', '.join(apps)} for {email}"
    return {"success": not failures, "message": message, "results": results}


async def check_app_presence(email: str) -> Dict[str, Any]:
    """Look the email up in every app's export (admin diagnostics)."""
    email = normalize_email(email)

    async def lookup(app):
        try:
            records = adapt_users(app, await app_admin_client.fetch_users(app))
        except Exception as e:
            return {"app": app.value, "found": False, "error": str(e)}
        match = next((r for r in records if r.email == email), None)
        if match is None:
            return {"app": app.value, "found": False}
        return {"app": app.value, "found": True, "status": match.subscription_status, "createdAt": match.created_at}

    apps = await asyncio.gather(*(lookup(app) for app in ALL_APPS))
    return {"email": email, "apps": list(apps)}
