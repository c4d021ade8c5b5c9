"""
Grandfather Migration Runner.

Pipeline, each stage collecting its own partial failures:
    fetch_all_app_users -> group_by_email -> plan_user_migration -> write (sequential)

- fetch: the three app exports are fetched concurrently; one app failing lands in fetch_errors
- group: records keyed by normalized email, in fixed app order
- plan: Status Merger + grandfather rules (pure)
- write: upgrade-only, one user at a time, one SubscriptionEvent per email

Dry runs log what would happen and write nothing (no accounts, no events, no run record).
Re-running is safe: every account write is upgrade-only.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from models import (
    ALL_APPS,
    AppName,
    AppUserRecord,
    MigrationOutcome,
    MigrationReport,
    SubscriptionEventType,
    SubscriptionStatus,
    now_ms,
)
from services.account_store import INDIVIDUAL_APP_RATE, MigrationPlan, account_store
from services.app_adapters import adapt_users, normalize_email
from services.app_admin_client import app_admin_client
from services.status_merger import merge_statuses
from utils.audit import record_subscription_event

logger = logging.getLogger(__name__)

PAYING_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.LIFETIME.value)


# ============================================================================
# Stage 1: fetch
# ============================================================================

async def _fetch_app(app: AppName) -> List[AppUserRecord]:
    payload = await app_admin_client.fetch_users(app)
    records = adapt_users(app, payload)
    logger.info(f"Fetched {len(records)} users from {app.value}")
    return records


async def fetch_all_app_users() -> Tuple[Dict[str, List[AppUserRecord]], List[str]]:
    """Fetch every app concurrently. Returns (records by app, fetch errors)."""
    outcomes = await asyncio.gather(*(_fetch_app(app) for app in ALL_APPS), return_exceptions=True)

    users_by_app: Dict[str, List[AppUserRecord]] = {}
    fetch_errors: List[str] = []
    for app, outcome in zip(ALL_APPS, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, Exception):
            error_msg = f"Failed to fetch users from {app.value}: {outcome}"
            logger.error(error_msg)
            fetch_errors.append(error_msg)
            continue
        users_by_app[app.value] = outcome
    return users_by_app, fetch_errors


# ============================================================================
# Stage 2: group
# ============================================================================

def group_by_email(users_by_app: Dict[str, List[AppUserRecord]]) -> Dict[str, List[AppUserRecord]]:
    """Group by normalized email. Within a group, records keep fixed app order."""
    groups: Dict[str, List[AppUserRecord]] = {}
    for app in ALL_APPS:
        for record in users_by_app.get(app.value, []):
            email = normalize_email(record.email)
            if not email:
                continue
            groups.setdefault(email, []).append(record)
    return groups


# ============================================================================
# Stage 3: plan
# ============================================================================

def plan_user_migration(email: str, records: List[AppUserRecord]) -> MigrationPlan:
    """Merged account for one email group. Pure."""
    merged = merge_statuses(records)
    is_paying = merged.status == SubscriptionStatus.ACTIVE.value

    paying = next((r for r in records if r.subscription_status in PAYING_STATUSES), None)
    source = paying or records[0]

    grandfathered_from = None
    if is_paying:
        origin = next(
            (r for r in records
             if r.subscription_status == SubscriptionStatus.ACTIVE.value and r.stripe_subscription_id),
            None,
        )
        grandfathered_from = origin.app if origin else None

    return MigrationPlan(
        email=email,
        status=merged.status,
        source_apps=[r.app for r in records],
        name=next((r.name for r in records if r.name), None),
        stripe_customer_id=source.stripe_customer_id,
        stripe_subscription_id=source.stripe_subscription_id,
        trial_expires_at=merged.trial_expires_at,
        subscription_ends_at=merged.subscription_ends_at,
        coupon_code=next((r.coupon_code for r in records if r.coupon_code), None),
        grandfathered=is_paying,
        grandfathered_rate=INDIVIDUAL_APP_RATE if is_paying else None,
        grandfathered_from=grandfathered_from,
    )


# ============================================================================
# Stage 4: write
# ============================================================================

async def migrate_user(plan: MigrationPlan) -> MigrationOutcome:
    """Write one plan and record its single success event. Exceptions propagate."""
    outcome, account_id = await account_store.apply_migration(plan)
    await record_subscription_event(
        SubscriptionEventType.USER_MIGRATED,
        email=plan.email,
        account_id=account_id,
        subscription_status=plan.status,
        stripe_customer_id=plan.stripe_customer_id,
        stripe_subscription_id=plan.stripe_subscription_id,
        event_data={"outcome": outcome.value, **plan.to_dict()},
    )
    return outcome


def _count_plan(report: MigrationReport, plan: MigrationPlan) -> None:
    results = report.results
    results.migrated += 1
    if plan.status == SubscriptionStatus.ACTIVE.value:
        results.grandfathered_active += 1
    elif plan.status == SubscriptionStatus.LIFETIME.value:
        results.grandfathered_lifetime += 1
    elif plan.status == SubscriptionStatus.TRIAL.value:
        results.trial_users += 1


async def run_migration(dry_run: bool = True) -> MigrationReport:
    """Run the full grandfather migration. Authorization is checked by the caller."""
    report = MigrationReport(dry_run=dry_run)
    logger.info(f"Starting grandfather migration (dry_run={dry_run})")

    users_by_app, report.fetch_errors = await fetch_all_app_users()
    groups = group_by_email(users_by_app)
    report.results.total = len(groups)
    logger.info(f"Found {len(groups)} unique users across all apps")

    for email, records in groups.items():
        try:
            plan = plan_user_migration(email, records)
            if dry_run:
                logger.info(f"[DRY RUN] Would migrate: {email} {plan.to_dict()}")
                _count_plan(report, plan)
                continue

            outcome = await migrate_user(plan)
            report.outcomes[email] = outcome.value
            if outcome == MigrationOutcome.CREATED:
                report.results.created += 1
            else:
                report.results.updated += 1
            _count_plan(report, plan)
        except Exception as e:
            error_msg = f"Failed to migrate {email}: {e}"
            logger.error(error_msg)
            report.results.errors.append(error_msg)
            report.outcomes[email] = MigrationOutcome.ERROR.value
            if not dry_run:
                await record_subscription_event(
                    SubscriptionEventType.USER_MIGRATION_FAILED,
                    email=email,
                    error_message=str(e),
                    event_data={"source_apps": [r.app for r in records]},
                )

    report.finished_at = now_ms()
    results = report.results
    report.summary = (
        f"{'Dry run' if dry_run else 'Migration'} complete: {results.migrated}/{results.total} users, "
        f"{results.grandfathered_active} grandfathered active, {results.grandfathered_lifetime} lifetime, "
        f"{results.trial_users} trial, {len(results.errors)} errors, {len(report.fetch_errors)} fetch errors"
    )
    logger.info(report.summary)

    if not dry_run:
        await account_store.record_migration_run(report.model_dump())
    return report


async def migrate_user_by_email(email: str, dry_run: bool = False) -> Dict[str, object]:
    """Migrate a single email from a fresh fetch of all apps."""
    email = normalize_email(email)
    users_by_app, fetch_errors = await fetch_all_app_users()
    records = group_by_email(users_by_app).get(email)
    if not records:
        return {"email": email, "found": False, "fetchErrors": fetch_errors}

    plan = plan_user_migration(email, records)
    result: Dict[str, object] = {
        "email": email,
        "found": True,
        "dryRun": dry_run,
        "plan": plan.to_dict(),
        "fetchErrors": fetch_errors,
    }
    if dry_run:
        return result

    try:
        result["outcome"] = (await migrate_user(plan)).value
    except Exception as e:
        logger.error(f"Failed to migrate {email}: {e}")
        await record_subscription_event(
            SubscriptionEventType.USER_MIGRATION_FAILED,
            email=email,
            error_message=str(e),
        )
        result["outcome"] = MigrationOutcome.ERROR.value
        result["error"] = str(e)
    return result
