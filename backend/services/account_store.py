"""
Central Account Store - the unified account record per email (collection: accounts).

Source of truth for access checks and the target of every write:
- migration writes are upgrade-only and conditional on the status that was read
- billing writes (updateSubscription, webhooks, update-apps) are authoritative
Every mutation appends one SubscriptionEvent via utils.audit.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    ALL_APPS,
    AccountRecord,
    MigrationOutcome,
    SubscriptionEventType,
    SubscriptionStatus,
    SyncStatus,
    UpdateSubscriptionRequest,
    now_ms,
)
from services.status_merger import status_priority
from utils.audit import record_subscription_event
from utils.errors import ConcurrentUpdateError, NotFoundError
from utils.validation import (
    normalize_email,
    parse_apps,
    parse_billing_interval,
    parse_status,
)

logger = logging.getLogger(__name__)

INDIVIDUAL_APP_RATE = 4.99
ALL_APP_VALUES = [a.value for a in ALL_APPS]


@dataclass
class MigrationPlan:
    """Write payload for one migrated email group."""
    email: str
    status: str
    source_apps: List[str]
    name: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    trial_expires_at: Optional[int] = None
    subscription_ends_at: Optional[int] = None
    coupon_code: Optional[str] = None
    grandfathered: bool = False
    grandfathered_rate: Optional[float] = None
    grandfathered_from: Optional[str] = None
    entitled_apps: List[str] = field(default_factory=lambda: list(ALL_APP_VALUES))

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class AccountStore:
    """MongoDB-backed account store."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_email(self, email: str) -> Optional[AccountRecord]:
        db = database.get_db()
        doc = await db.accounts.find_one({"email": normalize_email(email)}, {"_id": 0})
        return AccountRecord(**doc) if doc else None

    async def get_by_id(self, account_id: str) -> Optional[AccountRecord]:
        db = database.get_db()
        doc = await db.accounts.find_one({"account_id": account_id}, {"_id": 0})
        return AccountRecord(**doc) if doc else None

    async def get_by_stripe_ids(
        self,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[AccountRecord]:
        """Lookup for billing events: subscription id, then customer id, then email."""
        db = database.get_db()
        queries = []
        if stripe_subscription_id:
            queries.append({"stripe_subscription_id": stripe_subscription_id})
        if stripe_customer_id:
            queries.append({"stripe_customer_id": stripe_customer_id})
        if email:
            queries.append({"email": normalize_email(email)})
        for query in queries:
            doc = await db.accounts.find_one(query, {"_id": 0})
            if doc:
                return AccountRecord(**doc)
        return None

    async def list_accounts(self, limit: int = 1000) -> List[AccountRecord]:
        db = database.get_db()
        cursor = db.accounts.find({}, {"_id": 0}).sort("created_at", -1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [AccountRecord(**doc) for doc in docs]

    # ------------------------------------------------------------------
    # Migration writes (upgrade-only)
    # ------------------------------------------------------------------

    async def apply_migration(self, plan: MigrationPlan) -> Tuple[MigrationOutcome, str]:
        """Create the account or apply upgrade-only updates to it.

        Returns (outcome, account_id).

        Raises:
            ConcurrentUpdateError: another writer changed the status or created the
                account between our read and our write
        """
        db = database.get_db()
        email = normalize_email(plan.email)
        now = now_ms()

        existing = await db.accounts.find_one({"email": email}, {"_id": 0})
        if existing is None:
            record = AccountRecord(
                email=email,
                name=plan.name,
                subscription_status=plan.status,
                entitled_apps=list(ALL_APP_VALUES),
                grandfathered=plan.grandfathered,
                grandfathered_rate=plan.grandfathered_rate,
                grandfathered_from=plan.grandfathered_from,
                stripe_customer_id=plan.stripe_customer_id,
                stripe_subscription_id=plan.stripe_subscription_id,
                trial_expires_at=plan.trial_expires_at,
                subscription_ends_at=plan.subscription_ends_at,
                created_at=now,
                migrated_at=now,
                onboarding_completed={app: True for app in plan.source_apps},
                coupon_code=plan.coupon_code,
            )
            try:
                await db.accounts.insert_one(record.model_dump())
            except DuplicateKeyError:
                raise ConcurrentUpdateError(f"Account for {email} was created concurrently")
            return MigrationOutcome.CREATED, record.account_id

        current_status = existing.get("subscription_status")
        updates: Dict[str, Any] = {
            "entitled_apps": list(ALL_APP_VALUES),
            "updated_at": now,
        }

        if plan.grandfathered and not existing.get("grandfathered"):
            updates.update(
                grandfathered=True,
                grandfathered_rate=plan.grandfathered_rate,
                grandfathered_from=plan.grandfathered_from,
                migrated_at=now,
            )

        if status_priority(plan.status) > status_priority(current_status):
            updates.update(
                subscription_status=plan.status,
                trial_expires_at=plan.trial_expires_at,
                subscription_ends_at=plan.subscription_ends_at,
            )

        for key in ("stripe_customer_id", "stripe_subscription_id", "name", "coupon_code"):
            value = getattr(plan, key)
            if value and not existing.get(key):
                updates[key] = value

        onboarding = dict(existing.get("onboarding_completed") or {})
        for app in plan.source_apps:
            if app not in onboarding:
                onboarding[app] = True
        updates["onboarding_completed"] = onboarding

        # Conditional on the status we read: a racing writer makes this match nothing
        result = await db.accounts.update_one(
            {"email": email, "subscription_status": current_status},
            {"$set": updates},
        )
        if result.matched_count == 0:
            raise ConcurrentUpdateError(f"Account for {email} changed during migration")
        return MigrationOutcome.UPDATED, existing.get("account_id")

    # ------------------------------------------------------------------
    # Authoritative billing writes
    # ------------------------------------------------------------------

    async def update_subscription(self, request: UpdateSubscriptionRequest) -> Dict[str, Any]:
        """Authoritative status write from billing. Dedups on stripe_event_id.

        Raises:
            ValidationError: status, interval or app names outside the enumerated sets
            NotFoundError: no account for the email
        """
        db = database.get_db()
        email = normalize_email(request.email)
        status = parse_status(request.subscription_status)
        interval = parse_billing_interval(request.billing_interval)
        apps = parse_apps(request.entitled_apps, allow_empty=True) if request.entitled_apps is not None else None

        if request.stripe_event_id:
            duplicate = await db.subscription_events.find_one(
                {
                    "stripe_event_id": request.stripe_event_id,
                    "event_type": SubscriptionEventType.SUBSCRIPTION_UPDATED.value,
                },
                {"_id": 0, "event_id": 1},
            )
            if duplicate:
                logger.info(f"Duplicate stripe event {request.stripe_event_id} for {email}, skipping")
                return {"success": True, "duplicate": True}

        existing = await db.accounts.find_one({"email": email}, {"_id": 0})
        if not existing:
            await record_subscription_event(
                SubscriptionEventType.SUBSCRIPTION_UPDATE_FAILED,
                email=email,
                subscription_status=status,
                stripe_event_id=request.stripe_event_id,
                stripe_customer_id=request.stripe_customer_id,
                stripe_subscription_id=request.stripe_subscription_id,
                error_message="Account not found",
            )
            raise NotFoundError(f"No account for {email}")

        updates: Dict[str, Any] = {"subscription_status": status, "updated_at": now_ms()}
        if request.stripe_customer_id:
            updates["stripe_customer_id"] = request.stripe_customer_id
        if request.stripe_subscription_id:
            updates["stripe_subscription_id"] = request.stripe_subscription_id
        if request.subscription_ends_at:
            updates["subscription_ends_at"] = request.subscription_ends_at
        if interval:
            updates["billing_interval"] = interval
        if apps is not None:
            updates["entitled_apps"] = apps

        after = await db.accounts.find_one_and_update(
            {"email": email},
            {"$set": updates},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

        await record_subscription_event(
            SubscriptionEventType.SUBSCRIPTION_UPDATED,
            email=email,
            account_id=existing.get("account_id"),
            subscription_status=status,
            stripe_event_id=request.stripe_event_id,
            stripe_customer_id=request.stripe_customer_id,
            stripe_subscription_id=request.stripe_subscription_id,
            before_state=_audit_view(existing),
            after_state=_audit_view(after or {**existing, **updates}),
        )
        return {"success": True, "userId": existing.get("account_id")}

    async def create_account(self, email: str, name: Optional[str] = None) -> Tuple[AccountRecord, bool]:
        """Get-or-create a bare account (trial, no apps). Returns (account, created)."""
        db = database.get_db()
        email = normalize_email(email)
        existing = await db.accounts.find_one({"email": email}, {"_id": 0})
        if existing:
            return AccountRecord(**existing), False

        record = AccountRecord(email=email, name=name)
        try:
            await db.accounts.insert_one(record.model_dump())
        except DuplicateKeyError:
            existing = await db.accounts.find_one({"email": email}, {"_id": 0})
            return AccountRecord(**existing), False
        logger.info(f"Created account for {email}")
        return record, True

    async def apply_billing_update(
        self,
        account: AccountRecord,
        updates: Dict[str, Any],
        event_type: SubscriptionEventType,
        stripe_event_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AccountRecord]:
        """Set fields on a known account (webhooks, update-apps) and record the event."""
        db = database.get_db()
        updates = {**updates, "updated_at": now_ms()}
        after = await db.accounts.find_one_and_update(
            {"account_id": account.account_id},
            {"$set": updates},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        await record_subscription_event(
            event_type,
            email=account.email,
            account_id=account.account_id,
            subscription_status=updates.get("subscription_status", account.subscription_status),
            stripe_event_id=stripe_event_id,
            stripe_customer_id=updates.get("stripe_customer_id", account.stripe_customer_id),
            stripe_subscription_id=updates.get("stripe_subscription_id", account.stripe_subscription_id),
            event_data=event_data,
            before_state=_audit_view(account.model_dump()),
            after_state=_audit_view(after or {}),
        )
        return AccountRecord(**after) if after else None

    async def grant_lifetime(
        self,
        email: str,
        apps: Optional[List[str]] = None,
        event_type: SubscriptionEventType = SubscriptionEventType.LIFETIME_GRANTED,
        coupon_code: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Tuple[AccountRecord, bool]:
        """Set lifetime status and add apps to the entitlement set, creating the account if needed.

        Returns (account, created).
        """
        db = database.get_db()
        email = normalize_email(email)
        apps = parse_apps(apps) if apps else list(ALL_APP_VALUES)
        now = now_ms()

        existing = await db.accounts.find_one({"email": email}, {"_id": 0})
        if existing is None:
            record = AccountRecord(
                email=email,
                name=name,
                subscription_status=SubscriptionStatus.LIFETIME,
                entitled_apps=apps,
                coupon_code=coupon_code,
                created_at=now,
            )
            try:
                await db.accounts.insert_one(record.model_dump())
                created = True
                after = record.model_dump()
            except DuplicateKeyError:
                existing = await db.accounts.find_one({"email": email}, {"_id": 0})
                created = False
        else:
            created = False

        if not created:
            entitled = set(existing.get("entitled_apps") or []) | set(apps)
            updates = {
                "subscription_status": SubscriptionStatus.LIFETIME.value,
                "entitled_apps": [a for a in ALL_APP_VALUES if a in entitled],
                "trial_expires_at": None,
                "subscription_ends_at": None,
                "updated_at": now,
            }
            if coupon_code and not existing.get("coupon_code"):
                updates["coupon_code"] = coupon_code
            if name and not existing.get("name"):
                updates["name"] = name
            after = await db.accounts.find_one_and_update(
                {"email": email},
                {"$set": updates},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            ) or {**existing, **updates}

        account = AccountRecord(**after)
        await record_subscription_event(
            event_type,
            email=email,
            account_id=account.account_id,
            subscription_status=SubscriptionStatus.LIFETIME.value,
            event_data={"apps": apps, "created": created, "coupon_code": coupon_code},
        )
        return account, created

    async def delete_account(self, email: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Delete the account and its app sync rows. The event log is kept.

        Raises:
            NotFoundError: no account for the email
        """
        db = database.get_db()
        email = normalize_email(email)
        existing = await db.accounts.find_one({"email": email}, {"_id": 0})
        if not existing:
            raise NotFoundError(f"No account for {email}")

        now = now_ms()
        created_at = existing.get("created_at")
        # Recorded before the delete so the history survives the account
        await record_subscription_event(
            SubscriptionEventType.ACCOUNT_DELETED,
            email=email,
            account_id=existing.get("account_id"),
            subscription_status=existing.get("subscription_status"),
            stripe_customer_id=existing.get("stripe_customer_id"),
            stripe_subscription_id=existing.get("stripe_subscription_id"),
            event_data={
                "reason": reason,
                "entitled_apps": existing.get("entitled_apps"),
                "account_age_ms": now - created_at if created_at else None,
            },
        )

        await db.accounts.delete_one({"email": email})
        sync_rows = await db.app_sync_status.delete_many({"email": email})
        logger.info(f"Deleted account for {email} ({sync_rows.deleted_count} sync rows)")
        return {"success": True, "userId": existing.get("account_id"), "deletedAt": now}

    # ------------------------------------------------------------------
    # Per-app sync status
    # ------------------------------------------------------------------

    async def record_app_sync_status(
        self,
        email: str,
        app: str,
        status: SyncStatus,
        error: Optional[str] = None,
    ) -> None:
        """Upsert the (email, app) sync state. Failures here are logged, not raised."""
        try:
            db = database.get_db()
            await db.app_sync_status.update_one(
                {"email": normalize_email(email), "app": app},
                {
                    "$set": {
                        "sync_status": SyncStatus(status).value,
                        "last_error": error,
                        "last_synced_at": now_ms(),
                    }
                },
                upsert=True,
            )
        except Exception as e:
            logger.error(f"Failed to record app sync status for {email}/{app}: {e}")

    async def get_app_sync_status(self, email: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.app_sync_status.find({"email": normalize_email(email)}, {"_id": 0})
        return await cursor.to_list(length=len(ALL_APPS))

    # ------------------------------------------------------------------
    # Migration runs and reports
    # ------------------------------------------------------------------

    async def record_migration_run(self, report: Dict[str, Any]) -> None:
        try:
            db = database.get_db()
            await db.migration_runs.insert_one(dict(report))
        except Exception as e:
            logger.error(f"Failed to record migration run: {e}")

    async def last_migration_run(self) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.migration_runs.find({}, {"_id": 0, "outcomes": 0}).sort("started_at", -1).limit(1)
        runs = await cursor.to_list(length=1)
        return runs[0] if runs else None

    async def migration_report(self) -> Dict[str, Any]:
        """Grandfathering summary over all accounts plus the last recorded run."""
        accounts = await self.list_accounts(limit=100000)
        report: Dict[str, Any] = {
            "totalUsers": len(accounts),
            "grandfatheredUsers": 0,
            "lifetimeUsers": 0,
            "activeUsers": 0,
            "trialUsers": 0,
            "grandfatheredByApp": {app: 0 for app in ALL_APP_VALUES},
            "users": [],
        }
        for account in accounts:
            if account.grandfathered:
                report["grandfatheredUsers"] += 1
                if account.grandfathered_from:
                    report["grandfatheredByApp"][account.grandfathered_from] += 1
            if account.subscription_status == SubscriptionStatus.LIFETIME.value:
                report["lifetimeUsers"] += 1
            elif account.subscription_status == SubscriptionStatus.ACTIVE.value:
                report["activeUsers"] += 1
            elif account.subscription_status == SubscriptionStatus.TRIAL.value:
                report["trialUsers"] += 1

            report["users"].append({
                "email": account.email,
                "status": account.subscription_status,
                "grandfathered": account.grandfathered,
                "grandfatheredRate": account.grandfathered_rate,
                "grandfatheredFrom": account.grandfathered_from,
                "entitledApps": list(account.entitled_apps),
            })

        report["lastRun"] = await self.last_migration_run()
        return report


def _audit_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    keys = (
        "subscription_status",
        "entitled_apps",
        "stripe_customer_id",
        "stripe_subscription_id",
        "subscription_ends_at",
        "billing_interval",
    )
    return {k: doc.get(k) for k in keys if k in doc}


# Singleton instance
account_store = AccountStore()
