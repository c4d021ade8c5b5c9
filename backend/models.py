from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from enum import Enum
import uuid
import time


def now_ms() -> int:
    """Current time as epoch milliseconds (the unit every stored timestamp uses)."""
    return int(time.time() * 1000)


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class AppName(str, Enum):
    SAFETUNES = "safetunes"
    SAFETUBE = "safetube"
    SAFEREADS = "safereads"

# Fixed order: fetch order, grandfathered_from tie-break, report ordering
ALL_APPS: List[AppName] = [AppName.SAFETUNES, AppName.SAFETUBE, AppName.SAFEREADS]

class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    LIFETIME = "lifetime"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"

class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class SubscriptionEventType(str, Enum):
    USER_MIGRATED = "user.migrated"
    USER_MIGRATION_FAILED = "user.migration_failed"
    ENTITLEMENT_SYNC = "entitlement.sync"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_UPDATE_FAILED = "subscription.update_failed"
    SUBSCRIPTION_APPS_CHANGED = "subscription.apps_changed"
    LIFETIME_GRANTED = "lifetime.granted"
    PROMO_REDEEMED = "promo.redeemed"
    PAYMENT_FAILED = "payment.failed"
    PROVISION_RETRIED = "provision.retried"
    ACCOUNT_DELETED = "account.deleted"
    APP_USER_DELETED = "app_user.deleted"

class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"

class MigrationOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ERROR = "error"


# ============================================================================
# STORED DOCUMENTS
# ============================================================================

class AccountRecord(BaseModel):
    """Unified account, one per normalized email (collection: accounts)."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    account_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    name: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL
    entitled_apps: List[AppName] = Field(default_factory=list)
    grandfathered: bool = False
    grandfathered_rate: Optional[float] = None
    grandfathered_from: Optional[AppName] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None
    trial_expires_at: Optional[int] = None
    subscription_ends_at: Optional[int] = None
    created_at: int = Field(default_factory=now_ms)
    migrated_at: Optional[int] = None
    onboarding_completed: Dict[str, bool] = Field(default_factory=dict)
    coupon_code: Optional[str] = None


class AppUserRecord(BaseModel):
    """Canonical per-app user, produced by services.app_adapters. Read-only."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    app: AppName
    email: str
    name: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    trial_expires_at: Optional[int] = None
    subscription_ends_at: Optional[int] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    coupon_code: Optional[str] = None
    created_at: Optional[int] = None


class SubscriptionEvent(BaseModel):
    """Append-only audit event (collection: subscription_events)."""
    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: Optional[str] = None
    email: str
    event_type: SubscriptionEventType
    event_data: Optional[str] = None  # JSON-serialized context
    subscription_status: Optional[str] = None
    stripe_event_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class UpdateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    subscription_status: str = Field(alias="subscriptionStatus")
    stripe_customer_id: Optional[str] = Field(default=None, alias="stripeCustomerId")
    stripe_subscription_id: Optional[str] = Field(default=None, alias="stripeSubscriptionId")
    subscription_ends_at: Optional[int] = Field(default=None, alias="subscriptionEndsAt")
    billing_interval: Optional[str] = Field(default=None, alias="billingInterval")
    entitled_apps: Optional[List[str]] = Field(default=None, alias="entitledApps")
    stripe_event_id: Optional[str] = Field(default=None, alias="stripeEventId")


class UpdateAppsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_apps: List[str] = Field(alias="newApps")
    is_yearly: bool = Field(default=False, alias="isYearly")


class PromoSignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    promo_code: str = Field(alias="promoCode")
    name: Optional[str] = None


class RetryProvisionRequest(BaseModel):
    email: EmailStr
    apps: List[str]


class DeleteUserAllRequest(BaseModel):
    email: EmailStr
    apps: List[str]


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class AccessCheckResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_access: bool = Field(alias="hasAccess")
    reason: str
    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")
    trial_expires_at: Optional[int] = Field(default=None, alias="trialExpiresAt")
    subscription_ends_at: Optional[int] = Field(default=None, alias="subscriptionEndsAt")
    entitled_apps: List[str] = Field(default_factory=list, alias="entitledApps")
    user_name: Optional[str] = Field(default=None, alias="userName")
    user_id: Optional[str] = Field(default=None, alias="userId")
    onboarding_completed: bool = Field(default=False, alias="onboardingCompleted")


class MigrationResults(BaseModel):
    total: int = 0
    migrated: int = 0
    created: int = 0
    updated: int = 0
    grandfathered_active: int = Field(default=0, alias="grandfatheredActive")
    grandfathered_lifetime: int = Field(default=0, alias="grandfatheredLifetime")
    trial_users: int = Field(default=0, alias="trialUsers")
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class MigrationReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="runId")
    dry_run: bool = Field(alias="dryRun")
    fetch_errors: List[str] = Field(default_factory=list, alias="fetchErrors")
    results: MigrationResults = Field(default_factory=MigrationResults)
    outcomes: Dict[str, str] = Field(default_factory=dict)
    started_at: int = Field(default_factory=now_ms, alias="startedAt")
    finished_at: Optional[int] = Field(default=None, alias="finishedAt")
    summary: Optional[str] = None
