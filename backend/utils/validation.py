"""Enumerated-value checks shared by routes and services. Raise utils.errors.ValidationError."""
from typing import Iterable, List, Optional

from models import ALL_APPS, AppName, BillingInterval, SubscriptionStatus
from utils.errors import ValidationError

VALID_APPS = [a.value for a in ALL_APPS]
VALID_STATUSES = [s.value for s in SubscriptionStatus]


def normalize_email(email: Optional[str]) -> str:
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValidationError("A valid email is required")
    return normalized


def parse_app(app: Optional[str]) -> str:
    value = (app or "").strip().lower()
    if value not in VALID_APPS:
        raise ValidationError(
            f"Invalid app: {app}. Valid apps: {', '.join(VALID_APPS)}"
        )
    return value


def parse_apps(apps: Optional[Iterable[str]], allow_empty: bool = False) -> List[str]:
    """Validate app names; result is de-duplicated and in fixed app order."""
    values = [parse_app(a) for a in (apps or [])]
    if not values and not allow_empty:
        raise ValidationError("At least one app is required")
    return [a.value for a in ALL_APPS if a.value in values]


def parse_apps_csv(raw: Optional[str]) -> List[str]:
    """Comma-separated apps; empty means all apps."""
    if not raw or not raw.strip():
        return list(VALID_APPS)
    return parse_apps([part for part in raw.split(",") if part.strip()])


def parse_status(status: Optional[str]) -> str:
    value = (status or "").strip().lower()
    if value == "cancelled":
        value = SubscriptionStatus.CANCELED.value
    if value not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid subscription status: {status}. Valid statuses: {', '.join(VALID_STATUSES)}"
        )
    return value


def parse_billing_interval(interval: Optional[str]) -> Optional[str]:
    if interval is None:
        return None
    value = interval.strip().lower()
    if value not in (BillingInterval.MONTHLY.value, BillingInterval.YEARLY.value):
        raise ValidationError(f"Invalid billing interval: {interval}")
    return value


def is_app(value: str) -> bool:
    try:
        AppName(value)
        return True
    except ValueError:
        return False
