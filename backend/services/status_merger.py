"""
Status Merger - collapse one person's per-app records into a single status.

Priority (highest wins):
    lifetime(5) > active(4) > trial(3) > past_due(2) > canceled(1) > incomplete(0) > expired(-1)

Trial expiry takes the earliest date across records (a second signup never extends a trial).
Subscription end takes the latest date across records (any paid-through subscription covers the bundle).
Pure: no I/O, no clock.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models import AppUserRecord, SubscriptionStatus
from utils.errors import EmptyRecordGroupError

STATUS_PRIORITY = {
    SubscriptionStatus.LIFETIME.value: 5,
    SubscriptionStatus.ACTIVE.value: 4,
    SubscriptionStatus.TRIAL.value: 3,
    SubscriptionStatus.PAST_DUE.value: 2,
    SubscriptionStatus.CANCELED.value: 1,
    SubscriptionStatus.INCOMPLETE.value: 0,
    SubscriptionStatus.EXPIRED.value: -1,
}

# Statuses whose paid-through date is carried onto the merged account
END_DATE_STATUSES = {
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.PAST_DUE.value,
}


@dataclass(frozen=True)
class MergedStatus:
    status: str
    trial_expires_at: Optional[int] = None
    subscription_ends_at: Optional[int] = None


def status_priority(status: Optional[str]) -> int:
    """Priority of a status; missing or unknown ranks with expired."""
    if status is None:
        return STATUS_PRIORITY[SubscriptionStatus.EXPIRED.value]
    return STATUS_PRIORITY.get(str(status), STATUS_PRIORITY[SubscriptionStatus.EXPIRED.value])


def best_status(statuses: Iterable[Optional[str]]) -> str:
    """Highest-priority recognized status; trial when none is recognized.

    Ties keep the earlier element.
    """
    best: Optional[str] = None
    for status in statuses:
        if status is None or status not in STATUS_PRIORITY:
            continue
        if best is None or STATUS_PRIORITY[status] > STATUS_PRIORITY[best]:
            best = status
    return best or SubscriptionStatus.TRIAL.value


def earliest_trial_expiry(records: List[AppUserRecord]) -> Optional[int]:
    values = [r.trial_expires_at for r in records if r.trial_expires_at]
    return min(values) if values else None


def latest_subscription_end(records: List[AppUserRecord]) -> Optional[int]:
    values = [r.subscription_ends_at for r in records if r.subscription_ends_at]
    return max(values) if values else None


def merge_statuses(records: List[AppUserRecord]) -> MergedStatus:
    """Merge the records of one email group.

    Raises:
        EmptyRecordGroupError: if records is empty
    """
    if not records:
        raise EmptyRecordGroupError("merge_statuses requires at least one record")

    status = best_status(r.subscription_status for r in records)

    trial_expires_at = None
    subscription_ends_at = None
    if status == SubscriptionStatus.TRIAL.value:
        trial_expires_at = earliest_trial_expiry(records)
    elif status in END_DATE_STATUSES:
        subscription_ends_at = latest_subscription_end(records)

    return MergedStatus(
        status=status,
        trial_expires_at=trial_expires_at,
        subscription_ends_at=subscription_ends_at,
    )
