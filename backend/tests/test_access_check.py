"""
verifyAppAccess decision table.
"""
import pytest

from models import AccountRecord
from services.access_check import PAST_DUE_GRACE_PERIOD_MS, evaluate_access

NOW = 1_750_000_000_000
DAY = 24 * 60 * 60 * 1000


def account(status, apps=("safetunes", "safetube", "safereads"), **kwargs):
    return AccountRecord(email="a@b.com", subscription_status=status, entitled_apps=list(apps), **kwargs)


@pytest.mark.parametrize("acct,app,has_access,reason", [
    (account("active"), "safetunes", True, "active"),
    (account("lifetime"), "safereads", True, "lifetime"),
    (account("trial", trial_expires_at=NOW + DAY), "safetube", True, "trial_active"),
    (account("trial"), "safetube", True, "trial_active"),
    (account("trial", trial_expires_at=NOW - 1), "safetube", False, "trial_expired"),
    (account("expired"), "safetunes", False, "trial_expired"),
    (account("active", apps=("safetunes",)), "safereads", False, "app_not_entitled"),
    (account("canceled", subscription_ends_at=NOW + DAY), "safetunes", True, "canceled_but_active"),
    (account("canceled", subscription_ends_at=NOW - DAY), "safetunes", False, "subscription_canceled"),
    (account("past_due", subscription_ends_at=NOW - DAY), "safetunes", True, "past_due_grace_period"),
    (account("past_due", subscription_ends_at=NOW - PAST_DUE_GRACE_PERIOD_MS - 1), "safetunes", False, "payment_failed"),
    (account("incomplete"), "safetunes", False, "subscription_inactive"),
])
def test_access_decisions(acct, app, has_access, reason):
    result = evaluate_access(acct, app, NOW)
    assert result.has_access is has_access
    assert result.reason == reason


def test_expired_trial_reports_expired_status():
    result = evaluate_access(account("trial", trial_expires_at=NOW - 1), "safetunes", NOW)
    assert result.subscription_status == "expired"


def test_missing_account():
    result = evaluate_access(None, "safetunes", NOW)
    assert result.has_access is False
    assert result.reason == "account_not_found"


def test_response_uses_camel_case_and_onboarding_for_the_app():
    acct = account("active", onboarding_completed={"safetunes": True}, name="Pat")
    body = evaluate_access(acct, "safetunes", NOW).model_dump(by_alias=True)
    assert body["hasAccess"] is True
    assert body["onboardingCompleted"] is True
    assert body["userId"] == acct.account_id
    assert body["userName"] == "Pat"
    assert body["entitledApps"] == ["safetunes", "safetube", "safereads"]

    other = evaluate_access(acct, "safereads", NOW).model_dump(by_alias=True)
    assert other["onboardingCompleted"] is False
