"""
Per-app record adapters: field-name variance is normalized before merging.
"""
import pytest

from models import AppName
from services.app_adapters import adapt_users, extract_user_list, normalize_status


def test_safetube_trial_ends_at_maps_to_trial_expiry():
    records = adapt_users(AppName.SAFETUBE, [
        {"email": " Parent@Example.com ", "subscriptionStatus": "trial", "trialEndsAt": 1_690_000_000_000},
    ])
    assert len(records) == 1
    assert records[0].email == "parent@example.com"
    assert records[0].trial_expires_at == 1_690_000_000_000
    assert records[0].app == "safetube"


def test_safereads_redeemed_coupon_and_period_end():
    records = adapt_users(AppName.SAFEREADS, [
        {
            "email": "a@b.com",
            "subscriptionStatus": "active",
            "redeemedCoupon": "DEWITT",
            "subscriptionCurrentPeriodEnd": 1_700_000_000_000,
            "stripeSubscriptionId": "sub_1",
        },
    ])
    record = records[0]
    assert record.coupon_code == "DEWITT"
    assert record.subscription_ends_at == 1_700_000_000_000
    assert record.stripe_subscription_id == "sub_1"


def test_safetunes_cancelled_and_unknown_statuses():
    records = adapt_users(AppName.SAFETUNES, [
        {"email": "a@b.com", "subscriptionStatus": "cancelled", "subscriptionEndsAt": 0},
        {"email": "c@d.com", "subscriptionStatus": "unknown"},
    ])
    assert records[0].subscription_status == "canceled"
    assert records[0].subscription_ends_at is None
    assert records[1].subscription_status is None


def test_records_without_email_are_dropped():
    records = adapt_users(AppName.SAFETUNES, [{"name": "No Email"}, {"email": "x@y.com"}])
    assert [r.email for r in records] == ["x@y.com"]


def test_wrapped_user_list_is_accepted():
    assert extract_user_list({"users": [{"email": "a@b.com"}]}) == [{"email": "a@b.com"}]


def test_unexpected_payload_raises():
    with pytest.raises(ValueError):
        extract_user_list({"error": "nope"})


@pytest.mark.parametrize("raw,expected", [
    ("Active", "active"),
    ("past_due", "past_due"),
    ("cancelled", "canceled"),
    ("unknown", None),
    (None, None),
    (42, None),
])
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected
