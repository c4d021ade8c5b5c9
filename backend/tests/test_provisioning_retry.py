"""
Manual reconciliation: retry with backoff, per-app isolation, all-fail raises.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from models import AccountRecord, SubscriptionEventType, SyncStatus
from services.account_store import account_store
from services.provisioning_retry import retry_provision, with_retry
from utils.errors import ProvisioningFailedError, UpstreamError


def make_client():
    client = MagicMock()
    client.set_subscription_status = AsyncMock()
    client.grant_lifetime = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_with_retry_backs_off_then_succeeds():
    operation = AsyncMock(side_effect=[UpstreamError("safetunes", "HTTP 500"), UpstreamError("safetunes", "HTTP 500"), "ok"])
    with patch("services.provisioning_retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await with_retry(operation, "grant safetunes")

    assert result == {"success": True, "result": "ok", "attempts": 3}
    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_gives_up_after_max_attempts():
    operation = AsyncMock(side_effect=UpstreamError("safetube", "HTTP 503"))
    with patch("services.provisioning_retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await with_retry(operation, "grant safetube")

    assert result["success"] is False
    assert result["attempts"] == 3
    assert "HTTP 503" in result["error"]
    assert operation.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_active_account_is_set_active_not_lifetime():
    client = make_client()
    existing = AccountRecord(email="a@b.com", account_id="acc-1", subscription_status="active")
    with patch("services.provisioning_retry.app_admin_client", client), \
         patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=existing), \
         patch.object(account_store, "record_app_sync_status", new_callable=AsyncMock) as record_sync, \
         patch("services.provisioning_retry.record_subscription_event", new_callable=AsyncMock) as record:
        result = await retry_provision("a@b.com", ["safetube", "safetunes"])

    assert result["success"] is True
    assert [r["app"] for r in result["results"]] == ["safetunes", "safetube"]
    client.grant_lifetime.assert_not_called()
    assert client.set_subscription_status.await_count == 2
    assert all(c.args[2] == SyncStatus.SYNCED for c in record_sync.call_args_list)
    assert record.call_args[0][0] == SubscriptionEventType.PROVISION_RETRIED


@pytest.mark.asyncio
async def test_partial_failure_is_not_success():
    client = make_client()

    async def grant(app, email):
        if str(app) == "safereads":
            raise UpstreamError("safereads", "HTTP 500 - boom")

    client.grant_lifetime.side_effect = grant
    with patch("services.provisioning_retry.app_admin_client", client), \
         patch("services.provisioning_retry.asyncio.sleep", new_callable=AsyncMock), \
         patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=None), \
         patch.object(account_store, "record_app_sync_status", new_callable=AsyncMock), \
         patch("services.provisioning_retry.record_subscription_event", new_callable=AsyncMock):
        result = await retry_provision("a@b.com", ["safetunes", "safereads"])

    assert result["success"] is False
    assert "Partial success" in result["message"]
    failed = [r for r in result["results"] if not r["success"]]
    assert failed[0]["app"] == "safereads"
    assert failed[0]["attempts"] == 3


@pytest.mark.asyncio
async def test_all_apps_failing_raises():
    client = make_client()
    client.grant_lifetime.side_effect = UpstreamError("x", "HTTP 500")
    with patch("services.provisioning_retry.app_admin_client", client), \
         patch("services.provisioning_retry.asyncio.sleep", new_callable=AsyncMock), \
         patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=None), \
         patch.object(account_store, "record_app_sync_status", new_callable=AsyncMock), \
         patch("services.provisioning_retry.record_subscription_event", new_callable=AsyncMock):
        with pytest.raises(ProvisioningFailedError) as exc_info:
            await retry_provision("a@b.com", ["safetunes"])

    assert exc_info.value.status_code == 500
    assert exc_info.value.details["failed"][0]["app"] == "safetunes"
