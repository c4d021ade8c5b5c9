"""
HTTP surface: admin key and session gates, error rendering, route-to-service wiring.
"""
import pytest
from unittest.mock import AsyncMock, patch

from auth import create_session_token
from models import AccountRecord, MigrationReport
from services.account_store import account_store
from services.billing_service import billing_service
from services.entitlement_sync import SyncResult
from services.stripe_webhook_service import stripe_webhook_service
from utils.errors import NotFoundError, ProvisioningFailedError

ALL = ["safetunes", "safetube", "safereads"]


def account(**kwargs):
    defaults = {"email": "a@b.com", "account_id": "acc-1", "subscription_status": "active", "entitled_apps": ALL}
    defaults.update(kwargs)
    return AccountRecord(**defaults)


class TestAdminKey:

    def test_missing_key_is_401(self, client):
        response = client.get("/verifyAppAccess", params={"email": "a@b.com", "app": "safetunes"})
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_wrong_key_is_401(self, client):
        response = client.get(
            "/verifyAppAccess",
            params={"email": "a@b.com", "app": "safetunes"},
            headers={"x-admin-key": "wrong"},
        )
        assert response.status_code == 401

    def test_key_query_parameter_accepted(self, client, admin_headers):
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=account()):
            response = client.get(
                "/verifyAppAccess",
                params={"email": "a@b.com", "app": "safetunes", "key": admin_headers["x-admin-key"]},
            )
        assert response.status_code == 200

    def test_migration_routes_are_gated(self, client):
        assert client.get("/runMigration").status_code == 401
        assert client.get("/migrationReport").status_code == 401
        assert client.post("/api/admin/retry-provision", json={"email": "a@b.com", "apps": ["safetunes"]}).status_code == 401


class TestVerifyAppAccess:

    def test_active_account_has_access(self, client, admin_headers):
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=account()) as lookup:
            response = client.get(
                "/verifyAppAccess", params={"email": " A@B.com", "app": "safereads"}, headers=admin_headers
            )
        assert response.status_code == 200
        body = response.json()
        assert body["hasAccess"] is True
        assert body["reason"] == "active"
        assert body["userId"] == "acc-1"
        lookup.assert_awaited_once_with("a@b.com")

    def test_unknown_account(self, client, admin_headers):
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=None):
            response = client.get(
                "/verifyAppAccess", params={"email": "a@b.com", "app": "safetunes"}, headers=admin_headers
            )
        assert response.status_code == 200
        assert response.json() == {
            "hasAccess": False,
            "reason": "account_not_found",
            "subscriptionStatus": None,
            "trialExpiresAt": None,
            "subscriptionEndsAt": None,
            "entitledApps": [],
            "userName": None,
            "userId": None,
            "onboardingCompleted": False,
        }

    def test_invalid_app_is_400(self, client, admin_headers):
        response = client.get(
            "/verifyAppAccess", params={"email": "a@b.com", "app": "safechat"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_missing_email_is_400(self, client, admin_headers):
        response = client.get("/verifyAppAccess", params={"app": "safetunes"}, headers=admin_headers)
        assert response.status_code == 400


class TestAccountRoutes:

    def test_update_subscription_unknown_account_is_404(self, client, admin_headers):
        with patch.object(account_store, "update_subscription", new_callable=AsyncMock,
                          side_effect=NotFoundError("No account for a@b.com")):
            response = client.post(
                "/updateSubscription",
                json={"email": "a@b.com", "subscriptionStatus": "active"},
                headers=admin_headers,
            )
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_get_account_includes_sync_status(self, client, admin_headers):
        sync_rows = [{"email": "a@b.com", "app": "safereads", "sync_status": "failed", "last_error": "HTTP 500"}]
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=account()), \
             patch.object(account_store, "get_app_sync_status", new_callable=AsyncMock, return_value=sync_rows):
            response = client.get("/getAccount", params={"email": "a@b.com"}, headers=admin_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["userId"] == "acc-1"
        assert body["entitledApps"] == ALL
        assert body["appSyncStatus"] == sync_rows
        assert "events" not in body

    def test_admin_dashboard_counts(self, client, admin_headers):
        accounts = [account(), account(email="c@d.com", subscription_status="trial", grandfathered=False),
                    account(email="e@f.com", grandfathered=True)]
        with patch.object(account_store, "list_accounts", new_callable=AsyncMock, return_value=accounts):
            response = client.get("/adminDashboard", headers=admin_headers)
        body = response.json()
        assert body["total"] == 3
        assert body["byStatus"]["active"] == 2
        assert body["byStatus"]["trial"] == 1
        assert body["grandfathered"] == 1


class TestMigrationRoutes:

    def test_run_migration_defaults_to_dry_run(self, client, admin_headers):
        run = AsyncMock(return_value=MigrationReport(dry_run=True))
        with patch("routes.migrations.run_migration", run):
            response = client.get("/runMigration", headers=admin_headers)
        assert response.status_code == 200
        run.assert_awaited_once_with(dry_run=True)
        body = response.json()
        assert body["success"] is True
        assert body["dryRun"] is True
        assert body["fetchErrors"] == []
        assert body["results"]["grandfatheredActive"] == 0

    def test_run_migration_explicit_write(self, client, admin_headers):
        run = AsyncMock(return_value=MigrationReport(dry_run=False))
        with patch("routes.migrations.run_migration", run):
            client.get("/runMigration", params={"dryRun": "false"}, headers=admin_headers)
        run.assert_awaited_once_with(dry_run=False)


class TestUpdateApps:

    def test_requires_session(self, client):
        response = client.post("/api/subscription/update-apps", json={"newApps": ["safetunes"]})
        assert response.status_code == 401

    def test_invalid_token_is_401(self, client):
        response = client.post(
            "/api/subscription/update-apps",
            json={"newApps": ["safetunes"]},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    def test_account_comes_from_session(self, client):
        acct = account(stripe_subscription_id="sub_1")
        token = create_session_token("acc-1")
        update = AsyncMock(return_value={"success": True, "needsReconciliation": []})
        with patch.object(account_store, "get_by_id", new_callable=AsyncMock, return_value=acct) as lookup, \
             patch.object(billing_service, "update_subscription_apps", update):
            response = client.post(
                "/api/subscription/update-apps",
                json={"newApps": ["safetunes", "safereads"], "isYearly": False},
                headers={"Authorization": f"Bearer {token}"},
            )
        assert response.status_code == 200
        lookup.assert_awaited_once_with("acc-1")
        assert update.call_args[0][0].account_id == "acc-1"
        assert update.call_args[0][1] == ["safetunes", "safereads"]


class TestPromoSignup:

    def test_invalid_code_is_400(self, client):
        response = client.post("/api/promo-signup", json={"email": "a@b.com", "promoCode": "NOPE"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid promo code"

    def test_invalid_email_is_400(self, client):
        response = client.post("/api/promo-signup", json={"email": "not-an-email", "promoCode": "DEWITT"})
        assert response.status_code == 400

    def _grant(self, sync_result):
        lifetime = account(subscription_status="lifetime")
        return (
            patch.object(account_store, "grant_lifetime", new_callable=AsyncMock, return_value=(lifetime, True)),
            patch.object(account_store, "record_app_sync_status", new_callable=AsyncMock),
            patch("services.promo_service.sync_app_access", AsyncMock(return_value=sync_result)),
        )

    def test_partial_failure_is_200_with_failed_list(self, client):
        grant, record_sync, sync = self._grant(SyncResult(
            granted=["safetunes", "safetube"],
            errors=[{"app": "safereads", "message": "safereads grantLifetime timed out after 5.0s"}],
        ))
        with grant as grant_mock, record_sync, sync:
            response = client.post("/api/promo-signup", json={"email": "a@b.com", "promoCode": "dewitt"})
        assert response.status_code == 200
        body = response.json()
        assert body["provisioned"] == ["safetunes", "safetube"]
        assert body["failed"] == ["safereads"]
        assert grant_mock.call_args.kwargs["coupon_code"] == "DEWITT"

    def test_all_apps_failing_is_500(self, client):
        errors = [{"app": app, "message": "HTTP 500"} for app in ALL]
        grant, record_sync, sync = self._grant(SyncResult(errors=errors))
        with grant, record_sync, sync:
            response = client.post("/api/promo-signup", json={"email": "a@b.com", "promoCode": "DAWSFRIEND"})
        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "PROVISIONING_FAILED"
        assert [f["app"] for f in body["failed"]] == ALL


class TestStripeWebhookRoute:

    def test_handler_failure_is_500(self, client):
        with patch.object(stripe_webhook_service, "process_webhook", new_callable=AsyncMock,
                          return_value=(False, "Webhook handler failed", {"error": "boom"})):
            response = client.post("/api/stripe/webhook", content=b"{}")
        assert response.status_code == 500

    def test_bad_signature_is_400(self, client):
        with patch.object(stripe_webhook_service, "process_webhook", new_callable=AsyncMock,
                          return_value=(False, "Invalid signature", {"error": "bad"})):
            response = client.post("/api/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
        assert response.status_code == 400

    def test_processed(self, client):
        with patch.object(stripe_webhook_service, "process_webhook", new_callable=AsyncMock,
                          return_value=(True, "Processed", {"handled": True})):
            response = client.post("/api/stripe/webhook", content=b"{}")
        assert response.json() == {"received": True, "message": "Processed"}


class TestRetryProvisionRoute:

    def test_all_failing_is_500(self, client, admin_headers):
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=None), \
             patch.object(account_store, "record_app_sync_status", new_callable=AsyncMock), \
             patch("services.provisioning_retry.with_retry", new_callable=AsyncMock,
                   return_value={"success": False, "error": "HTTP 500", "attempts": 3}), \
             patch("services.provisioning_retry.record_subscription_event", new_callable=AsyncMock):
            response = client.post(
                "/api/admin/retry-provision",
                json={"email": "a@b.com", "apps": ["safetunes"]},
                headers=admin_headers,
            )
        assert response.status_code == 500
        assert response.json()["error_code"] == "PROVISIONING_FAILED"

    def test_unknown_app_is_400(self, client, admin_headers):
        response = client.post(
            "/api/admin/retry-provision",
            json={"email": "a@b.com", "apps": ["safechat"]},
            headers=admin_headers,
        )
        assert response.status_code == 400


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestDeleteUserRoutes:

    def test_delete_user_is_gated(self, client):
        assert client.get("/deleteUser", params={"email": "a@b.com"}).status_code == 401
        assert client.post(
            "/api/admin/delete-user-all", json={"email": "a@b.com", "apps": ["safetunes"]}
        ).status_code == 401

    def test_delete_user(self, client, admin_headers):
        delete = AsyncMock(return_value={"success": True, "userId": "acc-1", "deletedAt": 1})
        with patch.object(account_store, "delete_account", delete):
            response = client.get("/deleteUser", params={"email": " A@B.com"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["userId"] == "acc-1"
        delete.assert_awaited_once_with("a@b.com", reason="Admin deletion")

    def test_delete_unknown_user_is_404(self, client, admin_headers):
        with patch.object(account_store, "delete_account", new_callable=AsyncMock,
                          side_effect=NotFoundError("No account for a@b.com")):
            response = client.get("/deleteUser", params={"email": "a@b.com"}, headers=admin_headers)
        assert response.status_code == 404

    def test_delete_everywhere_partial_failure_is_200(self, client, admin_headers):
        result = SyncResult(revoked=["safetunes"], errors=[{"app": "safereads", "message": "HTTP 500"}])
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=account()), \
             patch("routes.admin.remove_user_from_apps", AsyncMock(return_value=result)) as remove:
            response = client.post(
                "/api/admin/delete-user-all",
                json={"email": "a@b.com", "apps": ["safetunes", "safereads"]},
                headers=admin_headers,
            )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["deleted"] == ["safetunes"]
        assert body["errors"] == [{"app": "safereads", "message": "HTTP 500"}]
        assert remove.call_args[0] == ("a@b.com", ["safetunes", "safereads"], "acc-1")

    def test_delete_everywhere_all_failing_is_500(self, client, admin_headers):
        errors = [{"app": "safetunes", "message": "HTTP 500"}]
        with patch.object(account_store, "get_by_email", new_callable=AsyncMock, return_value=None), \
             patch("routes.admin.remove_user_from_apps", AsyncMock(return_value=SyncResult(errors=errors))):
            response = client.post(
                "/api/admin/delete-user-all",
                json={"email": "a@b.com", "apps": ["safetunes"]},
                headers=admin_headers,
            )
        assert response.status_code == 500
        assert response.json()["error_code"] == "PROVISIONING_FAILED"


class TestPreviewRoute:

    def test_requires_session(self, client):
        response = client.post("/api/subscription/preview", json={"newApps": ["safetunes"]})
        assert response.status_code == 401

    def test_preview_for_session_account(self, client):
        acct = account(stripe_subscription_id="sub_1")
        token = create_session_token("acc-1")
        preview = AsyncMock(return_value={"newPlan": {"monthlyPrice": 4.99}, "proration": None})
        with patch.object(account_store, "get_by_id", new_callable=AsyncMock, return_value=acct), \
             patch.object(billing_service, "preview_subscription_change", preview):
            response = client.post(
                "/api/subscription/preview",
                json={"newApps": ["safetunes"], "isYearly": False},
                headers={"Authorization": f"Bearer {token}"},
            )
        assert response.status_code == 200
        assert response.json()["newPlan"]["monthlyPrice"] == 4.99
        assert preview.call_args[0][1] == ["safetunes"]
        assert preview.call_args.kwargs["is_yearly"] is False


class TestUpdateAppsFailure:

    def test_every_app_failing_is_500_with_billing_details(self, client):
        acct = account(stripe_subscription_id="sub_1")
        token = create_session_token("acc-1")
        error = ProvisioningFailedError(
            "Subscription updated but app access could not be synced",
            [{"app": "safetunes", "message": "HTTP 500"}],
            extra={"newApps": ["safetunes"], "newPriceId": "price_1", "priceChanged": True},
        )
        with patch.object(account_store, "get_by_id", new_callable=AsyncMock, return_value=acct), \
             patch.object(billing_service, "update_subscription_apps", new_callable=AsyncMock, side_effect=error):
            response = client.post(
                "/api/subscription/update-apps",
                json={"newApps": ["safetunes"]},
                headers={"Authorization": f"Bearer {token}"},
            )
        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "PROVISIONING_FAILED"
        assert body["newApps"] == ["safetunes"]
        assert body["priceChanged"] is True
        assert body["failed"][0]["app"] == "safetunes"
