"""Stripe Webhook Service - bundle subscription events to entitlements.

Key Principles:
1. Signature verification: events must be signed with STRIPE_WEBHOOK_SECRET
2. Idempotency: an event id is processed once (stripe_events collection)
3. Store first, then entitlements: the central account reflects billing even if an app push fails
4. Only subscriptions that carry bundle/apps metadata are acted on; per-app legacy
   subscriptions are handled by the apps themselves

Events Handled:
- checkout.session.completed      grant the purchased apps
- customer.subscription.updated   sync apps from previous metadata, re-grant, or revoke on canceled/unpaid
- customer.subscription.deleted   revoke
- invoice.payment_failed          mark the account past_due
"""
import stripe
import os
import json
import logging
from typing import Dict, Any, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import AccountRecord, SubscriptionEventType, SubscriptionStatus, SyncStatus, now_ms
from services.account_store import account_store
from services.billing_service import grandfather_updates_for, parse_apps_from_metadata
from services.entitlement_sync import BillingRefs, SyncResult, sync_app_access

logger = logging.getLogger(__name__)

_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key

# Stripe subscription.status -> account subscription_status
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIAL.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "unpaid": SubscriptionStatus.CANCELED.value,
    "incomplete": SubscriptionStatus.INCOMPLETE.value,
    "incomplete_expired": SubscriptionStatus.EXPIRED.value,
}

REVOKING_STRIPE_STATES = ("canceled", "unpaid")


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _is_bundle(metadata: Optional[Dict[str, Any]]) -> bool:
    metadata = metadata or {}
    return metadata.get("bundle") == "true" or bool(metadata.get("apps"))


def _period_end_ms(subscription: Dict[str, Any]) -> Optional[int]:
    """current_period_end (seconds) as epoch ms; newer API versions carry it on the item."""
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = (subscription.get("items") or {}).get("data") or []
        period_end = items[0].get("current_period_end") if items else None
    return int(period_end) * 1000 if period_end else None


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


class StripeWebhookService:
    """Stripe webhook handler with idempotency."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                if not signature:
                    return False, "Missing stripe-signature header", None
                event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
            else:
                # Development mode - parse without verification
                event = stripe.Event.construct_from(json.loads(payload), stripe.api_key)
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        except stripe.error.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s", event_id, event_type)

        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created_at": now_ms(),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
        }
        if existing:
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": "FAILED", "processed_at": now_ms(), "error": str(e)}},
            )
            # Not PROCESSED: Stripe's retry will run it again
            return False, "Webhook handler failed", {"error": str(e), "event_id": event_id}

        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {"status": "PROCESSED", "processed_at": now_ms()}},
        )
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s", event_id, event_type)
        return True, "Processed", result

    async def _handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_payment_failed,
        }
        handler = handlers.get(event.get("type"))
        if handler is None:
            logger.info(f"Unhandled event type: {event.get('type')}")
            return {"handled": False}
        return await handler(event)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _customer_email(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        customer = stripe.Customer.retrieve(customer_id)
        return customer.get("email")

    async def _resolve_account(
        self,
        email: Optional[str],
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> Optional[AccountRecord]:
        return await account_store.get_by_stripe_ids(
            stripe_subscription_id=subscription_id,
            stripe_customer_id=customer_id,
            email=email,
        )

    async def _record_sync(self, email: str, sync: SyncResult) -> None:
        for app in sync.granted + sync.revoked:
            await account_store.record_app_sync_status(email, app, SyncStatus.SYNCED)
        for error in sync.errors:
            await account_store.record_app_sync_status(email, error["app"], SyncStatus.FAILED, error["message"])
        if sync.errors:
            logger.error(f"App sync for {email} needs reconciliation: {sync.errors}")

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_checkout_completed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
        customer_id = _id_of(session.get("customer"))
        subscription_id = _id_of(session.get("subscription"))

        if not _is_bundle(metadata) or not email:
            logger.info(f"Checkout {session.get('id')} is not a bundle checkout - skipping")
            return {"handled": False}

        apps = parse_apps_from_metadata(metadata)
        account = await self._resolve_account(email, customer_id, subscription_id)
        updates: Dict[str, Any] = {
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "entitled_apps": apps,
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
        }
        if account is None:
            account, _ = await account_store.create_account(email, name=(session.get("customer_details") or {}).get("name"))
        account = await account_store.apply_billing_update(
            account,
            {k: v for k, v in updates.items() if v is not None},
            SubscriptionEventType.SUBSCRIPTION_UPDATED,
            stripe_event_id=event.get("id"),
            event_data={"source": "checkout.session.completed", "apps": apps},
        ) or account

        # Fresh purchase: set every purchased app regardless of prior state
        sync = await sync_app_access(
            account.email, apps, [],
            BillingRefs(account.account_id, customer_id, subscription_id),
        )
        await self._record_sync(account.email, sync)
        return {"handled": True, "email": account.email, **sync.to_dict()}

    async def _handle_subscription_updated(self, event: Dict[str, Any]) -> Dict[str, Any]:
        subscription = event["data"]["object"]
        metadata = subscription.get("metadata") or {}
        if not _is_bundle(metadata):
            return {"handled": False}

        customer_id = _id_of(subscription.get("customer"))
        subscription_id = subscription.get("id")
        account = await self._resolve_account(None, customer_id, subscription_id)
        email = account.email if account else self._customer_email(customer_id)
        if not email:
            logger.warning(f"No email for subscription {subscription_id} - skipping")
            return {"handled": False}
        if account is None:
            account, _ = await account_store.create_account(email)

        stripe_status = subscription.get("status")
        new_apps = parse_apps_from_metadata(metadata)
        updates: Dict[str, Any] = {
            "subscription_status": STRIPE_STATUS_MAP.get(stripe_status, account.subscription_status),
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
        }
        period_end = _period_end_ms(subscription)
        if period_end:
            updates["subscription_ends_at"] = period_end

        if stripe_status == "active":
            updates["entitled_apps"] = new_apps
        updates = {k: v for k, v in updates.items() if v is not None}
        if stripe_status == "active":
            updates.update(grandfather_updates_for(account, new_apps))

        await account_store.apply_billing_update(
            account,
            updates,
            SubscriptionEventType.SUBSCRIPTION_UPDATED,
            stripe_event_id=event.get("id"),
            event_data={"source": "customer.subscription.updated", "stripe_status": stripe_status},
        )

        refs = BillingRefs(account.account_id, customer_id, subscription_id)
        if stripe_status == "active":
            previous_attributes = (event.get("data") or {}).get("previous_attributes") or {}
            if previous_attributes.get("metadata"):
                # App selection changed: grant added apps, revoke removed ones
                previous_apps = parse_apps_from_metadata(previous_attributes["metadata"])
            else:
                previous_apps = []
            sync = await sync_app_access(email, new_apps, previous_apps, refs)
        elif stripe_status in REVOKING_STRIPE_STATES:
            sync = await sync_app_access(email, [], new_apps, refs)
        else:
            return {"handled": True, "email": email}

        await self._record_sync(email, sync)
        return {"handled": True, "email": email, **sync.to_dict()}

    async def _handle_subscription_deleted(self, event: Dict[str, Any]) -> Dict[str, Any]:
        subscription = event["data"]["object"]
        metadata = subscription.get("metadata") or {}
        if not _is_bundle(metadata):
            return {"handled": False}

        customer_id = _id_of(subscription.get("customer"))
        subscription_id = subscription.get("id")
        account = await self._resolve_account(None, customer_id, subscription_id)
        email = account.email if account else self._customer_email(customer_id)
        if not email:
            logger.warning(f"No email for deleted subscription {subscription_id} - skipping")
            return {"handled": False}

        apps = parse_apps_from_metadata(metadata)
        if account is not None:
            ended_at = subscription.get("ended_at")
            await account_store.apply_billing_update(
                account,
                {
                    "subscription_status": SubscriptionStatus.CANCELED.value,
                    "subscription_ends_at": int(ended_at) * 1000 if ended_at else now_ms(),
                    "entitled_apps": [a for a in account.entitled_apps if a not in apps],
                },
                SubscriptionEventType.SUBSCRIPTION_UPDATED,
                stripe_event_id=event.get("id"),
                event_data={"source": "customer.subscription.deleted", "revoked_apps": apps},
            )

        sync = await sync_app_access(
            email, [], apps,
            BillingRefs(account.account_id if account else None, customer_id, subscription_id),
        )
        await self._record_sync(email, sync)
        return {"handled": True, "email": email, **sync.to_dict()}

    async def _handle_payment_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        invoice = event["data"]["object"]
        email = invoice.get("customer_email")
        customer_id = _id_of(invoice.get("customer"))
        subscription_id = _id_of(invoice.get("subscription"))
        logger.info(f"Payment failed for {email}, invoice: {invoice.get('id')}")

        account = await self._resolve_account(email, customer_id, subscription_id)
        if account is None:
            return {"handled": False}
        if account.subscription_status == SubscriptionStatus.LIFETIME.value:
            return {"handled": False}

        await account_store.apply_billing_update(
            account,
            {"subscription_status": SubscriptionStatus.PAST_DUE.value},
            SubscriptionEventType.PAYMENT_FAILED,
            stripe_event_id=event.get("id"),
            event_data={"invoice_id": invoice.get("id"), "attempt_count": invoice.get("attempt_count")},
        )
        return {"handled": True, "email": account.email}


stripe_webhook_service = StripeWebhookService()
