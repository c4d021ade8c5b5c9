from database import database
from models import SubscriptionEvent, SubscriptionEventType
from typing import Optional, Dict, Any, List
import json
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after account states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    return {k: v for k, v in diff.items() if v}

async def record_subscription_event(
    event_type: SubscriptionEventType,
    email: str,
    account_id: Optional[str] = None,
    event_data: Optional[Dict[str, Any]] = None,
    subscription_status: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    error_message: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
) -> str:
    """Append one SubscriptionEvent.

    Args:
        event_type: What happened
        email: Normalized email of the affected account
        account_id: Central account id, when one exists
        event_data: Context serialized to JSON in the stored event
        subscription_status: Status after the change
        stripe_event_id: Stripe event id, used for dedup lookups
        before_state / after_state: When both given, a diff is added to event_data

    Returns the event id, or "" if the write failed.
    """
    try:
        db = database.get_db()

        data = dict(event_data) if event_data else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                data["diff"] = diff

        event = SubscriptionEvent(
            account_id=account_id,
            email=email,
            event_type=event_type,
            event_data=json.dumps(data, default=str) if data else None,
            subscription_status=subscription_status,
            stripe_event_id=stripe_event_id,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            error_message=error_message,
        )

        await db.subscription_events.insert_one(event.model_dump())
        logger.info(f"Subscription event recorded: {event.event_type} for {email}")
        return event.event_id
    except Exception as e:
        logger.error(f"Failed to record subscription event: {e}")
        # Never fail the main operation due to audit failure
        return ""

async def get_events_for_email(email: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent subscription events for an account, newest first."""
    try:
        db = database.get_db()
        cursor = db.subscription_events.find(
            {"email": email},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get subscription events: {e}")
        return []
