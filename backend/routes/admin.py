"""Admin reconciliation routes (x-admin-key).

POST /api/admin/retry-provision      - re-grant apps with retries
GET  /api/admin/retry-provision      - where does this email exist across the apps
GET  /api/admin/events               - subscription event history for an email
POST /api/admin/delete-user-all      - delete the user from the given apps
"""
from fastapi import APIRouter, Depends, Query
import logging

from models import DeleteUserAllRequest, RetryProvisionRequest
from middleware import require_admin_key
from services.account_store import account_store
from services.entitlement_sync import remove_user_from_apps
from services.provisioning_retry import check_app_presence, retry_provision
from utils.audit import get_events_for_email
from utils.errors import ProvisioningFailedError
from utils.validation import normalize_email

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.post("/retry-provision")
async def retry_provision_endpoint(request: RetryProvisionRequest):
    return await retry_provision(str(request.email), request.apps)


@router.get("/retry-provision")
async def app_presence(email: str = Query(...)):
    return await check_app_presence(email)


@router.get("/events")
async def subscription_events(email: str = Query(...), limit: int = Query(50, ge=1, le=500)):
    return {"events": await get_events_for_email(normalize_email(email), limit=limit)}


@router.post("/delete-user-all")
async def delete_user_all(request: DeleteUserAllRequest):
    email = normalize_email(str(request.email))
    account = await account_store.get_by_email(email)
    result = await remove_user_from_apps(email, request.apps, account.account_id if account else None)
    if result.errors and not result.revoked:
        raise ProvisioningFailedError(f"Failed to delete {email} on every app", result.errors)
    return {"success": not result.errors, "email": email, "deleted": result.revoked, **result.to_dict()}
