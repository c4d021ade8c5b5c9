"""Grandfather migration operator endpoints (admin key).

GET /runMigration?dryRun=true|false  - full run; dry run is the default
GET /migrationReport                 - grandfathering summary + last run
GET /migrateUser?email&dryRun        - single-email migration
"""
from fastapi import APIRouter, Depends, Query
import logging

from middleware import require_admin_key
from services.account_store import account_store
from services.migration_runner import migrate_user_by_email, run_migration
from utils.validation import normalize_email

logger = logging.getLogger(__name__)
router = APIRouter(tags=["migrations"], dependencies=[Depends(require_admin_key)])


@router.get("/runMigration")
async def run_migration_endpoint(dry_run: bool = Query(True, alias="dryRun")):
    report = await run_migration(dry_run=dry_run)
    return {"success": True, **report.model_dump(by_alias=True)}


@router.get("/migrationReport")
async def migration_report():
    return await account_store.migration_report()


@router.get("/migrateUser")
async def migrate_user(email: str = Query(...), dry_run: bool = Query(False, alias="dryRun")):
    return await migrate_user_by_email(normalize_email(email), dry_run=dry_run)
