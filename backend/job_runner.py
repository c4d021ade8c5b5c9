"""
Shared job runner for scheduled background jobs.
Used by server (scheduler). Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_scheduled_migration():
    """Periodic non-dry grandfather migration. Upgrade-only, so repeated runs are safe."""
    try:
        from services.migration_runner import run_migration
        report = await run_migration(dry_run=False)
        results = report.results
        logger.info(
            f"Scheduled migration completed: {results.migrated} migrated, "
            f"{len(results.errors)} errors, {len(report.fetch_errors)} fetch errors"
        )
        return {"message": report.summary, "count": results.migrated}
    except Exception as e:
        logger.error(f"Scheduled migration job failed: {e}")
        raise
