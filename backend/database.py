from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for account lookups, event history and idempotency."""
        try:
            # Accounts - one per normalized email
            try:
                await self.db.accounts.create_index("email", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.accounts.create_index("account_id", unique=True)
            await self.db.accounts.create_index("stripe_customer_id", sparse=True)
            await self.db.accounts.create_index("stripe_subscription_id", sparse=True)
            await self.db.accounts.create_index("subscription_status")

            # Subscription events - per-account timeline, type filters, stripe dedup lookups
            await self.db.subscription_events.create_index([("email", 1), ("timestamp", -1)])
            await self.db.subscription_events.create_index([("event_type", 1), ("timestamp", -1)])
            await self.db.subscription_events.create_index("stripe_event_id", sparse=True)

            # Per-app sync state
            try:
                await self.db.app_sync_status.create_index([("email", 1), ("app", 1)], unique=True)
            except Exception:
                pass
            await self.db.app_sync_status.create_index("sync_status")

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass

            await self.db.migration_runs.create_index([("started_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

