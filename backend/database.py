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
        """Create MongoDB indexes for the billing collections."""
        try:
            # Stripe webhook idempotency ledger - the unique index IS the exactly-once barrier
            await self.db.stripe_events.create_index("event_id", unique=True)
            await self.db.stripe_events.create_index("claimed_at")
            await self.db.stripe_events.create_index([("status", 1), ("claimed_at", -1)])

            # Users - entitlement projection
            await self.db.users.create_index("uid", unique=True)
            await self.db.users.create_index("stripe_customer_id")

            # Customer -> uid links (monotonic), the sweep walks them least recently reconciled first
            await self.db.customer_links.create_index("customer_id", unique=True)
            await self.db.customer_links.create_index("uid")
            await self.db.customer_links.create_index("last_reconciled_at")

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("uid", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
