from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "partner_commissions")
# Upper bound for every store round trip; timeouts surface as TransientStoreFailure
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))


def create_client(mongo_url: str = None) -> AsyncIOMotorClient:
    """Create a Motor client with bounded timeouts and tz-aware datetimes."""
    return AsyncIOMotorClient(
        mongo_url or MONGO_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
        timeoutMS=MONGO_TIMEOUT_MS,
    )


class Database:
    """Owns the Motor connection; services receive the handle from get_db()."""

    def __init__(self, mongo_url: str = None, db_name: str = None):
        self.mongo_url = mongo_url or MONGO_URL
        self.db_name = db_name or DB_NAME
        self.client: AsyncIOMotorClient = None
        self.db = None

    async def connect(self):
        try:
            self.client = create_client(self.mongo_url)
            self.db = self.client[self.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.db_name}")

            await create_indexes(self.db)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db


async def create_indexes(db):
    """Create MongoDB indexes; ledger entry uniqueness rides on _id."""
    try:
        await db.partners.create_index("partner_id", unique=True)
        await db.partners.create_index("owner_user_id")

        # Ledger entries are keyed by _id = "{invoice_id}_{partner_id}"
        await db.commission_ledger.create_index([("partner_id", 1), ("created_at", -1)])
        await db.commission_ledger.create_index([("status", 1), ("created_at", 1)])
        await db.commission_ledger.create_index("stripe_invoice_id")

        await db.conversion_tracking.create_index("conversion_id", unique=True)
        await db.conversion_tracking.create_index([("partner_id", 1), ("created_at", -1)])
        await db.conversion_tracking.create_index([("customer_uid", 1), ("status", 1)])
        await db.conversion_tracking.create_index("stripe_subscription_id", sparse=True)
        await db.conversion_tracking.create_index("stripe_customer_id", sparse=True)

        await db.partner_codes.create_index("code", unique=True)
        await db.partner_codes.create_index("partner_id")

        # Stripe webhook idempotency - duplicate event_id must not process twice
        await db.stripe_events.create_index("event_id", unique=True)

        await db.payout_reports.create_index("report_month", unique=True)

        await db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
        await db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
        logger.info("MongoDB indexes created/verified")
    except Exception as e:
        # Indexes may already exist with different options, log but don't fail
        logger.warning(f"Index creation note: {e}")


# Process-wide connection owner, wired up by the FastAPI lifespan
database = Database()


async def get_db():
    """FastAPI dependency returning the connected database handle."""
    return database.get_db()


@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.partners.find_one(...)
    """
    client = None
    try:
        client = create_client()
        db = client[DB_NAME]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {DB_NAME}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
