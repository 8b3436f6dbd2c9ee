import os
import logging
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional
from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING

from paygate.services.payment.store import DEFAULT_PROVIDER_INDEX

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class Database:
    client: Optional[AsyncIOMotorClient] = None

    @classmethod
    async def connect_db(cls):
        """Connect to MongoDB"""
        mongodb_url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
        cls.client = AsyncIOMotorClient(mongodb_url)
        logger.info("[OK] Connected to MongoDB")

        # Create indexes
        await cls.create_indexes()

    @classmethod
    async def create_indexes(cls):
        """Create database indexes"""
        db = cls.get_db()

        # Provider configuration indexes
        try:
            await db.payment_providers.create_index([("id", ASCENDING)], unique=True)
            await db.payment_providers.create_index(
                [("organizer_id", ASCENDING), ("provider_id", ASCENDING)],
                unique=True
            )
            await db.payment_providers.create_index(
                [("organizer_id", ASCENDING), ("is_active", ASCENDING), ("is_default", ASCENDING)]
            )
            # At most one default provider per organizer
            await db.payment_providers.create_index(
                [("organizer_id", ASCENDING)],
                name=DEFAULT_PROVIDER_INDEX,
                unique=True,
                partialFilterExpression={"is_default": True}
            )
            logger.info("[OK] Created indexes on payment_providers")
        except Exception as e:
            logger.warning("[WARN] Indexes on payment_providers may already exist: %s", e)

        # Payment indexes
        try:
            await db.payments.create_index([("id", ASCENDING)], unique=True)
            await db.payments.create_index([("merchant_trade_no", ASCENDING)], unique=True)
            await db.payments.create_index([("organizer_id", ASCENDING), ("created_at", DESCENDING)])
            await db.payments.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
            logger.info("[OK] Created indexes on payments")
        except Exception as e:
            logger.warning("[WARN] Indexes on payments may already exist: %s", e)

        # Ledger indexes: one entry per provider event
        try:
            await db.payment_transactions.create_index([("id", ASCENDING)], unique=True)
            await db.payment_transactions.create_index(
                [("payment_id", ASCENDING), ("provider_transaction_id", ASCENDING), ("type", ASCENDING)],
                unique=True
            )
            await db.payment_transactions.create_index([("payment_id", ASCENDING), ("sequence", ASCENDING)])
            logger.info("[OK] Created indexes on payment_transactions")
        except Exception as e:
            logger.warning("[WARN] Indexes on payment_transactions may already exist: %s", e)

    @classmethod
    async def close_db(cls):
        """Close MongoDB connection"""
        if cls.client:
            cls.client.close()
            logger.info("[OK] Disconnected from MongoDB")

    @classmethod
    def get_db(cls):
        """Get database instance"""
        if cls.client is None:
            return None
        database_name = os.getenv("DATABASE_NAME", "paygate")
        return cls.client[database_name]


async def get_database():
    """Dependency to get database"""
    return Database.get_db()
