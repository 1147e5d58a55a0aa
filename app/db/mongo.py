from contextlib import contextmanager

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from app.core.config import settings
from app.core.logging import get_logger
from app.utils.payment_validation import PersistenceError

logger = get_logger(__name__)


class MongoDatabase:
    """MongoDB connection manager."""

    client: AsyncIOMotorClient = None
    db: AsyncIOMotorDatabase = None

mongodb = MongoDatabase()

async def connect_to_mongo():
    """Connect to MongoDB."""
    mongodb.client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    mongodb.db = mongodb.client[settings.DATABASE_NAME]

    await create_indexes()
    logger.info("Connected to MongoDB: %s", settings.DATABASE_NAME)

async def close_mongo_connection():
    """Disconnect from MongoDB."""
    if mongodb.client is not None:
        mongodb.client.close()
        logger.info("Disconnected from MongoDB")

async def create_indexes():
    """Create database indexes."""
    # Payment indexes
    await mongodb.db["payments"].create_index([("client_id", 1), ("document_id", 1)])
    await mongodb.db["payments"].create_index("document_id")
    await mongodb.db["payments"].create_index([("client_id", 1), ("payment_date", 1)])
    await mongodb.db["payments"].create_index(
        [("migrated_from_document_id", 1), ("migration_index", 1)]
    )

    # Invoice indexes
    await mongodb.db["invoices"].create_index("client_id")
    await mongodb.db["invoices"].create_index("document_number")

    # Client indexes
    await mongodb.db["clients"].create_index("name")

def get_db() -> AsyncIOMotorDatabase:
    """Get database instance."""
    return mongodb.db

@contextmanager
def translate_store_errors(operation: str):
    """Re-raise driver failures as PersistenceError."""
    try:
        yield
    except PyMongoError as exc:
        logger.error("Store operation %s failed", operation, exc_info=True)
        raise PersistenceError(operation, str(exc)) from exc
