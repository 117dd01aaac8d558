"""
MongoDB database connection using Motor (async driver).

Provides database instance and connection management with lifespan events.
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from custody.config.settings import get_settings

logger = logging.getLogger(__name__)

# Global database client and database instances
_client: AsyncIOMotorClient | None = None
_database: AsyncIOMotorDatabase | None = None


async def connect_to_mongodb() -> None:
    """
    Connect to MongoDB database.

    This function is called during application startup and by Celery workers.
    Creates a connection pool, tests the connection and ensures indexes.

    Raises:
        Exception: If connection to MongoDB fails
    """
    global _client, _database

    if _database is not None:
        return

    try:
        current_settings = get_settings()

        logger.info("Connecting to MongoDB at %s", current_settings.MONGODB_URL)

        _client = AsyncIOMotorClient(
            current_settings.MONGODB_URL,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,  # 5 seconds timeout
            maxPoolSize=10,
            minPoolSize=1,
        )

        _database = _client[current_settings.MONGODB_DB_NAME]

        # Test the connection
        await _client.admin.command("ping")

        await _create_indexes(_database)

        logger.info(
            "Successfully connected to MongoDB database: %s",
            current_settings.MONGODB_DB_NAME,
        )

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {str(e)}")
        raise


async def _create_indexes(db: AsyncIOMotorDatabase) -> None:
    """
    Create indexes for custody collections.

    Index failures are logged and skipped so the app can still start.
    """
    try:
        await db["agent_wallets"].create_index(
            "owner_address",
            unique=True,
            partialFilterExpression={"status": "active"},
            name="one_active_agent_wallet_per_owner"
        )
        await db["agent_wallets"].create_index("public_address", unique=True)

        await db["trading_bots"].create_index([("owner_address", 1), ("deleted_at", 1)])

        await db["subaccounts"].create_index(
            [("agent_wallet_id", 1), ("index", 1)],
            unique=True
        )
        await db["subaccounts"].create_index("trading_bot_id")

        await db["lifecycle_operations"].create_index([("target_type", 1), ("target_id", 1), ("status", 1)])
        await db["lifecycle_operations"].create_index([("status", 1), ("updated_at", 1)])
        await db["lifecycle_operations"].create_index("owner_address")

        await db["reconciliation_events"].create_index([("trading_bot_id", 1), ("detected_at", -1)])
        await db["orphaned_subaccounts"].create_index(
            [("agent_wallet_id", 1), ("index", 1)],
            unique=True
        )

        logger.info(f"Indexes verified for {db.name}")
    except Exception as e:
        error_msg = str(e)
        # Permission errors are expected in some environments - log as debug
        if "not authorized" in error_msg.lower() or "unauthorized" in error_msg.lower():
            logger.debug(f"Index creation skipped for {db.name} (permission issue): {e}")
        else:
            logger.warning(f"Failed to create indexes for {db.name}: {e}")


async def close_mongodb_connection() -> None:
    """
    Close MongoDB database connection.

    This function is called during application shutdown.
    Closes all connections in the pool.
    """
    global _client, _database

    if _client:
        logger.info("Closing MongoDB connection")
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def get_database() -> AsyncIOMotorDatabase:
    """
    Get MongoDB database instance.

    Returns:
        AsyncIOMotorDatabase: MongoDB database instance

    Raises:
        RuntimeError: If database is not connected
    """
    if _database is None:
        raise RuntimeError(
            "Database is not connected. Call connect_to_mongodb() first."
        )
    return _database


# Convenience alias
get_db = get_database
