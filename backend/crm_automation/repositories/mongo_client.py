"""MongoDB Client - Connection and Collection Management"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from ..utils.logger import get_logger
from ..utils.time import to_storage

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def set_database(database: Optional[Database]) -> None:
    """Install a database handle (tests hand in a mongomock database)"""
    global _database
    _database = database


def get_collection(name: str, database: Optional[Database] = None) -> Collection:
    """Get a collection from the given database or the application one"""
    db = database if database is not None else get_database()
    return db[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def to_mongo(value: Any) -> Any:
    """
    Convert a model or value into a BSON-ready structure

    Enums become their values and datetimes become naive UTC so that
    range filters compare consistently with what the driver returns.
    """
    if isinstance(value, BaseModel):
        return to_mongo(value.model_dump())
    if isinstance(value, dict):
        return {key: to_mongo(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_mongo(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_storage(value)
    return value


def create_indexes(database: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = database if database is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    triggers = db["triggers"]
    triggers.create_index("trigger_id", unique=True)
    triggers.create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    triggers.create_index([("user_id", ASCENDING), ("event_source", ASCENDING), ("status", ASCENDING)])

    executions = db["trigger_executions"]
    executions.create_index("execution_id", unique=True)
    executions.create_index([("trigger_id", ASCENDING), ("started_at", DESCENDING)])
    executions.create_index([("user_id", ASCENDING), ("started_at", DESCENDING)])
    executions.create_index([("user_id", ASCENDING), ("status", ASCENDING)])

    events = db["realtime_events"]
    events.create_index("event_id", unique=True)
    events.create_index([("user_id", ASCENDING), ("received_at", DESCENDING)])
    events.create_index([("user_id", ASCENDING), ("source_type", ASCENDING), ("received_at", DESCENDING)])

    flows = db["flow_definitions"]
    flows.create_index("flow_id", unique=True)
    flows.create_index([("user_id", ASCENDING), ("status", ASCENDING)])

    flow_versions = db["flow_versions"]
    flow_versions.create_index("version_id", unique=True)
    flow_versions.create_index([("flow_id", ASCENDING), ("version", DESCENDING)], unique=True)

    instances = db["flow_instances"]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("flow_id", ASCENDING), ("status", ASCENDING)])
    instances.create_index([("flow_id", ASCENDING), ("contact_id", ASCENDING), ("status", ASCENDING)])
    instances.create_index([("status", ASCENDING), ("waiting_until", ASCENDING)])

    campaigns = db["drip_campaigns"]
    campaigns.create_index("campaign_id", unique=True)
    campaigns.create_index([("user_id", ASCENDING), ("status", ASCENDING)])

    runs = db["drip_runs"]
    runs.create_index("run_id", unique=True)
    runs.create_index([("campaign_id", ASCENDING), ("contact_id", ASCENDING)], unique=True)
    runs.create_index([("status", ASCENDING), ("next_step_scheduled_at", ASCENDING)])
    runs.create_index([("campaign_id", ASCENDING), ("enrolled_at", ASCENDING)])
    runs.create_index("locked_until")

    contacts = db["contacts"]
    contacts.create_index([("user_id", ASCENDING), ("contact_id", ASCENDING)], unique=True)

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
