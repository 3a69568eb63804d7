"""MongoDB Client - Connection and Collection Management"""
from datetime import datetime
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure
from pydantic import BaseModel

from ..config.settings import settings
from ..utils.logger import get_logger

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
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        # Test connection
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


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    db = get_database()
    return db[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def to_document(model: BaseModel, id_value: str) -> Dict[str, Any]:
    """
    Serialize a model for storage

    Top-level datetimes stay BSON dates so range queries (fire_at,
    next_email_at, lease_until) compare chronologically.
    """
    doc = model.model_dump(mode="json")
    for field_name in type(model).model_fields:
        value = getattr(model, field_name)
        if isinstance(value, datetime):
            doc[field_name] = value
    doc["_id"] = id_value
    return doc


def from_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip Mongo's _id before model validation"""
    if doc is None:
        return None
    doc.pop("_id", None)
    return doc


def create_indexes() -> None:
    """Create all required indexes"""
    db = get_database()
    logger.info("Creating MongoDB indexes...")

    # Automations collection
    automations = db["automations"]
    automations.create_index("automation_id", unique=True)
    automations.create_index([("tenant_id", ASCENDING), ("kind", ASCENDING), ("enabled", ASCENDING)])
    automations.create_index([("tenant_id", ASCENDING), ("scope_stage_id", ASCENDING)])

    # Drip campaigns collection
    campaigns = db["drip_campaigns"]
    campaigns.create_index("campaign_id", unique=True)
    campaigns.create_index([("tenant_id", ASCENDING), ("status", ASCENDING)])
    campaigns.create_index([("tenant_id", ASCENDING), ("target_stage_id", ASCENDING)])

    # Drip subscriptions collection
    subscriptions = db["drip_subscriptions"]
    subscriptions.create_index("subscription_id", unique=True)
    subscriptions.create_index(
        [("campaign_id", ASCENDING), ("subject_id", ASCENDING)], unique=True
    )
    subscriptions.create_index([("status", ASCENDING), ("next_email_at", ASCENDING)])
    subscriptions.create_index([("tenant_id", ASCENDING), ("subject_id", ASCENDING)])

    # Due items collection
    due_items = db["due_items"]
    due_items.create_index("due_item_id", unique=True)
    due_items.create_index(
        [("rule_id", ASCENDING), ("subject_id", ASCENDING), ("occurrence_key", ASCENDING)],
        unique=True
    )
    due_items.create_index([("status", ASCENDING), ("fire_at", ASCENDING)])
    due_items.create_index([("tenant_id", ASCENDING), ("subject_id", ASCENDING)])

    # Execution claims collection (_id is the idempotency key)
    claims = db["execution_claims"]
    claims.create_index([("status", ASCENDING), ("lease_until", ASCENDING)])

    # Execution log collection
    executions = db["execution_log"]
    executions.create_index("execution_id", unique=True)
    executions.create_index(
        "idempotency_key",
        unique=True,
        partialFilterExpression={"outcome": "SUCCESS"},
        name="idempotency_key_success_unique"
    )
    executions.create_index([("tenant_id", ASCENDING), ("subject_id", ASCENDING), ("timestamp", DESCENDING)])
    executions.create_index([("tenant_id", ASCENDING), ("rule_id", ASCENDING), ("timestamp", DESCENDING)])
    executions.create_index("correlation_id")

    # Collaborator views
    db["subjects"].create_index("subject_id", unique=True)
    db["subjects"].create_index([("tenant_id", ASCENDING), ("project_type", ASCENDING), ("stage_id", ASCENDING)])
    db["stages"].create_index([("tenant_id", ASCENDING), ("stage_id", ASCENDING)], unique=True)
    db["tenants"].create_index("tenant_id", unique=True)
    db["message_templates"].create_index("template_id", unique=True)

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
