import logging
import os
from typing import Any

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError
from pymongo.server_api import ServerApi

from buddy_ai.errors import NotConfiguredError

SESSIONS = "math_problem_sessions"
SUBMISSIONS = "math_problem_submissions"

logger = logging.getLogger(__name__)

_client: MongoClient | None = None


def connect(timeout_ms: int = 5000) -> Any:
    global _client
    uri = os.getenv("MONGO_URI")
    db_name = os.getenv("MONGO_DB")

    if not uri:
        raise NotConfiguredError("Session store", "MONGO_URI environment variable is not set")
    if not db_name:
        raise NotConfiguredError("Session store", "MONGO_DB environment variable is not set")

    if _client is None:
        _client = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            server_api=ServerApi('1')
        )
        try:
            _client.admin.command("ping")
        except ServerSelectionTimeoutError as exc:
            _client = None
            raise RuntimeError("Unable to connect to MongoDB") from exc
        logger.info("Connected to MongoDB")

    db = _client[db_name]
    ensure_indexes(db)
    return db


def ensure_indexes(db: Any) -> None:
    try:
        db[SESSIONS].create_index([("created_at", DESCENDING)])
        db[SESSIONS].create_index([("config.difficulty", ASCENDING), ("created_at", DESCENDING)])
        db[SUBMISSIONS].create_index([("session_id", ASCENDING), ("created_at", ASCENDING)])
    except PyMongoError as exc:
        logger.warning("Could not create indexes: %s", exc)
