from typing import Optional

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from settings import settings

logger = structlog.get_logger(__name__)


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    # MongoClient connects lazily, so this is safe at import time
    client = MongoClient(url or settings.DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client[name or settings.DATABASE_NAME]


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["business"].create_index([("owner_id", ASCENDING)])
    database["business"].create_index([("created_at", DESCENDING)])
    logger.info("indexes_ensured", database=database.name)


db = connect()
