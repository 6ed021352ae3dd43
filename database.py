"""
MongoDB connection for StackIt

The client is created lazily by pymongo, so importing this module never
blocks on the network. Collection names are the lowercase schema names
(User -> "user", Question -> "question", ...).
"""

import logging
import os
from datetime import datetime, timezone

from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "stackit")

client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a document with timestamps and return its id as a string."""
    target = database if database is not None else db
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    res = target[collection_name].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database) -> None:
    """Create the unique, lookup and TTL indexes the API relies on."""
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["tag"].create_index("name", unique=True)
    database["tag"].create_index("synonyms")
    database["question"].create_index([("created_at", DESCENDING)])
    database["question"].create_index([("score", DESCENDING)])
    database["question"].create_index("tag_ids")
    database["question"].create_index("author_id")
    database["answer"].create_index("question_id")
    database["answer"].create_index("author_id")
    database["comment"].create_index("question_id")
    database["comment"].create_index("answer_id")
    database["notification"].create_index(
        [("recipient_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)]
    )
    database["notification"].create_index("expires_at", expireAfterSeconds=0)
    logger.info("Indexes ensured on database %s", database.name)
