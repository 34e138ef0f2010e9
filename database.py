"""
MongoDB access for EcoCropShare

A single MongoClient is created per process from DATABASE_URL / DATABASE_NAME.
It is timezone aware, so datetimes read back carry UTC like freshly created ones.
Route handlers receive the database handle through the `get_db` dependency so
tests can swap in an in-memory database.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document with timestamps and return it including its `_id`."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    doc["_id"] = database[collection_name].insert_one(doc).inserted_id
    return doc


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    # one conversation per unordered participant pair
    database["conversation"].create_index("pairKey", unique=True)
    database["conversation"].create_index([("participants", ASCENDING), ("lastMessageDate", DESCENDING)])
    database["message"].create_index([("senderId", ASCENDING), ("receiverId", ASCENDING), ("createdAt", ASCENDING)])
    database["message"].create_index([("receiverId", ASCENDING), ("read", ASCENDING)])
    database["user"].create_index("email", unique=True)
    database["comment"].create_index([("parentType", ASCENDING), ("parentId", ASCENDING)])
    database["history"].create_index([("userId", ASCENDING), ("date", DESCENDING)])
    database["history"].create_index([("partnerId", ASCENDING), ("date", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
