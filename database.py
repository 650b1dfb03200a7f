"""
MongoDB access for StudyReuse.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; every helper that
needs the database goes through get_collection() so that case surfaces as a
500 instead of an AttributeError.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from bson.objectid import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort=None):
    cursor = get_collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _plain(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc):
    """JSON-ready copy of a Mongo document: `_id` becomes `id`, and nested
    datetimes and ObjectIds become strings."""
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return {k: _plain(v) for k, v in doc.items()}


def to_object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(value)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def ensure_indexes():
    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; skipping index creation")
        return
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["item"].create_index([("owner_id", ASCENDING)])
    db["item"].create_index([("created_at", DESCENDING)])
    db["barter"].create_index([("item_id", ASCENDING), ("requester_id", ASCENDING)])
    db["barter"].create_index([("owner_id", ASCENDING)])
    db["order"].create_index([("user_id", ASCENDING)])
    db["order"].create_index([("seller_ids", ASCENDING)])
    db["order"].create_index([("idempotency_key", ASCENDING)], unique=True, sparse=True)
    db["review"].create_index([("item_id", ASCENDING), ("reviewer_id", ASCENDING)], unique=True)
    db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", db.name)
