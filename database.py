"""
Database access

A single MongoDB database handle shared by the whole app. Collections are
named after the lowercase schema class (Product -> "product").
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

import config
from errors import NotFoundError, StoreError

logger = logging.getLogger(__name__)

COLLECTIONS = ("product", "order", "user", "notification", "counter")

db = None
if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StoreError("Database not configured", status_code=500)
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: str, what: str = "Resource") -> ObjectId:
    """Parse an id from a URL or payload; malformed ids read as missing."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(mode="json")
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort=None, skip: int = 0, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(database, collection_name: str, filter_dict: dict, page: int, limit: int,
             sort=None):
    """Return (documents, pagination) for list endpoints."""
    limit = max(1, min(limit, config.MAX_PAGE_SIZE))
    page = max(1, page)
    total = database[collection_name].count_documents(filter_dict)
    docs = get_documents(
        database,
        collection_name,
        filter_dict,
        sort=sort or [("created_at", DESCENDING)],
        skip=(page - 1) * limit,
        limit=limit,
    )
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": (total + limit - 1) // limit,
    }
    return [to_dict(d) for d in docs], pagination


def next_sequence(database, name: str) -> int:
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def generate_order_number(database) -> str:
    """Sequential per-day order number, e.g. ORD-20251003-0001."""
    today = utcnow().strftime("%Y%m%d")
    seq = next_sequence(database, f"order-{today}")
    return f"ORD-{today}-{seq:04d}"


def ensure_indexes(database) -> None:
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("payment.reference", unique=True)
    database["order"].create_index("payment.references")
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["product"].create_index("slug", unique=True)
    database["product"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database["user"].create_index("email", unique=True)
    database["user"].create_index("token_hash", sparse=True)
    database["notification"].create_index(
        [("recipient_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)]
    )
    logger.info("Database indexes ensured")
