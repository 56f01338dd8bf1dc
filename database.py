"""
MongoDB access for the book marketplace

The connection is configured from DATABASE_URL / DATABASE_NAME. When they are
not set, `db` stays None and endpoints that need storage answer 503.
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import HTTPException
from pydantic import BaseModel
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookswap")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info("Using MongoDB database %s", DATABASE_NAME)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["book"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("buyer_id")
    database["order"].create_index("seller_id")
    database["order"].create_index("status")
    # One thread per order; concurrent creators rely on this to detect the loser.
    database["chatthread"].create_index("order_id", unique=True)
    database["chatthread"].create_index([("buyer_id", ASCENDING), ("updated_at", DESCENDING)])
    database["chatthread"].create_index([("seller_id", ASCENDING), ("updated_at", DESCENDING)])
    database["chatmessage"].create_index([("thread_id", ASCENDING), ("created_at", ASCENDING)])


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=503, detail={"code": "unavailable", "message": "Database not available"})
    return db


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utc_now()
    data_dict.setdefault("created_at", now)
    data_dict.setdefault("updated_at", now)
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def object_id(id_str: str, what: str = "Record") -> ObjectId:
    """Parse a path/body id; anything malformed is reported as a missing record."""
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise NotFound(f"{what} not found")
    return ObjectId(id_str)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    out.pop("password_hash", None)
    return out


def utc_now() -> datetime:
    """Current UTC time truncated to the millisecond precision MongoDB stores."""
    now = datetime.utcnow()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)
