"""
MongoDB access for the store.

A module-level client is opened when DATABASE_URL and DATABASE_NAME are set.
Route handlers receive the database through the ``get_db`` dependency so tests
can swap in another one.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

import settings
from errors import ConfigurationError, NotFoundError

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    _client = MongoClient(settings.DATABASE_URL)
    db = _client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise ConfigurationError("Database not available")
    return db


def ensure_indexes(database: Database) -> None:
    """One cart per user: concurrent lazy upserts collide on this index instead of inserting twice."""
    database["cart"].create_index("user_id", unique=True)


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId], what: str = "Document") -> ObjectId:
    """Parse an id coming from a URL or a stored reference; malformed ids are simply not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now()
    data_dict["updated_at"] = now()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    newest_first: bool = False,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort("created_at", -1)
    return list(cursor)


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc
