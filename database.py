"""
MongoDB access shared by the API routes.

`db` stays None when DATABASE_URL / DATABASE_NAME are not configured so the app
can still boot and report the problem from /test.
"""
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

import config

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def object_id(value):
    """ObjectId for a 24-hex string id, anything else passes through unchanged."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value
