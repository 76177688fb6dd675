"""
Database Helper Functions

MongoDB connection plus a few helpers used across the backend.
The connection is configured from DATABASE_URL and DATABASE_NAME; when either
is missing `db` stays None and endpoints report the store as unavailable.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything stored is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for `value`, or None when it isn't a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Make a stored document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if doc is None:
        return None
    d = {}
    for key, value in doc.items():
        if key == "_id":
            d["id"] = str(value)
        else:
            d[key] = _plain(value)
    return d


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with timestamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List[tuple]] = None) -> List[dict]:
    """Fetch documents from a collection as serialized dicts."""
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def ensure_indexes(database) -> None:
    """Create the unique indexes the workflows rely on. Safe to call repeatedly."""
    database["user"].create_index("email", unique=True)
    database["pending_user"].create_index("email", unique=True)
    # one order per Stripe checkout session; orders without a session are not indexed
    database["order"].create_index("payment_info.session_id", unique=True, sparse=True)
