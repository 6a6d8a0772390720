"""
MongoDB access for the shop backend.

The module-level ``db`` handle is built from DATABASE_URL / DATABASE_NAME and
stays ``None`` when they are not configured. Services never import it
directly; the API hands them a database through ``Depends(get_db)`` so tests
can swap in another one.
"""

import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import StorageUnavailable
from settings import get_settings

logger = logging.getLogger(__name__)

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")

_settings = get_settings()
client: Optional[MongoClient] = None
db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url, tz_aware=True, serverSelectionTimeoutMS=5000)
    db = client[_settings.database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes unless the client is tz-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_object_id(value: Any) -> bool:
    return isinstance(value, ObjectId) or (isinstance(value, str) and bool(OBJECT_ID_RE.match(value)))


def to_object_id(id_str: str) -> Optional[ObjectId]:
    """Parse a 24-char hex key, returning None for anything else."""
    if isinstance(id_str, ObjectId):
        return id_str
    if not is_object_id(id_str):
        return None
    return ObjectId(id_str)


def doc_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = as_utc(v).isoformat()
        elif isinstance(v, dict):
            out[k] = doc_to_json(v)
        elif isinstance(v, list):
            out[k] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


def create_document(database: Database, collection_name: str, data: Dict[str, Any], session=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    kwargs = {"session": session} if session is not None else {}
    result = database[collection_name].insert_one(doc, **kwargs)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List] = None,
    skip: int = 0,
    limit: Optional[int] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["product"].create_index([("product_number", ASCENDING)], unique=True, sparse=True)
    database["product"].create_index([("name", ASCENDING)])
    database["order"].create_index([("buyer.account_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("buyer.phone", ASCENDING)])
    database["account"].create_index([("email", ASCENDING)], unique=True, sparse=True)
    database["account"].create_index([("phone", ASCENDING)], unique=True, sparse=True)
    database["session"].create_index([("token", ASCENDING)], unique=True)
    database["session"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    database["otp"].create_index([("email", ASCENDING), ("verified", ASCENDING)])
    database["otp"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)


@contextmanager
def storage_guard(operation: str):
    """Translate driver failures into StorageUnavailable."""
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as exc:
        logger.error("storage failure during %s: %s", operation, exc)
        raise StorageUnavailable(str(exc)) from exc
