"""
MongoDB access helpers.

``db`` is None when DATABASE_URL / DATABASE_NAME are not configured; the API
answers 503 for data routes in that case. Services take the database as a
constructor argument so tests can hand them an in-memory one.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import NotFound
import settings

client = None
db = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    client = MongoClient(settings.DATABASE_URL)
    db = client[settings.DATABASE_NAME]


def ensure_indexes(database) -> None:
    # (job, period) unique backs the once-per-month claim in points.py
    database["jobrun"].create_index([("job", ASCENDING), ("period", ASCENDING)], unique=True)
    database["inventory"].create_index("agency_id", unique=True)
    for role in ("user", "agency", "volunteer", "admin"):
        database[role].create_index("email", unique=True)
    database["request"].create_index([("agency_id", ASCENDING), ("status", ASCENDING)])
    database["request"].create_index("user_id")
    database["request"].create_index("volunteer_id")
    database["request"].create_index("images.phash")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: Any, entity: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise NotFound(f"{entity} not found")
    return ObjectId(value)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, database=None):
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, list):
            doc[k] = [serialize_doc(i) if isinstance(i, dict) else (str(i) if isinstance(i, ObjectId) else i) for i in v]
        elif isinstance(v, dict):
            doc[k] = serialize_doc(v)
    return doc
