"""
MongoDB access.

One module-level client, created from ``DATABASE_URL``. Routes receive the
database through the ``get_db`` dependency so it can be swapped in tests.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

import settings

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    db = client[settings.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set, data routes will answer 503")


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid id")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def create_document(database: Database, collection_name: str, data: BaseModel) -> str:
    """Insert a schema instance with timestamps and return its id."""
    doc = data.model_dump()
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_document(database: Database, collection_name: str, id_str: str, detail: str = "Not found") -> Dict[str, Any]:
    doc = database[collection_name].find_one({"_id": oid(id_str)})
    if not doc:
        raise HTTPException(status_code=404, detail=detail)
    return doc


def as_utc(value: datetime) -> datetime:
    """Stored datetimes come back naive unless the client is tz aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
