"""
Database helpers

MongoDB access for the storefront. One collection per schema in schemas.py;
collection names are the lowercase schema names ("product", "order",
"order_item", ...).
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Optional[MongoClient]:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, running without a database")
        return None
    return MongoClient(settings.database_url)


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Union[str, ObjectId]) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def session_kwargs(session) -> dict:
    return {"session": session} if session is not None else {}


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = {k: v for k, v in data.items() if v is not None}
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = db[collection_name].insert_one(data_dict, **session_kwargs(session))
    return str(result.inserted_id)


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Turn a raw Mongo document into a JSON-friendly dict with a string "id"."""
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    # only orders that reached the gateway carry a checkout id
    db["order"].create_index([("mpesa_checkout_id", ASCENDING)], unique=True, sparse=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order_item"].create_index([("order_id", ASCENDING)])
    db["product"].create_index([("category", ASCENDING)])
    db["otp_code"].create_index([("email", ASCENDING), ("type", ASCENDING)])
    db["contact"].create_index([("email", ASCENDING)])
    db["contact_reply"].create_index([("contact_id", ASCENDING)])
    db["cart_item"].create_index([("user_id", ASCENDING)])
