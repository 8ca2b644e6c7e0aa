"""
MongoDB access helpers.

Each collection is named after the lowercased schema class (see schemas.py).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import get_settings
from errors import OrderNumberExhaustedError

logger = logging.getLogger(__name__)

_settings = get_settings()
# MongoClient connects lazily, so importing this module never blocks on the server
client = MongoClient(_settings.database_url, serverSelectionTimeoutMS=5000)
db = client[_settings.database_name]

REFERENCE_ATTEMPTS = 5


def get_db() -> Database:
    return db


def utc_now() -> datetime:
    # naive UTC, the same shape pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def serialize_doc(doc: Any):
    """Make a Mongo document JSON friendly: string ids, ISO datetimes."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        if doc.tzinfo is None:
            doc = doc.replace(tzinfo=timezone.utc)
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utc_now()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def insert_with_reference(
    database: Database,
    collection_name: str,
    doc: Dict[str, Any],
    field: str,
    generate: Callable[[], str],
    attempts: int = REFERENCE_ATTEMPTS,
) -> Dict[str, Any]:
    """Insert doc under a freshly generated unique reference in `field`.

    A collision on the unique index regenerates the reference; any other
    duplicate-key failure propagates.
    """
    collection = database[collection_name]
    for attempt in range(1, attempts + 1):
        doc[field] = generate()
        try:
            doc["_id"] = collection.insert_one(doc).inserted_id
            return doc
        except DuplicateKeyError:
            doc.pop("_id", None)
            if collection.find_one({field: doc[field]}, {"_id": 1}) is None:
                raise
            logger.warning("Reference collision on %s.%s (%s), attempt %d", collection_name, field, doc[field], attempt)
    raise OrderNumberExhaustedError(attempts)


def parse_sort(sort: Optional[str], allowed: List[str], default: str = "-created_at"):
    sort = sort or default
    direction = DESCENDING if sort.startswith("-") else ASCENDING
    field = sort.lstrip("-+")
    if field not in allowed:
        field = default.lstrip("-")
        direction = DESCENDING
    return [(field, direction)]


def paginate(collection, query: Dict[str, Any], page: int, limit: int, sort) -> Dict[str, Any]:
    total = collection.count_documents(query)
    skip = (page - 1) * limit
    docs = list(collection.find(query).sort(sort).skip(skip).limit(limit))
    total_pages = (total + limit - 1) // limit if total else 0
    return {
        "items": [serialize_doc(d) for d in docs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def ensure_indexes(database: Database) -> None:
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("paypal_order_id", unique=True, sparse=True)
    database["order"].create_index([("order_status", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("payment_status", ASCENDING), ("created_at", DESCENDING)])
    database["contactmessage"].create_index("message_number", unique=True)
    database["contactmessage"].create_index([("duplicate_hash", ASCENDING), ("created_at", DESCENDING)])
    database["contactmessage"].create_index([("source_details.ip_address", ASCENDING), ("created_at", DESCENDING)])
    database["contactmessage"].create_index([("customer_info.email", ASCENDING), ("created_at", DESCENDING)])
    database["samplerequest"].create_index("request_number", unique=True)
    database["samplerequest"].create_index([("duplicate_hash", ASCENDING), ("created_at", DESCENDING)])
    database["user"].create_index("email", unique=True)
