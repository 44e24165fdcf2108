"""
MongoDB access for the E-Waste Pickup service.

The database handle is built once by the app factory and passed around
explicitly; nothing here holds a module-level connection.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ewaste")

REQUESTS = "collectionrequest"
AGENTS = "collectionagent"
USERS = "user"
ADMINS = "admin"


def get_database(url: str = DATABASE_URL, name: str = DATABASE_NAME) -> Database:
    client = MongoClient(url, serverSelectionTimeoutMS=5000)
    return client[name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Parse an id coming from a URL or a token; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    out = dict(doc)
    out["_id"] = str(out["_id"])
    out.pop("password_hash", None)
    return out


def create_document(db: Database, collection: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    payload = dict(data)
    now = utcnow()
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    result = db[collection].insert_one(payload)
    return str(result.inserted_id)


def get_documents(db: Database, collection: str, filt: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = db[collection].find(filt or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(db: Database, collection: str, doc_id: Union[str, ObjectId, None]) -> Optional[dict]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return db[collection].find_one({"_id": oid})


# ------------------ Collection request store ------------------
class RequestStore:
    """Durable record of collection requests.

    ``conditional_update`` is the only primitive the pickup protocol relies on
    for correctness: MongoDB applies the match and the update to one document
    atomically, so two callers racing on the same filter can never both
    succeed.
    """

    def __init__(self, db: Database):
        self.db = db
        self.collection = db[REQUESTS]

    def ensure_indexes(self) -> None:
        self.collection.create_index([("status", ASCENDING), ("assigned_agent_id", ASCENDING)])
        self.collection.create_index(
            [("assigned_agent_id", ASCENDING), ("status", ASCENDING), ("preferred_datetime", ASCENDING)]
        )
        self.collection.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    def insert(self, data: Union[BaseModel, dict]) -> str:
        return create_document(self.db, REQUESTS, data)

    def get(self, request_id: Union[str, ObjectId, None]) -> Optional[dict]:
        return get_document(self.db, REQUESTS, request_id)

    def conditional_update(self, request_id: Union[str, ObjectId, None], match: Dict[str, Any], changes: Dict[str, Any]) -> Optional[dict]:
        """Apply ``changes`` to the request only if it currently matches ``match``.

        Returns the updated document, or None when nothing matched (including
        an unknown or malformed id).
        """
        oid = to_object_id(request_id)
        if oid is None:
            return None
        filt = {"_id": oid}
        filt.update(match)
        update = dict(changes)
        update["updated_at"] = utcnow()
        return self.collection.find_one_and_update(
            filt,
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )

    def find(self, filt: Dict[str, Any], sort: Optional[List[tuple]] = None, limit: Optional[int] = None) -> List[dict]:
        cursor = self.collection.find(filt)
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)
