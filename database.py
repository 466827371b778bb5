"""
MongoDB access for the orders service.

The client is created lazily with short server-selection and socket
timeouts so an unreachable cluster fails a call quickly instead of hanging
the request. OrderStore translates pymongo errors into the service's own
PersistenceUnavailable / DuplicateReference errors.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import BSONError
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import DuplicateReference, PersistenceUnavailable
from settings import Settings

logger = logging.getLogger(__name__)


@lru_cache
def _client(url: str, timeout_ms: int) -> MongoClient:
    return MongoClient(
        url,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
        tz_aware=True,
    )


def get_database(settings: Settings) -> Optional[Database]:
    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL not set; orders will not persist")
        return None
    return _client(settings.DATABASE_URL, settings.DB_TIMEOUT_MS)[settings.DATABASE_NAME]


def create_document(db: Optional[Database], collection_name: str, data: Union[BaseModel, dict]) -> str:
    if db is None:
        raise PersistenceUnavailable("Database not configured")
    doc = data.model_dump(mode="json") if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    with mongo_errors(f"insert {collection_name}"):
        result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Optional[Database],
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    if db is None:
        raise PersistenceUnavailable("Database not configured")
    with mongo_errors(f"find {collection_name}"):
        cursor = db[collection_name].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)


@contextmanager
def mongo_errors(operation: str):
    try:
        yield
    except DuplicateKeyError as exc:
        raise DuplicateReference("Order reference already exists") from exc
    except PyMongoError as exc:
        logger.error(f"MongoDB {operation} failed: {exc}")
        raise PersistenceUnavailable(f"Document store unavailable during {operation}") from exc
    except BSONError as exc:
        logger.error(f"MongoDB {operation} could not encode document: {exc}")
        raise PersistenceUnavailable(f"Document could not be stored during {operation}") from exc


def order_filter(order_id: str) -> Dict[str, Any]:
    """Match an order by ObjectId when ``order_id`` is one, otherwise by reference."""
    if ObjectId.is_valid(order_id):
        return {"_id": ObjectId(order_id)}
    return {"reference": order_id.strip().upper()}


class OrderStore:
    collection_name = "order"

    def __init__(self, db: Optional[Database]):
        self.db = db

    @property
    def collection(self):
        if self.db is None:
            raise PersistenceUnavailable("Database not configured")
        return self.db[self.collection_name]

    def ensure_indexes(self) -> None:
        with mongo_errors("create_index"):
            self.collection.create_index([("reference", ASCENDING)], unique=True)
            self.collection.create_index([("created_at", DESCENDING)])

    def ping(self) -> List[str]:
        with mongo_errors("ping"):
            return self.db.list_collection_names() if self.db is not None else []

    def create(self, doc: dict) -> str:
        with mongo_errors("insert order"):
            result = self.collection.insert_one(dict(doc))
        return str(result.inserted_id)

    def find_one(self, filter_dict: dict) -> Optional[dict]:
        with mongo_errors("find order"):
            return self.collection.find_one(filter_dict)

    def find(self, filter_dict: dict, skip: int = 0, limit: int = 50) -> List[dict]:
        with mongo_errors("list orders"):
            cursor = (
                self.collection.find(filter_dict)
                .sort("created_at", DESCENDING)
                .skip(skip)
                .limit(limit)
            )
            return list(cursor)

    def count(self, filter_dict: dict) -> int:
        with mongo_errors("count orders"):
            return self.collection.count_documents(filter_dict)

    def update(self, filter_dict: dict, changes: dict, push: Optional[dict] = None) -> Optional[dict]:
        ops: Dict[str, Any] = {"$set": changes}
        if push:
            ops["$push"] = push
        with mongo_errors("update order"):
            return self.collection.find_one_and_update(
                filter_dict, ops, return_document=ReturnDocument.AFTER
            )


class AdminUsers:
    collection_name = "adminuser"

    def __init__(self, db: Optional[Database]):
        self.db = db

    def find_active(self, username: str) -> Optional[dict]:
        if self.db is None:
            raise PersistenceUnavailable("Database not configured")
        with mongo_errors("find admin"):
            return self.db[self.collection_name].find_one({"username": username, "is_active": True})

    def count(self) -> int:
        if self.db is None:
            raise PersistenceUnavailable("Database not configured")
        with mongo_errors("count admins"):
            return self.db[self.collection_name].count_documents({})

    def create(self, user: BaseModel) -> str:
        return create_document(self.db, self.collection_name, user)
