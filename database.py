"""
MongoDB access for the Ahaar API.

A single Database object is created at process start, connected in the
application lifespan and handed to every service. Collections are named after
the lowercased schema class (Donation -> "donation").
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

Sort = List[Tuple[str, int]]

NEWEST_FIRST: Sort = [("created_at", DESCENDING), ("_id", DESCENDING)]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what pymongo hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(str(value)):
        return None
    return ObjectId(str(value))


def oid(value: Any) -> str:
    """Canonical string form of an id; all id comparisons go through this."""
    return str(value) if value is not None else ""


def serialize(doc):
    if isinstance(doc, list):
        return [serialize(x) for x in doc]
    if not isinstance(doc, dict):
        if isinstance(doc, ObjectId):
            return str(doc)
        if isinstance(doc, datetime):
            return doc.isoformat()
        return doc
    return {k: serialize(v) for k, v in doc.items()}


class Database:
    """Owns the MongoClient and exposes the handful of operations the services use."""

    def __init__(
        self,
        url: Optional[str] = None,
        name: Optional[str] = None,
        client: Optional[MongoClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.url = url
        self.name = name or "ahaar"
        self.clock = clock
        self._client = client
        self._owns_client = client is None
        self.db = None

    # ------------------------------------
    # Lifecycle
    # ------------------------------------
    @property
    def connected(self) -> bool:
        return self.db is not None

    def connect(self) -> "Database":
        if self.connected:
            return self
        if self._client is None:
            self._client = MongoClient(self.url)
        self.db = self._client[self.name]
        self.ensure_indexes()
        logger.info(f"Connected to database {self.name}")
        return self

    def close(self):
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self.db = None
        logger.info("Database connection closed")

    def ensure_indexes(self):
        self.db["user"].create_index("email", unique=True)
        self.db["user"].create_index([("user_type", ASCENDING), ("is_verified", ASCENDING)])
        self.db["ngoprofile"].create_index("ngo_id", unique=True)
        self.db["moneydonation"].create_index("transaction_id", unique=True)
        self.db["moneydonation"].create_index([("ngo_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["donation"].create_index("status")
        self.db["donation"].create_index("donor_id")
        self.db["donation"].create_index("claimer_id")
        self.db["donation"].create_index([("created_at", DESCENDING)])
        self.db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["notification"].create_index([("user_id", ASCENDING), ("read", ASCENDING)])

    def collection(self, name: str):
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db[name]

    def list_collection_names(self) -> List[str]:
        if self.db is None:
            raise RuntimeError("Database is not connected")
        return self.db.list_collection_names()

    # ------------------------------------
    # CRUD
    # ------------------------------------
    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        now = self.clock()
        data_dict.setdefault("created_at", now)
        data_dict.setdefault("updated_at", now)
        result = self.collection(collection_name).insert_one(data_dict)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[dict] = None,
        limit: Optional[int] = None,
        sort: Optional[Sort] = None,
        skip: int = 0,
    ) -> List[dict]:
        cursor = self.collection(collection_name).find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def find_one(self, collection_name: str, filter_dict: dict) -> Optional[dict]:
        return self.collection(collection_name).find_one(filter_dict)

    def find_by_id(self, collection_name: str, doc_id: Any) -> Optional[dict]:
        _id = parse_id(doc_id)
        if _id is None:
            return None
        return self.collection(collection_name).find_one({"_id": _id})

    def count(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        return self.collection(collection_name).count_documents(filter_dict or {})

    def update_where(self, collection_name: str, filter_dict: dict, update: dict) -> Optional[dict]:
        """Atomic conditional update. Returns the updated document, or None if nothing matched."""
        update = _touch(update, self.clock())
        return self.collection(collection_name).find_one_and_update(
            filter_dict, update, return_document=ReturnDocument.AFTER
        )

    def update_many(self, collection_name: str, filter_dict: dict, update: dict) -> int:
        update = _touch(update, self.clock())
        result = self.collection(collection_name).update_many(filter_dict, update)
        return result.modified_count

    def increment(self, collection_name: str, doc_id: Any, fields: Dict[str, Any]) -> Optional[dict]:
        _id = parse_id(doc_id)
        if _id is None:
            return None
        return self.update_where(collection_name, {"_id": _id}, {"$inc": fields})

    def delete_where(self, collection_name: str, filter_dict: dict) -> int:
        return self.collection(collection_name).delete_many(filter_dict).deleted_count

    def aggregate(self, collection_name: str, pipeline: Iterable[dict]) -> List[dict]:
        return list(self.collection(collection_name).aggregate(list(pipeline)))


def _touch(update: dict, now: datetime) -> dict:
    update = dict(update)
    update["$set"] = {**update.get("$set", {}), "updated_at": now}
    return update
