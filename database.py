"""
MongoDB access.

`Mongo` owns the client. It connects on first use, ensures the indexes the
services rely on, and answers readiness pings. One instance lives on
``app.state.mongo`` and handlers receive the database through ``get_db``.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError
import structlog

from errors import ServiceUnavailable, ValidationFailed

logger = structlog.get_logger(__name__)


class Mongo:
    def __init__(
        self,
        url: str,
        name: str,
        client_factory: Callable[..., Any] = MongoClient,
        timeout_ms: int = 5000,
    ):
        self.url = url
        self.name = name
        self._client_factory = client_factory
        self._timeout_ms = timeout_ms
        self._client = None
        self._db: Optional[Database] = None

    @property
    def db(self) -> Database:
        if self._db is None:
            self._connect()
        return self._db

    def _connect(self) -> None:
        if self._client_factory is MongoClient:
            client = MongoClient(self.url, serverSelectionTimeoutMS=self._timeout_ms)
        else:
            client = self._client_factory(self.url)
        db = client[self.name]
        try:
            ensure_indexes(db)
        except PyMongoError:
            client.close()
            raise
        self._client = client
        self._db = db
        logger.info("database_connected", database=self.name)

    def ping(self) -> bool:
        try:
            self.db.command("ping")
            return True
        except PyMongoError as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None


def ensure_indexes(db: Database) -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)
    db["product"].create_index([("seller_id", ASCENDING)])
    db["order"].create_index([("order_date", DESCENDING)])


def get_db(request: Request) -> Database:
    mongo: Mongo = request.app.state.mongo
    try:
        return mongo.db
    except PyMongoError as e:
        logger.error("database_unavailable", error=str(e))
        raise ServiceUnavailable()


# ----------------------- Helpers -----------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = _serialize_value(v)
        else:
            out[k] = _serialize_value(v)
    return out


def parse_object_id(value, message: str = "Invalid ID") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationFailed(message)
    return ObjectId(value)
