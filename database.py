"""
MongoDB access for the Library Lending API.

The client is created lazily so importing the app never opens a connection;
routes receive the database through the ``get_db`` dependency.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import NotFound

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(settings.database_url)
        logger.info("Mongo client created for database %s", settings.database_name)
    return _client


def get_db() -> Database:
    return get_client()[settings.database_name]


def ensure_indexes(db: Database) -> None:
    """Create the unique and lookup indexes the lending rules rely on."""
    db["libraryuser"].create_index([("email", ASCENDING)], unique=True)
    db["libraryuser"].create_index([("name", ASCENDING)], unique=True)
    db["loan"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)], unique=True)
    db["loan"].create_index([("book_id", ASCENDING)])
    db["loan"].create_index([("borrowed_at", ASCENDING)])


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def object_id(value, what: str = "Document") -> ObjectId:
    """Parse an id from a path or body; malformed ids are reported as missing."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now_utc()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = db[collection_name].insert_one(data_dict)
    return result.inserted_id
