"""
MongoDB access for the storefront.

Route handlers and the order lifecycle never touch pymongo directly; they go
through a Store, which keeps the surface small enough to be swapped in tests.
Multi-document writes run inside Store.transaction(), which needs MongoDB
running as a replica set.
"""

import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

from config import settings
from errors import Internal

logger = logging.getLogger(__name__)

Sort = Sequence[Tuple[str, int]]


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """ObjectId for value, or None when it can't be one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def prepare_query(query: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Coerce a string _id to ObjectId; None means the query can match nothing."""
    query = dict(query or {})
    if "_id" in query:
        object_id = to_object_id(query["_id"])
        if object_id is None:
            return None
        query["_id"] = object_id
    return query


def serialize(doc):
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


class Store:
    """Thin wrapper over a pymongo Database, optionally bound to a session."""

    def __init__(self, database, client: Optional[MongoClient] = None, session=None):
        self._db = database
        self._client = client
        self._session = session

    def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[dict]:
        query = prepare_query(query)
        if query is None:
            return None
        return self._db[collection].find_one(query, session=self._session)

    def find(
        self,
        collection: str,
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        query = prepare_query(query)
        if query is None:
            return []
        cursor = self._db[collection].find(query, session=self._session)
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def search(
        self,
        collection: str,
        fields: Sequence[str],
        text: str,
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Case-insensitive substring match of text over fields, narrowed by query."""
        query = prepare_query(query)
        if query is None:
            return []
        pattern = {"$regex": re.escape(text), "$options": "i"}
        query["$or"] = [{f: pattern} for f in fields]
        cursor = self._db[collection].find(query, session=self._session)
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def insert_one(self, collection: str, doc: Dict[str, Any]) -> str:
        result = self._db[collection].insert_one(dict(doc), session=self._session)
        return str(result.inserted_id)

    def update_one(
        self,
        collection: str,
        query: Dict[str, Any],
        values: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
    ) -> Optional[dict]:
        """Apply $set/$inc to the first match and return it as updated."""
        query = prepare_query(query)
        if query is None:
            return None
        update: Dict[str, Any] = {"$set": {**(values or {}), "updated_at": now()}}
        if inc:
            update["$inc"] = dict(inc)
        return self._db[collection].find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER, session=self._session
        )

    def delete_one(self, collection: str, query: Dict[str, Any]) -> int:
        query = prepare_query(query)
        if query is None:
            return 0
        return self._db[collection].delete_one(query, session=self._session).deleted_count

    def delete_many(self, collection: str, query: Dict[str, Any]) -> int:
        query = prepare_query(query)
        if query is None:
            return 0
        return self._db[collection].delete_many(query, session=self._session).deleted_count

    def count(self, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        query = prepare_query(query)
        if query is None:
            return 0
        return self._db[collection].count_documents(query, session=self._session)

    def ping(self) -> List[str]:
        """Round-trip to the server; returns a few collection names."""
        return self._db.list_collection_names()[:10]

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Commit on normal exit, abort on any exception."""
        if self._session is not None:
            yield self
            return
        with self._client.start_session() as session:
            with session.start_transaction():
                yield Store(self._db, self._client, session)


def create_document(store, collection_name: str, data) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    doc["created_at"] = now()
    doc["updated_at"] = doc["created_at"]
    return store.insert_one(collection_name, doc)


def get_documents(store, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    return [serialize(d) for d in store.find(collection_name, filter_dict, sort=[("created_at", -1)], limit=limit)]


_store: Optional[Store] = None


def connect() -> Optional[Store]:
    global _store
    if _store is None and settings.database_url:
        client = MongoClient(settings.database_url, tz_aware=True)
        _store = Store(client[settings.database_name], client)
        logger.info("Connected to MongoDB database %s", settings.database_name)
    return _store


def get_store() -> Store:
    store = connect()
    if store is None:
        raise Internal("Database is not configured.")
    return store
