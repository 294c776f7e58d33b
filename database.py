import asyncio
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from errors import DocumentNotFound, StoreError, StoreQueryError, StoreUnavailable, WriteConflict
from schemas import LISTINGS

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "foodloop")

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
OnChange = Callable[[Any], None]
OnError = Callable[[StoreError], None]
Filters = Sequence[Tuple[str, str, Any]]


# Field-level update primitives

@dataclass(frozen=True)
class Increment:
    amount: int = 1


@dataclass(frozen=True)
class ArrayUnion:
    values: Tuple[Any, ...]

    def __init__(self, *values):
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class ArrayRemove:
    values: Tuple[Any, ...]

    def __init__(self, *values):
        object.__setattr__(self, "values", tuple(values))


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[Tuple[str, str, Any], ...] = ()
    order: Optional[Tuple[str, bool]] = None
    limit_to: Optional[int] = None

    def where(self, field: str, op: str, value: Any) -> "Query":
        return replace(self, filters=self.filters + ((field, op, value),))

    def order_by(self, field: str, descending: bool = False) -> "Query":
        return replace(self, order=(field, descending))

    def limit(self, n: Optional[int]) -> "Query":
        return replace(self, limit_to=n)

    def unordered(self) -> "Query":
        return replace(self, order=None)


class Subscription:
    """Handle for a realtime listener; deliveries stop once closed."""

    def __init__(self, on_close: Callable[[], None]):
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class DocumentStore(ABC):
    """What the core needs from the remote document database.

    Documents are plain dicts carrying their key under ``"id"``. ``update``
    takes dotted field paths and accepts the ``Increment``/``ArrayUnion``/
    ``ArrayRemove``/``DELETE_FIELD`` primitives as values, and optional
    ``precondition`` filters (``(field, op, value)`` as in ``Query.where``; a
    missing field compares as None) that make it raise ``WriteConflict`` when
    the stored document no longer matches. Watchers receive
    the full current result (list of documents, or one document/None) on
    subscription and after every change.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    @abstractmethod
    async def add(self, collection: str, data: Document) -> str: ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Document) -> None: ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Document,
                     precondition: Filters = ()) -> None: ...

    @abstractmethod
    async def query(self, query: Query) -> List[Document]: ...

    @abstractmethod
    def watch_query(self, query: Query, on_change: OnChange, on_error: Optional[OnError] = None) -> Subscription: ...

    @abstractmethod
    def watch_document(self, collection: str, doc_id: str, on_change: OnChange,
                       on_error: Optional[OnError] = None) -> Subscription: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


# MongoDB

_OPERATORS = {"==": "$eq", "!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}


def _mongo_field(field: str) -> str:
    return "_id" if field == "id" else field


def mongo_filter(filters) -> Document:
    criteria: Document = {}
    for field, op, value in filters:
        criteria.setdefault(_mongo_field(field), {})[_OPERATORS[op]] = value
    return criteria


def mongo_update(fields: Document) -> Document:
    ops: Document = {}
    for path, value in fields.items():
        if isinstance(value, Increment):
            ops.setdefault("$inc", {})[path] = value.amount
        elif isinstance(value, ArrayUnion):
            ops.setdefault("$addToSet", {})[path] = {"$each": list(value.values)}
        elif isinstance(value, ArrayRemove):
            ops.setdefault("$pull", {})[path] = {"$in": list(value.values)}
        elif value is DELETE_FIELD:
            ops.setdefault("$unset", {})[path] = ""
        else:
            ops.setdefault("$set", {})[path] = value
    return ops


def _to_document(raw: Optional[Document]) -> Optional[Document]:
    if raw is None:
        return None
    doc = dict(raw)
    doc["id"] = str(doc.pop("_id"))
    return doc


@contextmanager
def _translate_errors(action: str):
    try:
        yield
    except ConnectionFailure as e:
        raise StoreUnavailable(f"{action}: {e}") from e
    except PyMongoError as e:
        raise StoreQueryError(f"{action}: {e}") from e


class MongoDocumentStore(DocumentStore):
    def __init__(self, url: str = DATABASE_URL, name: str = DATABASE_NAME, client: Optional[AsyncMongoClient] = None):
        self._client = client or AsyncMongoClient(url, tz_aware=True)
        self._db = self._client[name]

    def _collection(self, name: str):
        return self._db[name]

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _translate_errors(f"get {collection}/{doc_id}"):
            return _to_document(await self._collection(collection).find_one({"_id": doc_id}))

    async def add(self, collection: str, data: Document) -> str:
        doc_id = str(ObjectId())
        with _translate_errors(f"add {collection}"):
            await self._collection(collection).insert_one({**data, "_id": doc_id})
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        payload = {k: v for k, v in data.items() if k != "id"}
        with _translate_errors(f"set {collection}/{doc_id}"):
            await self._collection(collection).replace_one({"_id": doc_id}, payload, upsert=True)

    async def update(self, collection: str, doc_id: str, fields: Document,
                     precondition: Filters = ()) -> None:
        items = self._collection(collection)
        with _translate_errors(f"update {collection}/{doc_id}"):
            res = await items.update_one({**mongo_filter(precondition), "_id": doc_id}, mongo_update(fields))
            if res.matched_count == 0 and precondition:
                if await items.count_documents({"_id": doc_id}, limit=1):
                    raise WriteConflict(collection, doc_id)
        if res.matched_count == 0:
            raise DocumentNotFound(collection, doc_id)

    async def query(self, query: Query) -> List[Document]:
        cursor = self._collection(query.collection).find(mongo_filter(query.filters))
        if query.order:
            field, descending = query.order
            cursor = cursor.sort(_mongo_field(field), DESCENDING if descending else ASCENDING)
        if query.limit_to:
            cursor = cursor.limit(query.limit_to)
        results: List[Document] = []
        with _translate_errors(f"query {query.collection}"):
            async for d in cursor:
                results.append(_to_document(d))
        return results

    def watch_query(self, query: Query, on_change: OnChange, on_error: Optional[OnError] = None) -> Subscription:
        return self._watch(query.collection, [], lambda: self.query(query), on_change, on_error)

    def watch_document(self, collection: str, doc_id: str, on_change: OnChange,
                       on_error: Optional[OnError] = None) -> Subscription:
        pipeline = [{"$match": {"documentKey._id": doc_id}}]
        return self._watch(collection, pipeline, lambda: self.get(collection, doc_id), on_change, on_error)

    def _watch(self, collection, pipeline, snapshot, on_change, on_error) -> Subscription:
        async def run():
            try:
                with _translate_errors(f"watch {collection}"):
                    async with await self._collection(collection).watch(pipeline) as stream:
                        on_change(await snapshot())
                        async for _change in stream:
                            on_change(await snapshot())
            except StoreError as e:
                logger.error("Listener on %s stopped: %s", collection, e)
                if on_error:
                    on_error(e)

        task = asyncio.get_running_loop().create_task(run())
        return Subscription(task.cancel)

    async def ensure_indexes(self) -> None:
        with _translate_errors("ensure_indexes"):
            items = self._collection(LISTINGS)
            await items.create_index([("is_active", ASCENDING), ("created_at", DESCENDING)])
            await items.create_index([("is_active", ASCENDING), ("geohash", ASCENDING)])
            await items.create_index([("is_active", ASCENDING), ("share_kind", ASCENDING), ("created_at", DESCENDING)])
            await items.create_index([("uploader_id", ASCENDING), ("is_active", ASCENDING)])

    async def ping(self) -> bool:
        with _translate_errors("ping"):
            await self._client.admin.command("ping")
        return True

    async def list_collection_names(self) -> List[str]:
        with _translate_errors("list_collection_names"):
            return await self._db.list_collection_names()

    @property
    def name(self) -> str:
        return self._db.name

    async def close(self) -> None:
        await self._client.close()
