import asyncio
import copy
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from challenges import ChallengeEngine
from database import (
    DELETE_FIELD,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    Increment,
    Query,
    Subscription,
)
from errors import DocumentNotFound, IndexRequired, WriteConflict
from listings import ListingRepository
from profiles import ProfileRepository
from schemas import Identity, Listing, UploaderInfo

FIXED_NOW = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)

_MISSING = object()

_COMPARE = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "in": lambda a, b: a in b,
}


def _lookup(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _apply(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    key = parts[-1]
    if isinstance(value, Increment):
        target[key] = target.get(key, 0) + value.amount
    elif isinstance(value, ArrayUnion):
        items = list(target.get(key) or [])
        items += [v for v in value.values if v not in items]
        target[key] = items
    elif isinstance(value, ArrayRemove):
        target[key] = [v for v in target.get(key) or [] if v not in value.values]
    elif value is DELETE_FIELD:
        target.pop(key, None)
    else:
        target[key] = copy.deepcopy(value)


class _Fault:
    def __init__(self, op, error, when, times):
        self.op = op
        self.error = error
        self.when = when
        self.times = times


class MemoryDocumentStore(DocumentStore):
    """Dict-backed store with synchronous watcher fan-out and fault injection.

    ``require_index`` makes queries that combine equality filters on more
    than one field with an ordering raise ``IndexRequired``, the way a store
    without the composite index would.
    """

    def __init__(self, require_index: bool = False):
        self.collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self.require_index = require_index
        self.calls: List[tuple] = []
        self._faults: List[_Fault] = []
        self._ids = itertools.count(1)
        self._query_watchers: List[list] = []
        self._doc_watchers: List[list] = []

    # test controls

    def fail(self, op: str, error: Exception, when: Optional[Callable[..., bool]] = None, times: int = 1) -> None:
        """Raise ``error`` from the next ``times`` matching calls to ``op``.

        ``when(collection, target, data)`` narrows the match; ``target`` is
        the document id or the Query, ``data`` the written fields if any.
        """
        self._faults.append(_Fault(op, error, when, times))

    def calls_to(self, op: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == op]

    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        self.collections[collection][doc_id] = copy.deepcopy(data)

    def raw(self, collection: str, doc_id: str) -> Optional[dict]:
        return self.collections[collection].get(doc_id)

    async def _enter(self, op, collection, target=None, data=None):
        await asyncio.sleep(0)
        self.calls.append((op, collection, target))
        for fault in self._faults:
            if fault.op != op or fault.times <= 0:
                continue
            if fault.when is not None and not fault.when(collection, target, data):
                continue
            fault.times -= 1
            raise fault.error

    # DocumentStore

    async def get(self, collection, doc_id):
        await self._enter("get", collection, doc_id)
        doc = self.collections[collection].get(doc_id)
        return None if doc is None else {**copy.deepcopy(doc), "id": doc_id}

    async def add(self, collection, data):
        await self._enter("add", collection, None, data)
        doc_id = f"doc{next(self._ids)}"
        self.collections[collection][doc_id] = copy.deepcopy(data)
        self._notify(collection, doc_id)
        return doc_id

    async def set(self, collection, doc_id, data):
        await self._enter("set", collection, doc_id, data)
        self.collections[collection][doc_id] = {k: copy.deepcopy(v) for k, v in data.items() if k != "id"}
        self._notify(collection, doc_id)

    async def update(self, collection, doc_id, fields, precondition=()):
        await self._enter("update", collection, doc_id, fields)
        doc = self.collections[collection].get(doc_id)
        if doc is None:
            raise DocumentNotFound(collection, doc_id)
        if not all(self._match(doc, f, op, v) for f, op, v in precondition):
            raise WriteConflict(collection, doc_id)
        for path, value in fields.items():
            _apply(doc, path, value)
        self._notify(collection, doc_id)

    async def query(self, query: Query):
        await self._enter("query", query.collection, query)
        return self._run(query)

    def watch_query(self, query, on_change, on_error=None):
        entry = [query, on_change, on_error]
        self._query_watchers.append(entry)
        on_change(self._run(query))
        return Subscription(lambda: self._query_watchers.remove(entry))

    def watch_document(self, collection, doc_id, on_change, on_error=None):
        entry = [collection, doc_id, on_change, on_error]
        self._doc_watchers.append(entry)
        on_change(self._snapshot(collection, doc_id))
        return Subscription(lambda: self._doc_watchers.remove(entry))

    def break_watchers(self, error: Exception) -> None:
        for _, _, on_error in list(self._query_watchers):
            if on_error:
                on_error(error)
        for _, _, _, on_error in list(self._doc_watchers):
            if on_error:
                on_error(error)

    @property
    def watcher_count(self) -> int:
        return len(self._query_watchers) + len(self._doc_watchers)

    # internals

    def _snapshot(self, collection, doc_id):
        doc = self.collections[collection].get(doc_id)
        return None if doc is None else {**copy.deepcopy(doc), "id": doc_id}

    def _notify(self, collection, doc_id):
        for query, on_change, _ in list(self._query_watchers):
            if query.collection == collection:
                on_change(self._run(query))
        for coll, watched_id, on_change, _ in list(self._doc_watchers):
            if coll == collection and watched_id == doc_id:
                on_change(self._snapshot(collection, doc_id))

    def _run(self, query: Query) -> List[dict]:
        equality_fields = {f for f, op, _ in query.filters if op == "=="}
        if self.require_index and query.order is not None and len(equality_fields) > 1:
            raise IndexRequired(f"query on {query.collection} needs a composite index")
        rows = []
        for doc_id, doc in self.collections[query.collection].items():
            full = {**doc, "id": doc_id}
            if all(self._match(full, f, op, v) for f, op, v in query.filters):
                rows.append(copy.deepcopy(full))
        if query.order is not None:
            field, descending = query.order
            rows.sort(key=lambda d: d.get(field), reverse=descending)
        if query.limit_to:
            rows = rows[:query.limit_to]
        return rows

    @staticmethod
    def _match(doc, field, op, value) -> bool:
        actual = _lookup(doc, field)
        if actual is _MISSING:
            actual = None
        try:
            return _COMPARE[op](actual, value)
        except TypeError:
            return False


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def engine(store, clock):
    return ChallengeEngine(store, clock=clock)


@pytest.fixture
def profiles(store, clock):
    return ProfileRepository(store, clock=clock)


@pytest.fixture
def repo(store, clock):
    return ListingRepository(store, clock=clock)


@pytest.fixture
async def user(profiles):
    return await profiles.create_or_update(Identity(uid="u1", display_name="Mei", email="mei@example.com"))


@pytest.fixture
def make_listing():
    def build(name="高麗菜", lat=25.0330, lon=121.5654, **fields: Any) -> Listing:
        fields.setdefault("category", "蔬菜")
        fields.setdefault("expiry", FIXED_NOW + timedelta(days=2))
        fields.setdefault("uploader", UploaderInfo(display_name="Mei"))
        fields.setdefault("tags", [fields["category"]])
        return Listing(name=name, latitude=lat, longitude=lon, **fields)
    return build
