"""
Document Store Adapter with Fallback

Primary: MongoDB via environment variables DATABASE_URL and DATABASE_NAME
Fallback: mongomock (in-memory, pymongo-compatible client) when env vars are
          not provided. This keeps the app usable without an external DB.
Disabled: CLOUD_SYNC_DISABLED=1 leaves the store unconfigured; every
          operation then degrades to a no-op.

Documents are addressed by slash-separated paths, e.g.
``users/{uid}/rooms/{roomId}``. The MongoDB collection is the collection
segments joined with ``__`` (``users__rooms``) and ``_id`` is the full path.
Every stored document carries a ``_version`` token that is rewritten on each
write and used for optimistic compare-and-set transactions.
"""

import asyncio
import copy
from datetime import datetime
import logging
import os
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson.errors import BSONError
from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from timestamps import resolve_server_timestamps, to_server_value, utcnow

logger = logging.getLogger(__name__)

# Load environment variables from .env file (if present)
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
FALLBACK_DATABASE_NAME = os.getenv("FALLBACK_DATABASE_NAME", "declutter_sync")
CLOUD_SYNC_DISABLED = os.getenv("CLOUD_SYNC_DISABLED", "").lower() in ("1", "true", "yes")

_INTERNAL_FIELDS = ("_id", "_parent", "_version")
_BACKEND_ERRORS = (PyMongoError, BSONError)

Unsubscribe = Callable[[], None]
Where = Sequence[Tuple[str, str, Any]]
OrderBy = Union[str, Tuple[str, str], None]


def connect(url: Optional[str] = DATABASE_URL, name: Optional[str] = DATABASE_NAME):
    """Return a database handle, or None when cloud sync is switched off."""
    if CLOUD_SYNC_DISABLED:
        logger.info("Cloud sync disabled; running offline only")
        return None
    try:
        if url and name:
            from pymongo import MongoClient
            return MongoClient(url)[name]
        # Fallback to mongomock (embedded MongoDB-like client)
        import mongomock
        return mongomock.MongoClient()[FALLBACK_DATABASE_NAME]
    except Exception:
        logger.exception("Database unavailable; continuing without cloud sync")
        return None


class StoreError(Exception):
    """A backend failure, tagged with what kind of failure it was.

    ``kind`` is one of ``transient`` (network/driver error, retryable),
    ``conflict`` (optimistic transaction gave up) or ``invalid``.
    """

    def __init__(self, message: str, kind: str = "transient"):
        super().__init__(message)
        self.kind = kind


def split_document_path(path: str) -> Tuple[str, str, str]:
    """``users/u1/rooms/r1`` -> (``users__rooms``, ``users/u1``, ``r1``)."""
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments or len(segments) % 2:
        raise ValueError(f"Not a document path: {path!r}")
    return "__".join(segments[0::2]), "/".join(segments[:-2]), segments[-1]


def split_collection_path(path: str) -> Tuple[str, str]:
    """``users/u1/rooms`` -> (``users__rooms``, ``users/u1``)."""
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments or len(segments) % 2 == 0:
        raise ValueError(f"Not a collection path: {path!r}")
    return "__".join(segments[0::2]), "/".join(segments[:-1])


def collection_of(path: str) -> str:
    return "/".join(path.strip("/").split("/")[:-1])


def _new_version() -> str:
    return uuid.uuid4().hex


def _build_filter(parent: str, where: Optional[Where]) -> Dict[str, Any]:
    flt: Dict[str, Any] = {"_parent": parent}
    operators = {"!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}
    for field, op, value in where or ():
        if isinstance(value, datetime):
            value = to_server_value(value)
        if op in ("==", "array_contains"):
            flt[field] = value
        elif op in operators:
            clause = flt.setdefault(field, {})
            if not isinstance(clause, dict):
                raise ValueError(f"Cannot combine equality and range on {field!r}")
            clause[operators[op]] = list(value) if op == "in" else value
        else:
            raise ValueError(f"Unsupported query operator: {op!r}")
    return flt


def _sort_spec(order_by: OrderBy) -> Optional[List[Tuple[str, int]]]:
    if not order_by:
        return None
    if isinstance(order_by, str):
        return [(order_by, ASCENDING)]
    field, direction = order_by
    return [(field, DESCENDING if direction == "desc" else ASCENDING)]


class WriteBatch:
    """Collects writes applied all-or-nothing by ``DocumentStore.batch``."""

    def __init__(self):
        self.ops: List[Tuple[str, str, Optional[dict]]] = []

    def set(self, path: str, value: dict) -> "WriteBatch":
        self.ops.append(("set", path, value))
        return self

    def update(self, path: str, value: dict) -> "WriteBatch":
        self.ops.append(("update", path, value))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.ops.append(("delete", path, None))
        return self

    def __iter__(self):
        return iter(self.ops)

    def __len__(self):
        return len(self.ops)


class _Subscription:
    def __init__(self, store, collection_path, callback, where, order_by, limit):
        self.store = store
        self.collection_path = collection_path.strip("/")
        self.callback = callback
        self.where = where
        self.order_by = order_by
        self.limit = limit
        self.active = True


class ListenerRegistry:
    """Live query listeners.

    Share one registry between stores to have writes made by one of them
    re-deliver snapshots to listeners registered on another.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[_Subscription] = []

    def add(self, sub: _Subscription) -> None:
        with self._lock:
            self._subscriptions.append(sub)

    def remove(self, sub: _Subscription) -> None:
        with self._lock:
            sub.active = False
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def watching(self, collection_paths: Iterable[str]) -> List[_Subscription]:
        wanted = set(collection_paths)
        with self._lock:
            return [s for s in self._subscriptions if s.collection_path in wanted]


class DocumentStore:
    """Async document operations over a pymongo-compatible database.

    With no database every call is a no-op returning None/False/[].
    Backend failures raise StoreError; callers catch and degrade.
    """

    def __init__(self, database=None, listeners: Optional[ListenerRegistry] = None):
        self._db = database
        self._listeners = listeners or ListenerRegistry()
        # Writes from this store reach the backend in issue order; reads
        # share the lock because the embedded fallback is not thread-safe.
        self._write_lock = threading.RLock()

    @property
    def configured(self) -> bool:
        return self._db is not None

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    # ----- internals (run in a worker thread) -----

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except _BACKEND_ERRORS as e:
            logger.warning("Document store error: %s", e)
            raise StoreError(str(e)) from e

    def _collection(self, name: str):
        return self._db[name]

    @staticmethod
    def _public(raw: Optional[dict], doc_id: str) -> Optional[dict]:
        if raw is None:
            return None
        doc = {k: v for k, v in raw.items() if k not in _INTERNAL_FIELDS}
        doc["id"] = doc_id
        return doc

    @staticmethod
    def _encode(path: str, value: dict, version: str) -> dict:
        _, parent, _ = split_document_path(path)
        body = resolve_server_timestamps(
            {k: v for k, v in value.items() if k not in _INTERNAL_FIELDS and k != "id"},
            to_server_value(utcnow()),
        )
        body.update({"_id": path, "_parent": parent, "_version": version})
        return body

    def _read_raw(self, path: str) -> Optional[dict]:
        name, _, _ = split_document_path(path)
        with self._write_lock:
            return self._collection(name).find_one({"_id": path})

    def _write_one(self, op: str, path: str, value: Optional[dict]) -> bool:
        name, _, _ = split_document_path(path)
        coll = self._collection(name)
        if op == "set":
            coll.replace_one({"_id": path}, self._encode(path, value, _new_version()), upsert=True)
            return True
        if op == "update":
            body = self._encode(path, value, _new_version())
            for field in ("_id", "_parent"):
                body.pop(field)
            return coll.update_one({"_id": path}, {"$set": body}).matched_count == 1
        if op == "delete":
            coll.delete_one({"_id": path})
            return True
        raise ValueError(f"Unknown write op: {op!r}")

    def _write(self, op: str, path: str, value: Optional[dict]) -> bool:
        with self._write_lock:
            return self._write_one(op, path, value)

    def _write_batch(self, ops: List[Tuple[str, str, Optional[dict]]]) -> bool:
        with self._write_lock:
            before = {path: self._read_raw(path) for _, path, _ in ops}
            applied = []
            try:
                for op, path, value in ops:
                    self._write_one(op, path, value)
                    applied.append(path)
            except _BACKEND_ERRORS:
                logger.warning("Batch failed after %d of %d writes; rolling back", len(applied), len(ops))
                for path in reversed(applied):
                    name, _, _ = split_document_path(path)
                    if before[path] is None:
                        self._collection(name).delete_one({"_id": path})
                    else:
                        self._collection(name).replace_one({"_id": path}, before[path], upsert=True)
                raise
            return True

    def _compare_and_write(self, path: str, value: dict, version: Optional[str]) -> Optional[dict]:
        name, _, _ = split_document_path(path)
        coll = self._collection(name)
        doc = self._encode(path, value, _new_version())
        with self._write_lock:
            if version is None:
                doc.pop("_id")
                result = coll.update_one({"_id": path}, {"$setOnInsert": doc}, upsert=True)
                doc["_id"] = path
                return doc if result.upserted_id is not None else None
            result = coll.replace_one({"_id": path, "_version": version}, doc)
            return doc if result.matched_count == 1 else None

    def _find(self, collection_path: str, where, order_by, limit) -> List[dict]:
        name, parent = split_collection_path(collection_path)
        with self._write_lock:
            cursor = self._collection(name).find(_build_filter(parent, where))
            sort = _sort_spec(order_by)
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return [self._public(d, d["_id"].rsplit("/", 1)[-1]) for d in cursor]

    async def _notify(self, paths: Iterable[str]) -> None:
        for sub in self._listeners.watching(collection_of(p) for p in paths):
            if not sub.active:
                continue
            try:
                docs = await sub.store.query(sub.collection_path, sub.where, sub.order_by, sub.limit)
            except StoreError:
                continue
            try:
                sub.callback(docs)
            except Exception:
                logger.exception("Listener on %s failed", sub.collection_path)

    # ----- public API -----

    async def get(self, path: str) -> Optional[dict]:
        if not self.configured:
            return None
        _, _, doc_id = split_document_path(path)
        return self._public(await self._run(self._read_raw, path), doc_id)

    async def set(self, path: str, value: dict) -> bool:
        if not self.configured:
            return False
        await self._run(self._write, "set", path, value)
        await self._notify([path])
        return True

    async def update(self, path: str, value: dict) -> bool:
        """Merge ``value`` into an existing document; False if it is missing."""
        if not self.configured:
            return False
        updated = await self._run(self._write, "update", path, value)
        if updated:
            await self._notify([path])
        return updated

    async def delete(self, path: str) -> bool:
        if not self.configured:
            return False
        await self._run(self._write, "delete", path, None)
        await self._notify([path])
        return True

    async def batch(self, ops: Iterable[Tuple[str, str, Optional[dict]]]) -> bool:
        if not self.configured:
            return False
        ops = list(ops)
        if not ops:
            return True
        await self._run(self._write_batch, ops)
        await self._notify(path for _, path, _ in ops)
        return True

    async def query(
        self,
        collection_path: str,
        where: Optional[Where] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        if not self.configured:
            return []
        return await self._run(self._find, collection_path, where, order_by, limit)

    async def subscribe(
        self,
        collection_path: str,
        on_change: Callable[[List[dict]], None],
        where: Optional[Where] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> Optional[Unsubscribe]:
        if not self.configured:
            return None
        sub = _Subscription(self, collection_path, on_change, where, order_by, limit)
        self._listeners.add(sub)
        try:
            docs = await self.query(collection_path, where, order_by, limit)
        except StoreError:
            self._listeners.remove(sub)
            raise
        on_change(docs)
        return lambda: self._listeners.remove(sub)

    async def transact(
        self,
        path: str,
        mutate: Callable[[Optional[dict]], Optional[dict]],
        max_attempts: int = 5,
    ) -> Optional[dict]:
        """Optimistic read-modify-write of one document.

        ``mutate`` receives a copy of the current document (or None) and
        returns the new full document, or None to abort without writing.
        The write only lands if nobody else wrote in between; otherwise the
        read and ``mutate`` are repeated.
        """
        if not self.configured:
            return None
        _, _, doc_id = split_document_path(path)
        for attempt in range(1, max_attempts + 1):
            raw = await self._run(self._read_raw, path)
            version = raw.get("_version") if raw else None
            current = self._public(raw, doc_id)
            updated = mutate(copy.deepcopy(current))
            if updated is None:
                return None
            written = await self._run(self._compare_and_write, path, updated, version)
            if written is not None:
                await self._notify([path])
                return self._public(written, doc_id)
            logger.debug("Write conflict on %s (attempt %d)", path, attempt)
        raise StoreError(f"Gave up on {path} after {max_attempts} conflicting writes", kind="conflict")

    def collection_names(self) -> List[str]:
        if not self.configured:
            return []
        return self._db.list_collection_names()


db = connect()
store = DocumentStore(db)


def get_store() -> DocumentStore:
    return store
