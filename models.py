#!/usr/bin/env python3
"""
Document store for archived posts.

Full post records are kept as JSON documents in a sqlite file, one row per
post id. All access goes through a single asyncio worker so callers never
share a connection mid-statement; queries use a small Mongo-style filter
grammar evaluated against the decoded documents.

Filter grammar:
    {"type": "photo"}                       equality (membership for list fields)
    {"unix-timestamp": {"$gte": 1600000000}}
    {"tags": {"$contains": "cats"}}
    {"reblogged-from-name": {"$exists": False}}
    {"$or": [{...}, {...}]}, {"$and": [...]}
    Dotted field names reach into nested objects: {"tumblelog.name": "foo"}
"""

import json
from asyncio import Queue, create_task, CancelledError, Event
from os import path, makedirs
from sqlite3 import connect, Row, Error, IntegrityError
from time import time
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from config import get_logger
from errors import StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    doc TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

_MISSING = object()

SortSpec = Union[None, str, Dict[str, int], List[Tuple[str, int]]]


def initialize_database(conn) -> None:
    """Create the documents table if this is a new database."""
    cursor = conn.cursor()
    try:
        cursor.executescript(SCHEMA)
        conn.commit()
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _lookup(doc: Dict[str, Any], field: str) -> Any:
    """Resolve a possibly dotted field name, returning _MISSING when absent."""
    if field in doc:
        return doc[field]
    value: Any = doc
    for part in field.split('.'):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _compare(op: str, value: Any, arg: Any) -> bool:
    try:
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
        if op == "$lt":
            return value < arg
        return value <= arg
    except TypeError:
        # Mismatched types never satisfy a range condition
        return False


def _apply_operator(op: str, value: Any, arg: Any) -> bool:
    present = value is not _MISSING
    if op == "$exists":
        return present == bool(arg)
    if op == "$ne":
        return not present or value != arg
    if op == "$in":
        if not present:
            return False
        if isinstance(value, list):
            return any(v in arg for v in value)
        return value in arg
    if op == "$contains":
        return present and isinstance(value, list) and arg in value
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return present and value is not None and _compare(op, value, arg)
    raise ValueError(f"Unsupported query operator: {op}")


def _is_operator_map(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(
        isinstance(k, str) and k.startswith('$') for k in condition
    )


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a filter against one document."""
    if not query:
        return True
    for field, condition in query.items():
        if field == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        if field == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue

        value = _lookup(doc, field)
        if _is_operator_map(condition):
            for op, arg in condition.items():
                if not _apply_operator(op, value, arg):
                    return False
        else:
            if value is _MISSING:
                return False
            if isinstance(value, list) and not isinstance(condition, list):
                if condition not in value:
                    return False
            elif value != condition:
                return False
    return True


def _normalize_sort(sort: SortSpec) -> List[Tuple[str, int]]:
    if not sort:
        return []
    if isinstance(sort, str):
        if sort.startswith('-'):
            return [(sort[1:], -1)]
        return [(sort, 1)]
    if isinstance(sort, dict):
        return [(k, -1 if v < 0 else 1) for k, v in sort.items()]
    return [(k, -1 if v < 0 else 1) for k, v in sort]


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Missing/None sort first, then numbers, then strings, then anything else
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, json.dumps(value, sort_keys=True, default=str))


class DocumentStore:
    """A queue for document operations over one sqlite file.

    Public coroutines (find_one, find, insert, update, count, remove,
    distinct_ids) enqueue a named operation; a single worker task executes
    them in order against the connection.
    """

    OPERATIONS = frozenset(["find_one", "find", "insert", "update", "count", "remove", "distinct_ids"])

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.debug(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
            directory = path.dirname(path.abspath(self.db_path))
            makedirs(directory, exist_ok=True)

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except Error as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StoreError(f"Could not open document store {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Document store worker started")

    async def stop(self) -> None:
        """Stop the worker and close the database."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any callers still waiting so they fail instead of hanging
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.debug("Document store worker stopped")

    async def __aenter__(self) -> "DocumentStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing queued operations."""
        while self.running:
            operation_id, operation_name, params = await self.queue.get()
            try:
                method = getattr(self, f"_op_{operation_name}")
                self.results[operation_id] = {"result": method(**params)}
            except Exception as e:
                logger.error(f"Document store operation error in {operation_name}: {e}")
                self.results[operation_id] = {"error": e}
            finally:
                if operation_id in self.events:
                    self.events[operation_id].set()
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue a named operation and wait for its result.

        Raises:
            StoreError: If the store is not running, the operation is unknown
                or the operation itself failed.
        """
        if operation_name not in self.OPERATIONS:
            raise StoreError(f"Unknown operation: {operation_name}")
        if not self.running:
            raise StoreError(f"Document store {self.db_path} is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(f"Document store stopped before {operation_name} completed")
            if "error" in result:
                error = result["error"]
                if isinstance(error, StoreError):
                    raise error
                raise StoreError(f"{operation_name} failed: {error}") from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Public API

    async def find_one(self, query: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return await self.execute("find_one", query=query or {})

    async def find(
        self,
        query: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents matching ``query`` ordered by ``sort``.

        ``sort`` accepts ``{"field": 1 | -1}``, a list of ``(field, direction)``
        pairs, or a field name (prefix with ``-`` for descending).
        """
        return await self.execute("find", query=query or {}, sort=sort, skip=skip, limit=limit)

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return await self.execute("insert", doc=doc)

    async def update(self, doc_id: str, doc: Dict[str, Any]) -> bool:
        return await self.execute("update", doc_id=doc_id, doc=doc)

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        return await self.execute("count", query=query or {})

    async def remove(self, query: Dict[str, Any]) -> int:
        return await self.execute("remove", query=query)

    async def distinct_ids(self) -> List[str]:
        return await self.execute("distinct_ids")

    # Worker-side operations

    def _id_only(self, query: Dict[str, Any]) -> Optional[str]:
        if len(query) == 1 and "id" in query and not isinstance(query["id"], (dict, list)):
            return str(query["id"])
        return None

    def _iter_documents(self, query: Dict[str, Any]):
        cursor = self.conn.cursor()
        try:
            doc_id = self._id_only(query)
            if doc_id is not None:
                cursor.execute("SELECT doc FROM documents WHERE id = ?", (doc_id,))
            else:
                cursor.execute("SELECT doc FROM documents ORDER BY rowid")
            for row in cursor.fetchall():
                doc = json.loads(row["doc"])
                if matches(doc, query):
                    yield doc
        finally:
            cursor.close()

    def _op_find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self._iter_documents(query):
            return doc
        return None

    def _op_find(self, query: Dict[str, Any], sort: SortSpec, skip: int, limit: Optional[int]) -> List[Dict[str, Any]]:
        docs = list(self._iter_documents(query))
        # Stable sorts applied from the least significant key
        for field, direction in reversed(_normalize_sort(sort)):
            docs.sort(key=lambda d: _sort_key(_lookup(d, field)), reverse=direction < 0)
        if skip:
            docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return docs

    def _op_insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = doc.get("id")
        if doc_id is None or doc_id == "":
            raise StoreError("Cannot insert a document without an id")
        now = int(time())
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO documents (id, doc, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (str(doc_id), json.dumps(doc, ensure_ascii=False, default=str), now, now),
                )
        except IntegrityError as e:
            raise StoreError(f"Document {doc_id} already exists") from e
        return doc

    def _op_update(self, doc_id: str, doc: Dict[str, Any]) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE documents SET doc = ?, updated_at = ? WHERE id = ?",
                (json.dumps(doc, ensure_ascii=False, default=str), int(time()), str(doc_id)),
            )
        return cursor.rowcount > 0

    def _op_count(self, query: Dict[str, Any]) -> int:
        if not query:
            row = self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()
            return int(row[0]) if row else 0
        return sum(1 for _ in self._iter_documents(query))

    def _op_remove(self, query: Dict[str, Any]) -> int:
        ids = [str(doc["id"]) for doc in self._iter_documents(query) if "id" in doc]
        removed = 0
        with self.conn:
            # Stay under sqlite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ','.join(['?' for _ in chunk])
                cursor = self.conn.execute(f"DELETE FROM documents WHERE id IN ({placeholders})", chunk)
                removed += cursor.rowcount
        if removed:
            logger.debug(f"Removed {removed} documents")
        return removed

    def _op_distinct_ids(self) -> List[str]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id FROM documents ORDER BY rowid")
            return [row[0] for row in cursor.fetchall()]
        finally:
            cursor.close()
