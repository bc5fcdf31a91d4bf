"""SQLite document store for the missions ledger.

Follows the per-call connection pattern: each public method is async and
wraps a synchronous inner function via asyncio.run_in_executor(None, _sync).
A new connection is created per call (WAL mode, 30s busy timeout, Row factory).

Documents are JSON objects addressed by ``(collection, doc_id)``. Every write
path runs inside one ``BEGIN IMMEDIATE`` transaction, so a multi-document write
set either commits as a whole or not at all, and read-then-write bodies are
serialized against every other writer sharing the database file.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence, TypeVar

from .calendar_day import now_utc, to_iso
from .exceptions import NotFound, PreconditionFailed, StoreUnavailable, ValidationError

T = TypeVar("T")


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


@dataclass(frozen=True)
class Increment:
    """Atomic numeric transform, optionally clamped from below."""
    amount: int | float
    floor: int | float | None = None


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        if self.field not in data:
            return False
        current = data[self.field]
        try:
            if self.op == "==":
                return current == self.value
            if self.op == "!=":
                return current != self.value
            if self.op == "in":
                return current in self.value
            if current is None or self.value is None:
                return False
            if self.op == "<":
                return current < self.value
            if self.op == "<=":
                return current <= self.value
            if self.op == ">":
                return current > self.value
            if self.op == ">=":
                return current >= self.value
        except TypeError:
            return False
        raise ValueError(f"Unsupported filter operator: {self.op!r}")


def where(field_name: str, op: str, value: Any) -> Filter:
    return Filter(field_name, op, value)


@dataclass(frozen=True)
class Precondition:
    """Write guard. ``equals`` is a field-level compare-and-set."""
    exists: bool | None = None
    version: int | None = None
    equals: dict[str, Any] | None = None


@dataclass
class DocumentSnapshot:
    collection: str
    id: str
    data: dict[str, Any] | None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_name: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(field_name, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data or {})


# ══════════════════════════════════════════════════════════
#  Transform helpers
# ══════════════════════════════════════════════════════════

def _resolve_value(value: Any, now_iso: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return now_iso
    if isinstance(value, dict):
        return {k: _resolve_value(v, now_iso) for k, v in value.items() if v is not DELETE_FIELD}
    if isinstance(value, list):
        return [_resolve_value(v, now_iso) for v in value]
    return value


def _apply_fields(existing: dict[str, Any], updates: dict[str, Any], now_iso: str) -> dict[str, Any]:
    """Apply top-level field writes and transforms to a copy of *existing*."""
    result = dict(existing)
    for key, value in updates.items():
        if value is DELETE_FIELD:
            result.pop(key, None)
        elif isinstance(value, Increment):
            new_value = (result.get(key) or 0) + value.amount
            if value.floor is not None:
                new_value = max(value.floor, new_value)
            result[key] = new_value
        else:
            result[key] = _resolve_value(value, now_iso)
    return result


def _order_key(value: Any) -> tuple:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    return (3, str(value))


def _sort(snapshots: list[DocumentSnapshot], order_by: Sequence[tuple[str, str]]) -> list[DocumentSnapshot]:
    result = sorted(snapshots, key=lambda s: s.id)
    for field_name, direction in reversed(list(order_by)):
        result.sort(
            key=lambda s, f=field_name: _order_key(s.get(f)),
            reverse=direction.lower() == "desc",
        )
    return result


# ══════════════════════════════════════════════════════════
#  Transaction
# ══════════════════════════════════════════════════════════

class Transaction:
    """Synchronous view of one open store transaction.

    Reads observe the transaction's own earlier writes. Only valid inside the
    callable passed to :meth:`DocumentStore.run_transaction`.
    """

    def __init__(self, conn: sqlite3.Connection, now: datetime, max_writes: int) -> None:
        self._conn = conn
        self.now = now
        self.now_iso = to_iso(now)
        self._max_writes = max_writes
        self._writes = 0
        self.touched: set[tuple[str, str]] = set()

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    # ── Reads ────────────────────────────────────────────

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        row = self._conn.execute(
            "SELECT data, version FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return DocumentSnapshot(collection, doc_id, None, 0)
        return DocumentSnapshot(collection, doc_id, json.loads(row["data"]), row["version"])

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Sequence[tuple[str, str]] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[DocumentSnapshot]:
        filters = list(filters)
        rows = self._conn.execute(
            "SELECT doc_id, data, version FROM documents WHERE collection = ?",
            (collection,),
        ).fetchall()
        matched = []
        for row in rows:
            data = json.loads(row["data"])
            if all(f.matches(data) for f in filters):
                matched.append(DocumentSnapshot(collection, row["doc_id"], data, row["version"]))
        matched = _sort(matched, order_by)
        if offset:
            matched = matched[offset:]
        if limit is not None:
            matched = matched[:limit]
        return matched

    # ── Writes ───────────────────────────────────────────

    def _check(self, snap: DocumentSnapshot, precondition: Precondition | None) -> None:
        if precondition is None:
            return
        if precondition.exists is not None and snap.exists != precondition.exists:
            state = "missing" if precondition.exists else "already exists"
            raise PreconditionFailed(f"{snap.collection}/{snap.id} {state}")
        if precondition.version is not None and snap.version != precondition.version:
            raise PreconditionFailed(
                f"{snap.collection}/{snap.id} version {snap.version} != {precondition.version}"
            )
        if precondition.equals:
            for key, expected in precondition.equals.items():
                if snap.get(key) != expected:
                    raise PreconditionFailed(
                        f"{snap.collection}/{snap.id}.{key} is {snap.get(key)!r}, expected {expected!r}"
                    )

    def _count_write(self) -> None:
        self._writes += 1
        if self._writes > self._max_writes:
            raise ValidationError(f"Transaction exceeds {self._max_writes} writes")

    def _put(self, snap: DocumentSnapshot, data: dict[str, Any]) -> None:
        self._count_write()
        self._conn.execute(
            "INSERT INTO documents (collection, doc_id, data, version, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(collection, doc_id) DO UPDATE SET "
            "data = excluded.data, version = excluded.version, updated_at = excluded.updated_at",
            (snap.collection, snap.id, json.dumps(data, sort_keys=True), snap.version + 1, self.now_iso),
        )
        self.touched.add((snap.collection, snap.id))

    def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
        precondition: Precondition | None = None,
    ) -> None:
        snap = self.get(collection, doc_id)
        self._check(snap, precondition)
        base = snap.to_dict() if merge else {}
        self._put(snap, _apply_fields(base, data, self.now_iso))

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.set(collection, doc_id, data, precondition=Precondition(exists=False))

    def update(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        precondition: Precondition | None = None,
    ) -> None:
        snap = self.get(collection, doc_id)
        if not snap.exists:
            raise NotFound(collection, doc_id)
        self._check(snap, precondition)
        self._put(snap, _apply_fields(snap.to_dict(), data, self.now_iso))

    def delete(self, collection: str, doc_id: str, precondition: Precondition | None = None) -> None:
        snap = self.get(collection, doc_id)
        self._check(snap, precondition)
        self._count_write()
        self._conn.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        self.touched.add((collection, doc_id))


# ══════════════════════════════════════════════════════════
#  Batch
# ══════════════════════════════════════════════════════════

class WriteBatch:
    """Buffered writes committed all-or-nothing."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._ops: list[tuple[str, tuple, dict]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False,
            precondition: Precondition | None = None) -> WriteBatch:
        self._ops.append(("set", (collection, doc_id, data), {"merge": merge, "precondition": precondition}))
        return self

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> WriteBatch:
        self._ops.append(("create", (collection, doc_id, data), {}))
        return self

    def update(self, collection: str, doc_id: str, data: dict[str, Any],
               precondition: Precondition | None = None) -> WriteBatch:
        self._ops.append(("update", (collection, doc_id, data), {"precondition": precondition}))
        return self

    def delete(self, collection: str, doc_id: str) -> WriteBatch:
        self._ops.append(("delete", (collection, doc_id), {}))
        return self

    async def commit(self) -> None:
        if len(self._ops) > self._store.max_batch_writes:
            raise ValidationError(
                f"Batch of {len(self._ops)} writes exceeds limit of {self._store.max_batch_writes}"
            )
        ops = list(self._ops)

        def _apply(txn: Transaction) -> None:
            for name, args, kwargs in ops:
                getattr(txn, name)(*args, **kwargs)

        await self._store.run_transaction(_apply)
        self._ops.clear()


# ══════════════════════════════════════════════════════════
#  Listeners
# ══════════════════════════════════════════════════════════

@dataclass
class _Listener:
    id: int
    collection: str
    doc_id: str | None
    callback: Callable[[Any], Any]
    filters: tuple[Filter, ...] = ()
    order_by: tuple[tuple[str, str], ...] = ()
    limit: int | None = None
    active: bool = True
    dirty: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)

    def wants(self, touched: set[tuple[str, str]]) -> bool:
        if self.doc_id is not None:
            return (self.collection, self.doc_id) in touched
        return any(collection == self.collection for collection, _ in touched)


class ListenerRegistration:
    def __init__(self, store: DocumentStore, listener_id: int) -> None:
        self._store = store
        self._listener_id = listener_id

    def unsubscribe(self) -> None:
        self._store._remove_listener(self._listener_id)


# ══════════════════════════════════════════════════════════
#  Store
# ══════════════════════════════════════════════════════════

class DocumentStore:
    """SQLite-backed document persistence with transactions and listeners."""

    def __init__(self, db_path: str, logger: logging.Logger, max_batch_writes: int = 500) -> None:
        self._db_path = db_path
        self._logger = logger
        self.max_batch_writes = max_batch_writes
        self._listeners: dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create the documents table. Idempotent."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            try:
                conn = self._get_connection()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot open database {self._db_path}: {exc}") from exc
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        data TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        updated_at TEXT,
                        PRIMARY KEY (collection, doc_id)
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)"
                )
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot initialize database: {exc}") from exc
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)
        self._logger.info("Document store ready at %s", self._db_path)

    async def close(self) -> None:
        """Remove every listener and cancel pending deliveries."""
        listeners = list(self._listeners.values())
        self._listeners.clear()
        tasks = []
        for listener in listeners:
            listener.active = False
            if listener.task and not listener.task.done():
                listener.task.cancel()
                tasks.append(listener.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ══════════════════════════════════════════════════════════
    #  Transactions
    # ══════════════════════════════════════════════════════════

    async def run_transaction(self, fn: Callable[[Transaction], T], read_only: bool = False) -> T:
        """Run *fn* inside one immediate transaction and commit its writes.

        ``read_only`` opens a deferred transaction instead, which does not take
        the write lock; writes attempted through it still work but may block.

        Any exception raised by *fn* rolls the transaction back and propagates.
        SQLite failures surface as :class:`StoreUnavailable`.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> tuple[T, set[tuple[str, str]]]:
            try:
                conn = self._get_connection()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot open database {self._db_path}: {exc}") from exc
            try:
                conn.execute("BEGIN" if read_only else "BEGIN IMMEDIATE")
                txn = Transaction(conn, now_utc(), self.max_batch_writes)
                try:
                    result = fn(txn)
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                return result, txn.touched
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Store transaction failed: {exc}") from exc
            finally:
                conn.close()

        result, touched = await loop.run_in_executor(None, _sync)
        if touched:
            self._notify(touched)
        return result

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    # ══════════════════════════════════════════════════════════
    #  Single-document Operations
    # ══════════════════════════════════════════════════════════

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        return await self.run_transaction(lambda txn: txn.get(collection, doc_id), read_only=True)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False,
                  precondition: Precondition | None = None) -> None:
        await self.run_transaction(
            lambda txn: txn.set(collection, doc_id, data, merge=merge, precondition=precondition)
        )

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await self.run_transaction(lambda txn: txn.create(collection, doc_id, data))

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document under a generated id and return the id."""
        doc_id = Transaction.new_id()
        await self.create(collection, doc_id, data)
        return doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any],
                     precondition: Precondition | None = None) -> None:
        await self.run_transaction(
            lambda txn: txn.update(collection, doc_id, data, precondition=precondition)
        )

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.run_transaction(lambda txn: txn.delete(collection, doc_id))

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Sequence[tuple[str, str]] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> list[DocumentSnapshot]:
        filters = list(filters)
        return await self.run_transaction(
            lambda txn: txn.query(collection, filters, order_by=order_by, limit=limit, offset=offset),
            read_only=True,
        )

    async def count(self, collection: str, filters: Iterable[Filter] = ()) -> int:
        return len(await self.query(collection, filters))

    # ══════════════════════════════════════════════════════════
    #  Listeners
    # ══════════════════════════════════════════════════════════

    def listen_document(self, collection: str, doc_id: str,
                        callback: Callable[[DocumentSnapshot], Any]) -> ListenerRegistration:
        """Deliver the document's snapshot now and after every commit touching it."""
        listener = _Listener(next(self._listener_ids), collection, doc_id, callback)
        return self._register(listener)

    def listen_query(
        self,
        collection: str,
        callback: Callable[[list[DocumentSnapshot]], Any],
        filters: Iterable[Filter] = (),
        order_by: Sequence[tuple[str, str]] = (),
        limit: int | None = None,
    ) -> ListenerRegistration:
        """Deliver query results now and after every commit touching *collection*."""
        listener = _Listener(
            next(self._listener_ids), collection, None, callback,
            filters=tuple(filters), order_by=tuple(order_by), limit=limit,
        )
        return self._register(listener)

    def _register(self, listener: _Listener) -> ListenerRegistration:
        self._listeners[listener.id] = listener
        self._schedule(listener)
        return ListenerRegistration(self, listener.id)

    def _remove_listener(self, listener_id: int) -> None:
        listener = self._listeners.pop(listener_id, None)
        if listener is not None:
            listener.active = False

    def _notify(self, touched: set[tuple[str, str]]) -> None:
        for listener in list(self._listeners.values()):
            if listener.wants(touched):
                self._schedule(listener)

    def _schedule(self, listener: _Listener) -> None:
        listener.dirty = True
        if listener.task is None or listener.task.done():
            listener.task = asyncio.get_running_loop().create_task(self._deliver(listener))

    async def _deliver(self, listener: _Listener) -> None:
        # Coalesces bursts of commits; each pass delivers the latest state.
        while listener.active and listener.dirty:
            listener.dirty = False
            try:
                if listener.doc_id is not None:
                    payload: Any = await self.get(listener.collection, listener.doc_id)
                else:
                    payload = await self.query(
                        listener.collection, listener.filters,
                        order_by=listener.order_by, limit=listener.limit,
                    )
                if not listener.active:
                    return
                result = listener.callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Listener %d on %s failed", listener.id, listener.collection)

    async def wait_for_listeners(self) -> None:
        """Wait until every scheduled delivery has run."""
        while True:
            pending = [
                l.task for l in self._listeners.values()
                if l.task is not None and not l.task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
