import asyncio, copy, uuid
from datetime import datetime, timedelta, timezone
from google.cloud import firestore
from typing import Any, Dict, List, Optional, Sequence
from marketplace.database.document_store import (
    Document, DocumentStore, ErrorCallback, Filter, SnapshotCallback, Unsubscribe, Write, split_path
)
from marketplace.services.connectivity import NetworkGate
from marketplace.utils.exceptions import StoreError, NOT_FOUND

BUYER = "U1"
SELLER = "U2"
ITEM_ID = "ITEM42"


class _Listener:
    def __init__(self, collection, filters, order_by, descending, on_next, on_error):
        self.collection = collection
        self.filters = filters
        self.order_by = order_by
        self.descending = descending
        self.on_next = on_next
        self.on_error = on_error
        self.active = True


class InMemoryDocumentStore(DocumentStore):
    """
    Firestore stand-in for tests: resolves server timestamps and increments,
    delivers snapshots asynchronously on the loop, and can be told to fail
    specific operations.
    """

    def __init__(self, gate: Optional[NetworkGate] = None):
        super().__init__(gate)
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.listeners: List[_Listener] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self._ticks = 0

    # ==================== test helpers ====================

    def fail(self, operation: str, error: Exception, times: int = 1):
        self.failures.setdefault(operation, []).extend([error] * times)

    def seed(self, path: str, fields: Dict[str, Any]):
        self.docs[self._key(path)] = self._resolve(fields)

    def emit_error(self, collection_path: str, error: StoreError):
        key = self._key(collection_path)
        for listener in self.active_listeners(key):
            listener.active = False
            asyncio.get_running_loop().call_soon(listener.on_error, error)

    def active_listeners(self, collection_path: str) -> List[_Listener]:
        key = self._key(collection_path)
        return [l for l in self.listeners if l.active and l.collection == key]

    # ==================== internals ====================

    def _key(self, path: str) -> str:
        return "/".join(split_path(path))

    def _check(self, operation: str):
        self.calls.append(operation)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _now(self) -> datetime:
        self._ticks += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=self._ticks)

    def _resolve(self, value: Any, current: Any = None) -> Any:
        if value is firestore.SERVER_TIMESTAMP:
            return self._now()
        if isinstance(value, firestore.Increment):
            return (current if isinstance(current, (int, float)) else 0) + value.value
        if isinstance(value, dict):
            current = current if isinstance(current, dict) else {}
            return {k: self._resolve(v, current.get(k)) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return value

    def _write(self, path: str, fields: Dict[str, Any], merge: bool):
        key = self._key(path)
        current = self.docs.get(key) if merge else None
        resolved = self._resolve(fields, current)
        self.docs[key] = {**(current or {}), **resolved}
        self._notify(key)

    def _remove(self, path: str):
        key = self._key(path)
        if self.docs.pop(key, None) is not None:
            self._notify(key)

    def _children(self, collection: str, filters: Sequence[Filter], order_by, descending) -> List[Document]:
        depth = len(collection.split("/")) + 1
        docs = []
        for key, data in self.docs.items():
            if not key.startswith(collection + "/") or len(key.split("/")) != depth:
                continue
            if all(self._matches(data, f) for f in filters):
                docs.append(Document(key.split("/")[-1], copy.deepcopy(data)))
        if order_by:
            docs = [d for d in docs if d.data.get(order_by) is not None]
            docs.sort(key=lambda d: d.data[order_by], reverse=descending)
        return docs

    def _matches(self, data: Dict[str, Any], flt: Filter) -> bool:
        field, op, value = flt
        if op == "==":
            return data.get(field) == value
        if op == "array_contains":
            return value in (data.get(field) or [])
        raise ValueError(f"Unsupported operator {op}")

    def _notify(self, key: str):
        collection = "/".join(key.split("/")[:-1])
        for listener in self.active_listeners(collection):
            self._schedule(listener)

    def _schedule(self, listener: _Listener):
        def deliver():
            if listener.active:
                listener.on_next(self._children(
                    listener.collection, listener.filters, listener.order_by, listener.descending
                ))
        try:
            asyncio.get_running_loop().call_soon(deliver)
        except RuntimeError:
            pass

    # ==================== DocumentStore ====================

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        self._check("get")
        data = self.docs.get(self._key(path))
        return copy.deepcopy(data) if data is not None else None

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False):
        self._check("set")
        self._write(path, fields, merge)

    async def update(self, path: str, fields: Dict[str, Any]):
        self._check("update")
        if self._key(path) not in self.docs:
            raise StoreError(NOT_FOUND, f"No document to update: {path}")
        self._write(path, fields, merge=True)

    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        self._check("add")
        doc_id = uuid.uuid4().hex[:20]
        self._write(f"{collection_path}/{doc_id}", fields, merge=False)
        return doc_id

    async def delete(self, path: str):
        self._check("delete")
        self._remove(path)

    async def commit(self, writes: Sequence[Write]):
        self._check("commit")
        for write in writes:
            if write.kind == "set":
                self._write(write.path, write.fields, write.merge)
            else:
                self._remove(write.path)

    async def query(
        self,
        collection_path: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Document]:
        self._check("query")
        return self._children(self._key(collection_path), filters, order_by, descending)

    def subscribe(
        self,
        collection_path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Unsubscribe:
        self._check("subscribe")
        self.ensure_live_access()
        listener = _Listener(self._key(collection_path), list(filters), order_by, descending, on_next, on_error)
        self.listeners.append(listener)
        self._schedule(listener)

        def unsubscribe():
            listener.active = False

        return unsubscribe


async def settle(rounds: int = 5):
    """Let scheduled snapshot deliveries and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)
