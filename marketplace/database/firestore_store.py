import asyncio, functools, logging
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from typing import Any, Dict, List, Optional, Sequence
from marketplace.database.document_store import (
    Document, DocumentStore, ErrorCallback, Filter, SnapshotCallback, Unsubscribe, Write
)
from marketplace.services.connectivity import NetworkGate
from marketplace.utils.exceptions import (
    StoreError, PERMISSION_DENIED, UNAVAILABLE, INTERNAL, ABORTED, DEADLINE_EXCEEDED, NOT_FOUND, UNKNOWN
)

logger = logging.getLogger(__name__)

_ERROR_CODES = [
    (google_exceptions.PermissionDenied, PERMISSION_DENIED),
    (google_exceptions.Unauthenticated, PERMISSION_DENIED),
    (google_exceptions.ServiceUnavailable, UNAVAILABLE),
    (google_exceptions.InternalServerError, INTERNAL),
    (google_exceptions.Aborted, ABORTED),
    (google_exceptions.DeadlineExceeded, DEADLINE_EXCEEDED),
    (google_exceptions.NotFound, NOT_FOUND),
]


def map_google_error(error: Exception) -> StoreError:
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            return StoreError(code, str(error))
    return StoreError(UNKNOWN, str(error))


class _WatchHandle:
    """Keeps a Firestore watch and its health check tied to one listener."""

    def __init__(self, loop, on_next: SnapshotCallback, on_error: ErrorCallback):
        self.loop = loop
        self.on_next = on_next
        self.on_error = on_error
        self.watch = None
        self.health_task = None
        self.closed = False

    def on_snapshot(self, docs, changes, read_time):
        # called from the SDK's watch thread
        documents = [Document(doc.id, doc.to_dict() or {}) for doc in docs]
        self.loop.call_soon_threadsafe(self._deliver, documents)

    def _deliver(self, documents: List[Document]):
        if not self.closed:
            self.on_next(documents)

    async def supervise(self, interval: float):
        while not self.closed:
            await asyncio.sleep(interval)
            if not self.closed and not self.watch.is_active:
                logger.warning("Firestore listen stream closed unexpectedly")
                self.close()
                self.on_error(StoreError(UNAVAILABLE, "Listen stream closed"))

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self.health_task is not None:
            self.health_task.cancel()
        if self.watch is not None:
            # closing the stream joins SDK threads; keep it off the loop
            future = self.loop.run_in_executor(None, self.watch.unsubscribe)
            future.add_done_callback(_log_unsubscribe_failure)


def _log_unsubscribe_failure(future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning(f"Closing Firestore listener failed: {str(error)}", exc_info=error)


class FirestoreDocumentStore(DocumentStore):

    def __init__(self, client, gate: Optional[NetworkGate] = None, health_interval: float = 5.0):
        super().__init__(gate)
        self.client = client
        self.health_interval = health_interval

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except google_exceptions.GoogleAPICallError as e:
            raise map_google_error(e) from e

    def _query(self, collection_path: str, filters: Sequence[Filter], order_by: Optional[str], descending: bool):
        query = self.client.collection(collection_path)
        for field, op, value in filters:
            query = query.where(filter=firestore.FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        return query

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._run(self.client.document(path).get)
        return snapshot.to_dict() if snapshot.exists else None

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False):
        await self._run(self.client.document(path).set, fields, merge=merge)

    async def update(self, path: str, fields: Dict[str, Any]):
        await self._run(self.client.document(path).update, fields)

    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        _, doc_ref = await self._run(self.client.collection(collection_path).add, fields)
        return doc_ref.id

    async def delete(self, path: str):
        await self._run(self.client.document(path).delete)

    async def commit(self, writes: Sequence[Write]):
        batch = self.client.batch()
        for write in writes:
            doc_ref = self.client.document(write.path)
            if write.kind == "set":
                batch.set(doc_ref, write.fields, merge=write.merge)
            elif write.kind == "delete":
                batch.delete(doc_ref)
            else:
                raise ValueError(f"Unsupported batch write: {write.kind}")
        await self._run(batch.commit)

    async def query(
        self,
        collection_path: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Document]:
        query = self._query(collection_path, filters, order_by, descending)

        def stream():
            return [Document(doc.id, doc.to_dict() or {}) for doc in query.stream()]

        return await self._run(stream)

    def subscribe(
        self,
        collection_path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Unsubscribe:
        self.ensure_live_access()
        loop = asyncio.get_running_loop()
        query = self._query(collection_path, filters, order_by, descending)

        handle = _WatchHandle(loop, on_next, on_error)
        try:
            handle.watch = query.on_snapshot(handle.on_snapshot)
        except google_exceptions.GoogleAPICallError as e:
            raise map_google_error(e) from e

        handle.health_task = loop.create_task(handle.supervise(self.health_interval))
        logger.info(f"Listening to {collection_path}")
        return handle.close
