import logging
from typing import Any, Dict, List, Optional, Sequence
from marketplace.database import connection
from marketplace.database.document_store import (
    Document, DocumentStore, ErrorCallback, Filter, SnapshotCallback, Unsubscribe, Write, split_path
)
from marketplace.services.connectivity import NetworkGate
from marketplace.utils.chat_id import is_party_to
from marketplace.utils.exceptions import StoreError, PERMISSION_DENIED

logger = logging.getLogger(__name__)


class AccessGuardedStore(DocumentStore):
    """
    Per-user view of a shared store. The admin SDK bypasses Firestore
    security rules, so the rules the web client relies on are enforced here:

    - chats/{id} and chats/{id}/messages: the caller must be one of the users
      encoded in the id, and a participant of an existing conversation
    - userChats/{owner}/chats: the owner, or a party to the pointer's conversation
    - items/{id}: read only
    """

    def __init__(self, inner: DocumentStore, user_id: str, gate: Optional[NetworkGate] = None):
        super().__init__(gate)
        self.inner = inner
        self.user_id = user_id

    def _deny(self, path: str):
        logger.warning(f"Denied {self.user_id} access to {path}")
        raise StoreError(PERMISSION_DENIED, "Missing or insufficient permissions")

    def _check(self, path: str, write: bool = False):
        segments = split_path(path)
        if not segments:
            self._deny(path)

        root = segments[0]
        if root == connection.CHATS:
            if len(segments) < 2 or not is_party_to(segments[1], self.user_id):
                self._deny(path)
            if len(segments) > 2 and segments[2] != connection.MESSAGES:
                self._deny(path)
            return

        if root == connection.USER_CHATS:
            if len(segments) < 3 or segments[2] != connection.CHATS:
                self._deny(path)
            if segments[1] == self.user_id:
                return
            # another user's pointer: only the single document, only for a shared conversation
            if len(segments) == 4 and is_party_to(segments[3], self.user_id):
                return
            self._deny(path)

        if root == connection.ITEMS and not write:
            return

        self._deny(path)

    def _check_participant(self, path: str, data: Optional[Dict[str, Any]]):
        segments = split_path(path)
        if data is None or segments[0] != connection.CHATS or len(segments) != 2:
            return
        if self.user_id not in (data.get("participants") or []):
            self._deny(path)

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        self._check(path)
        data = await self.inner.get(path)
        self._check_participant(path, data)
        return data

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False):
        self._check(path, write=True)
        await self.inner.set(path, fields, merge=merge)

    async def update(self, path: str, fields: Dict[str, Any]):
        self._check(path, write=True)
        await self.inner.update(path, fields)

    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        self._check(collection_path, write=True)
        return await self.inner.add(collection_path, fields)

    async def delete(self, path: str):
        # chat records are append-only for end users
        self._deny(path)

    async def commit(self, writes: Sequence[Write]):
        for write in writes:
            if write.kind != "set":
                self._deny(write.path)
            self._check(write.path, write=True)
        await self.inner.commit(writes)

    async def query(
        self,
        collection_path: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Document]:
        self._check_collection(collection_path)
        return await self.inner.query(collection_path, filters, order_by, descending)

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
        self._check_collection(collection_path)
        return self.inner.subscribe(collection_path, on_next, on_error, filters, order_by, descending)

    def _check_collection(self, collection_path: str):
        segments = split_path(collection_path)
        # listing someone else's chat list is never allowed
        if segments[:1] == [connection.USER_CHATS] and segments[1:2] != [self.user_id]:
            self._deny(collection_path)
        self._check(collection_path)
