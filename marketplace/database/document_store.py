from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple
from marketplace.services.connectivity import NetworkGate
from marketplace.utils.exceptions import StoreError, UNAVAILABLE

# (field, operator, value), operators as Firestore spells them: "==", "array_contains", ...
Filter = Tuple[str, str, Any]


class Document(NamedTuple):
    id: str
    data: Dict[str, Any]


class Write(NamedTuple):
    """One operation of an atomic batch: kind is "set" or "delete"."""
    kind: str
    path: str
    fields: Optional[Dict[str, Any]] = None
    merge: bool = False


SnapshotCallback = Callable[[List[Document]], None]
ErrorCallback = Callable[[StoreError], None]
Unsubscribe = Callable[[], None]


class DocumentStore(ABC):
    """
    Path-addressed document store. Paths alternate collection and document
    segments ("chats/{id}/messages/{messageId}"). Failures are raised as
    StoreError; listener callbacks are always invoked on the event loop.
    """

    def __init__(self, gate: Optional[NetworkGate] = None):
        self.gate = gate or NetworkGate()

    def ensure_live_access(self):
        """Live listens need the gate open; one-shot reads and writes never wait on it."""
        if not self.gate.enabled:
            raise StoreError(UNAVAILABLE, "Live store access is disabled")

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False):
        ...

    @abstractmethod
    async def update(self, path: str, fields: Dict[str, Any]):
        ...

    @abstractmethod
    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def delete(self, path: str):
        ...

    @abstractmethod
    async def commit(self, writes: Sequence[Write]):
        """Apply all writes atomically."""
        ...

    @abstractmethod
    async def query(
        self,
        collection_path: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Document]:
        ...

    @abstractmethod
    def subscribe(
        self,
        collection_path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Unsubscribe:
        """
        Open a live query. Every change delivers the full ordered result set.
        Must be called from the event loop.
        """
        ...


def split_path(path: str) -> List[str]:
    return [segment for segment in path.strip("/").split("/") if segment]
