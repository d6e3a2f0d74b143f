"""Document store adapter interface and the in-process memory store.

Paths follow the Firestore layout: an even number of segments names a
document (``rooms/abc``), an odd number names a collection
(``rooms/abc/chat``). Subscribing to a document delivers its data (or
``None`` once it is gone); subscribing to a collection delivers the list of
its documents, each carrying its ``id``.
"""

import copy
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError

logger = logging.getLogger(__name__)

OnData = Callable[[Any], None]
OnError = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


def is_collection_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 1


def split_path(path: str) -> List[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def room_path(rooms_collection: str, room_id: str) -> str:
    return f"{rooms_collection}/{room_id}"


def chat_path(rooms_collection: str, room_id: str) -> str:
    return f"{rooms_collection}/{room_id}/chat"


class DocumentStore:
    """Asynchronous read/write/delete/subscribe primitives over shared documents.

    Implementations raise ``TransientStoreError`` for retryable failures,
    ``NotFoundError`` when a document that must exist is absent and
    ``RoomPermissionError`` when the backend refuses a write.
    """

    def subscribe(self, path: str, on_data: OnData, on_error: OnError) -> Unsubscribe:
        raise NotImplementedError

    async def get_one(self, path: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_collection(self, path: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def set_one(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        raise NotImplementedError

    async def update_fields(self, path: str, partial: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def delete_one(self, path: str) -> None:
        raise NotImplementedError

    async def delete_collection(self, path: str) -> None:
        raise NotImplementedError


class MemoryDocumentStore(DocumentStore):
    """Single-process store used for local development and tests.

    Listeners are notified synchronously after every write, and once on
    subscribe with the current state, mirroring Firestore's initial snapshot.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._listeners: Dict[str, List[tuple]] = defaultdict(list)
        self.calls: List[tuple] = []

    # -- helpers -----------------------------------------------------------

    def _key(self, path: str) -> str:
        return "/".join(split_path(path))

    def _collection_docs(self, path: str) -> List[Dict[str, Any]]:
        prefix = self._key(path) + "/"
        depth = len(split_path(path)) + 1
        docs = []
        for key, data in self._docs.items():
            if key.startswith(prefix) and len(key.split("/")) == depth:
                docs.append({**copy.deepcopy(data), "id": key.rsplit("/", 1)[1]})
        return docs

    def _payload(self, path: str):
        if is_collection_path(path):
            return self._collection_docs(path)
        data = self._docs.get(self._key(path))
        if data is None:
            return None
        return {**copy.deepcopy(data), "id": split_path(path)[-1]}

    def _notify(self, doc_key: str) -> None:
        parent = doc_key.rsplit("/", 1)[0]
        for target in (doc_key, parent):
            for listener in list(self._listeners.get(target, [])):
                on_data, _ = listener
                on_data(self._payload(target))

    def fail_next(self, path: str, error: Exception) -> None:
        """Deliver ``error`` to every listener of ``path`` (test hook)"""
        for _, on_error in list(self._listeners.get(self._key(path), [])):
            on_error(error)

    def listener_count(self, path: str) -> int:
        return len(self._listeners.get(self._key(path), []))

    def seed(self, path: str, data: Dict[str, Any]) -> None:
        """Write without notifying listeners"""
        self._docs[self._key(path)] = copy.deepcopy(data)

    def peek(self, path: str) -> Optional[Dict[str, Any]]:
        data = self._docs.get(self._key(path))
        return copy.deepcopy(data) if data is not None else None

    # -- DocumentStore -----------------------------------------------------

    def subscribe(self, path: str, on_data: OnData, on_error: OnError) -> Unsubscribe:
        key = self._key(path)
        listener = (on_data, on_error)
        self._listeners[key].append(listener)
        self.calls.append(("subscribe", key))

        def unsubscribe():
            if listener in self._listeners.get(key, []):
                self._listeners[key].remove(listener)

        on_data(self._payload(key))
        return unsubscribe

    async def get_one(self, path: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_one", self._key(path)))
        return self._payload(path)

    async def get_collection(self, path: str) -> List[Dict[str, Any]]:
        self.calls.append(("get_collection", self._key(path)))
        return self._collection_docs(path)

    async def set_one(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        key = self._key(path)
        self.calls.append(("set_one", key))
        data = {k: v for k, v in copy.deepcopy(data).items() if k != "id"}
        if merge and key in self._docs:
            self._docs[key].update(data)
        else:
            self._docs[key] = data
        self._notify(key)

    async def update_fields(self, path: str, partial: Dict[str, Any]) -> None:
        key = self._key(path)
        self.calls.append(("update_fields", key))
        if key not in self._docs:
            raise NotFoundError(f"No document to update: {key}")
        self._docs[key].update(copy.deepcopy(partial))
        self._notify(key)

    async def delete_one(self, path: str) -> None:
        key = self._key(path)
        self.calls.append(("delete_one", key))
        if self._docs.pop(key, None) is not None:
            self._notify(key)

    async def delete_collection(self, path: str) -> None:
        key = self._key(path)
        self.calls.append(("delete_collection", key))
        doomed = [doc["id"] for doc in self._collection_docs(key)]
        for doc_id in doomed:
            self._docs.pop(f"{key}/{doc_id}", None)
        if doomed:
            for on_data, _ in list(self._listeners.get(key, [])):
                on_data(self._collection_docs(key))
        logger.debug("Deleted %d documents from %s", len(doomed), key)
