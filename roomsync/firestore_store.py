import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from .errors import NotFoundError, RoomPermissionError, StoreError, TransientStoreError
from .store import DocumentStore, OnData, OnError, Unsubscribe, is_collection_path

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.Aborted,
)


def translate_error(error: Exception) -> Exception:
    """Map google-api-core failures onto the store error taxonomy"""
    if isinstance(error, StoreError):
        return error
    if isinstance(error, google_exceptions.NotFound):
        return NotFoundError(str(error))
    if isinstance(error, google_exceptions.PermissionDenied):
        return RoomPermissionError(str(error))
    if isinstance(error, TRANSIENT_ERRORS):
        return TransientStoreError(str(error))
    if isinstance(error, google_exceptions.GoogleAPICallError):
        return TransientStoreError(str(error))
    return error


def to_plain(data: Dict[str, Any]) -> Dict[str, Any]:
    """Firestore timestamps come back as datetimes; keep them as ISO strings"""
    plain = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            plain[key] = value.isoformat()
        elif isinstance(value, dict):
            plain[key] = to_plain(value)
        elif isinstance(value, list):
            plain[key] = [to_plain(v) if isinstance(v, dict) else v for v in value]
        else:
            plain[key] = value
    return plain


class FirestoreDocumentStore(DocumentStore):
    """Document store backed by Google Cloud Firestore.

    The synchronous client is used (watch streams are only available there);
    blocking calls run in a worker thread and snapshot callbacks, which
    Firestore delivers on its own thread, are handed back to the event loop.
    """

    def __init__(self, client: Optional[firestore.Client] = None, key_file: Optional[str] = None):
        if client is not None:
            self.db = client
            return
        key_file = key_file or os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")
        if key_file and os.path.exists(key_file):
            self.db = firestore.Client.from_service_account_json(key_file)
            logger.info("✅ Firestore client initialized with service account: %s", key_file)
        else:
            self.db = firestore.Client()
            logger.info("✅ Firestore client initialized with default credentials")

    def _ref(self, path: str):
        if is_collection_path(path):
            return self.db.collection(path)
        return self.db.document(path)

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as e:
            raise translate_error(e) from e

    def subscribe(self, path: str, on_data: OnData, on_error: OnError) -> Unsubscribe:
        loop = asyncio.get_running_loop()
        collection = is_collection_path(path)

        def handle(snapshot, changes, read_time):
            try:
                if collection:
                    payload = [{**to_plain(doc.to_dict() or {}), "id": doc.id} for doc in snapshot]
                else:
                    doc = snapshot[0] if snapshot else None
                    payload = {**to_plain(doc.to_dict() or {}), "id": doc.id} if doc is not None and doc.exists else None
            except Exception as e:
                logger.error("Error reading snapshot for %s: %s", path, e)
                loop.call_soon_threadsafe(on_error, translate_error(e))
                return
            loop.call_soon_threadsafe(on_data, payload)

        try:
            watch = self._ref(path).on_snapshot(handle)
        except Exception as e:
            logger.error("Error setting up listener for %s: %s", path, e)
            on_error(translate_error(e))
            return lambda: None

        def unsubscribe():
            try:
                watch.unsubscribe()
            except Exception as e:
                logger.warning("Error closing listener for %s: %s", path, e)

        return unsubscribe

    async def get_one(self, path: str) -> Optional[Dict[str, Any]]:
        doc = await self._call(self.db.document(path).get)
        if not doc.exists:
            return None
        return {**to_plain(doc.to_dict() or {}), "id": doc.id}

    async def get_collection(self, path: str) -> List[Dict[str, Any]]:
        def fetch():
            return [{**to_plain(doc.to_dict() or {}), "id": doc.id} for doc in self.db.collection(path).stream()]

        return await self._call(fetch)

    async def set_one(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self._call(self.db.document(path).set, data, merge=merge)

    async def update_fields(self, path: str, partial: Dict[str, Any]) -> None:
        await self._call(self.db.document(path).update, partial)

    async def delete_one(self, path: str) -> None:
        await self._call(self.db.document(path).delete)

    async def delete_collection(self, path: str) -> None:
        def purge():
            docs = list(self.db.collection(path).stream())
            for doc in docs:
                doc.reference.delete()
            return len(docs)

        deleted = await self._call(purge)
        logger.info("🧹 Deleted %d documents from %s", deleted, path)
