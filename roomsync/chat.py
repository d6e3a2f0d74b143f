import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from .clock import Clock, to_iso
from .config import Settings, settings as default_settings
from .controller import RoomView
from .membership import RoomService
from .models import AuthUser, ChatMessage, Severity
from .normalizer import to_epoch_ms
from .notifications import NotificationSink, safe_emit
from .store import DocumentStore, chat_path

logger = logging.getLogger(__name__)


def parse_message(doc: Dict[str, Any]) -> Optional[ChatMessage]:
    if not isinstance(doc, dict) or not doc.get("id"):
        return None
    text = doc.get("text")
    return ChatMessage(
        id=str(doc["id"]),
        sender_id=str(doc.get("senderId") or ""),
        sender_name=str(doc.get("senderName") or "Anonymous"),
        sender_avatar=str(doc.get("senderAvatar") or ""),
        text=text if isinstance(text, str) else "",
        timestamp=to_epoch_ms(doc.get("timestamp")) or 0,
        read=doc.get("isRead") is True,
    )


def order_messages(docs: List[Dict[str, Any]]) -> List[ChatMessage]:
    """Sort by timestamp (store delivery order is not trusted) and assign render keys"""
    messages = [m for m in (parse_message(doc) for doc in docs) if m is not None]
    messages.sort(key=lambda m: (m.timestamp, m.id))
    return [m.model_copy(update={"key": f"{m.id}-{index}"}) for index, m in enumerate(messages)]


def count_unread(messages: List[ChatMessage], user_id: str, last_seen_ms: int) -> int:
    return sum(1 for m in messages if m.sender_id != user_id and m.timestamp > last_seen_ms)


class RoomChatChannel:
    """Room chat: ordered message list, unread counter and gated sending"""

    def __init__(
        self,
        store: DocumentStore,
        room_id: str,
        user: AuthUser,
        access: Callable[[], RoomView],
        clock: Clock,
        notifier: NotificationSink,
        settings: Optional[Settings] = None,
        service: Optional[RoomService] = None,
    ):
        self.store = store
        self.room_id = room_id
        self.user = user
        self.access = access
        self.clock = clock
        self.notifier = notifier
        self.settings = settings or default_settings
        self.service = service or RoomService(store, self.settings.rooms_collection, clock)

        self.messages: List[ChatMessage] = []
        self.unread_count = 0
        self.loading = True
        self.last_seen_ms = clock.now_ms()
        self._session = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def path(self) -> str:
        return chat_path(self.settings.rooms_collection, self.room_id)

    def start(self) -> None:
        if self._unsubscribe:
            return
        self._session += 1
        session = self._session
        self.messages = []
        self.unread_count = 0
        self.loading = True
        self.last_seen_ms = self.clock.now_ms()
        logger.info("Setting up chat listener for room %s", self.room_id)
        unsubscribe = self.store.subscribe(
            self.path,
            lambda docs: self._on_messages(session, docs),
            lambda error: self._on_error(session, error),
        )
        if session == self._session:
            self._unsubscribe = unsubscribe
        else:
            unsubscribe()

    def stop(self) -> None:
        self._session += 1
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_messages(self, session: int, docs) -> None:
        if session != self._session:
            return
        initial_load = self.loading
        self.messages = order_messages(docs or [])
        self.loading = False
        self.unread_count = count_unread(self.messages, self.user.id, self.last_seen_ms)

        if initial_load or not self.messages:
            return
        latest = self.messages[-1]
        if latest.sender_id != self.user.id and latest.timestamp > self.last_seen_ms:
            safe_emit(self.notifier, "New Message", f"{latest.sender_name}: {latest.text[:50]}", Severity.INFO)

    def _on_error(self, session: int, error: Exception) -> None:
        if session != self._session:
            return
        logger.error("Chat listener error for room %s: %s", self.room_id, error)
        self.loading = False
        safe_emit(self.notifier, "Chat Error", "Failed to load chat messages", Severity.ERROR)

    def mark_chat_as_read(self) -> None:
        self.last_seen_ms = self.clock.now_ms()
        self.unread_count = 0

    async def send_message(self, text: str) -> bool:
        if not text or not text.strip():
            return False

        view = self.access()
        if not view.is_participant:
            safe_emit(self.notifier, "Access Denied", "You must be a participant to send messages", Severity.ERROR)
            return False
        if view.room is not None and view.room.chat_disabled and not view.is_host:
            safe_emit(self.notifier, "Chat Disabled", "Chat has been disabled by the host", Severity.WARNING)
            return False
        if view.user_info is not None and view.user_info.muted and not view.is_host:
            safe_emit(self.notifier, "Muted", "The host has muted you", Severity.WARNING)
            return False

        now = self.clock.now_ms()
        message = {
            "text": text[: self.settings.chat_message_max_length],
            "senderId": self.user.id,
            "senderName": self.user.display_name or "Anonymous",
            "senderAvatar": self.user.avatar_ref or "",
            "timestamp": to_iso(now),
            "isRead": False,
        }
        try:
            await self.store.set_one(f"{self.path}/{uuid.uuid4().hex}", message)
        except Exception as e:
            logger.error("Error sending message to room %s: %s", self.room_id, e)
            safe_emit(self.notifier, "Error", "Failed to send message", Severity.ERROR)
            return False

        try:
            await self.service.touch_activity(self.room_id)
        except Exception as e:
            logger.warning("Failed to update room activity for %s: %s", self.room_id, e)
        return True
