"""Presence heartbeat for the local participant.

Field ownership: a client only ever rewrites its *own* participant entry. The
write reads the whole participants list, replaces the matching entry and
writes the list back. Edits other clients make to the list between the read
and the write are lost (last write wins); the next heartbeat from those
clients restores their own entries.
"""

import logging
from typing import Optional

from .clock import Clock, TaskSet, TimerHandle, to_iso
from .store import DocumentStore

logger = logging.getLogger(__name__)


class PresenceHeartbeat:
    def __init__(self, store: DocumentStore, room_path: str, user_id: str, clock: Clock, interval: float = 30):
        self.store = store
        self.room_path = room_path
        self.user_id = user_id
        self.clock = clock
        self.interval = interval
        self.visible = True
        self._interval_handle: Optional[TimerHandle] = None
        self._tasks = TaskSet()

    @property
    def active(self) -> bool:
        return self._interval_handle is not None and self._interval_handle.active

    def activate(self) -> None:
        if self.active:
            return
        logger.info("💓 Starting heartbeat for %s in %s", self.user_id, self.room_path)
        self.visible = True
        self._tasks.spawn(self.beat(True))
        self._interval_handle = self.clock.call_every(self.interval, self._tick)

    def deactivate(self, announce_offline: bool = True) -> None:
        was_active = self.active
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None
        if was_active:
            logger.info("💤 Stopping heartbeat for %s in %s", self.user_id, self.room_path)
            # An in-flight beat must not mark the user present after this point
            self._tasks.cancel_all()
            if announce_offline:
                self._tasks.spawn(self.beat(False))

    def on_visibility_change(self, visible: bool) -> None:
        if not self.active:
            return
        self.visible = visible
        self._tasks.spawn(self.beat(visible))

    def on_unload(self) -> None:
        if self.active:
            self._tasks.spawn(self.beat(False))

    def _tick(self) -> None:
        self._tasks.spawn(self.beat(self.visible))

    async def flush(self) -> None:
        await self._tasks.wait()

    async def beat(self, visible: bool) -> bool:
        """Write one heartbeat. Returns False when nothing was written; never raises."""
        try:
            data = await self.store.get_one(self.room_path)
            if data is None:
                logger.debug("Heartbeat skipped, %s no longer exists", self.room_path)
                return False

            now = self.clock.now_ms()
            participants = data.get("participants")
            if not isinstance(participants, list):
                return False

            found = False
            updated = []
            for entry in participants:
                if isinstance(entry, dict) and entry.get("id") == self.user_id:
                    entry = {
                        **entry,
                        "lastSeen": to_iso(now),
                        "heartbeatTimestamp": now,
                        "isInRoom": visible,
                    }
                    if visible:
                        entry["status"] = "active"
                    found = True
                updated.append(entry)

            if not found:
                logger.debug("Heartbeat skipped, %s is not in %s", self.user_id, self.room_path)
                return False

            await self.store.update_fields(self.room_path, {"participants": updated})
            logger.debug("💓 Heartbeat %s -> %s (in room: %s)", self.user_id, now, visible)
            return True
        except Exception as e:
            logger.warning("Heartbeat write failed for %s in %s: %s", self.user_id, self.room_path, e)
            return False
