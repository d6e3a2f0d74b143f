"""Destroys abandoned rooms while tolerating transient reconnects.

A room is abandoned when nobody is *strictly active* and the record's
declared ``participantIds`` list is empty. Strictly active means:

    status == "active" and isInRoom
    and listed in the declared participantIds
    and (heartbeat younger than 90s or joined less than 30s ago)

Evaluations are debounced (10s). An abandoned room arms a 15s grace timer;
any later snapshot that shows a member cancels it. When the timer fires the
room is read once more and only destroyed if it is still abandoned.
"""

import logging
from typing import Callable, List, Optional

from .clock import Clock, TaskSet, TimerHandle
from .models import Participant, ParticipantStatus, Room, Severity
from .normalizer import normalize
from .notifications import Navigator, NotificationSink, safe_emit
from .store import DocumentStore, chat_path, room_path

logger = logging.getLogger(__name__)

HEARTBEAT_STALE_MS = 90_000
JOIN_GRACE_MS = 30_000


def is_strictly_active(
    participant: Participant,
    declared_ids: List[str],
    now_ms: int,
    stale_ms: int = HEARTBEAT_STALE_MS,
    join_grace_ms: int = JOIN_GRACE_MS,
) -> bool:
    if participant.id not in declared_ids:
        return False
    if participant.status != ParticipantStatus.ACTIVE.value or not participant.is_in_room:
        return False
    recent_heartbeat = now_ms - participant.heartbeat_timestamp < stale_ms
    joined_recently = participant.joined_at is not None and now_ms - participant.joined_at < join_grace_ms
    return recent_heartbeat or joined_recently


def strictly_active_participants(
    room: Room, now_ms: int, stale_ms: int = HEARTBEAT_STALE_MS, join_grace_ms: int = JOIN_GRACE_MS
) -> List[Participant]:
    declared = room.declared_participant_ids
    return [p for p in room.participants if is_strictly_active(p, declared, now_ms, stale_ms, join_grace_ms)]


def is_abandoned(room: Room, now_ms: int, stale_ms: int = HEARTBEAT_STALE_MS, join_grace_ms: int = JOIN_GRACE_MS) -> bool:
    if room.declared_participant_ids:
        return False
    return not strictly_active_participants(room, now_ms, stale_ms, join_grace_ms)


class RoomCleanupScheduler:
    def __init__(
        self,
        store: DocumentStore,
        room_id: str,
        clock: Clock,
        notifier: NotificationSink,
        navigator: Navigator,
        rooms_collection: str = "musicRooms",
        home_path: str = "/music-rooms",
        debounce: float = 10,
        grace_period: float = 15,
        stale_after: float = 90,
        join_grace: float = 30,
        on_destroyed: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.room_id = room_id
        self.clock = clock
        self.notifier = notifier
        self.navigator = navigator
        self.rooms_collection = rooms_collection
        self.home_path = home_path
        self.debounce_ms = int(debounce * 1000)
        self.grace_period = grace_period
        self.stale_ms = int(stale_after * 1000)
        self.join_grace_ms = int(join_grace * 1000)
        self.on_destroyed = on_destroyed

        self.evaluations = 0
        self.destroying = False
        self._closed = False
        self._last_evaluated_ms: Optional[int] = None
        self._timer: Optional[TimerHandle] = None
        self._tasks = TaskSet()

    @property
    def armed(self) -> bool:
        return self._timer is not None and self._timer.active

    def _abandoned(self, room: Room, now_ms: int) -> bool:
        return is_abandoned(room, now_ms, self.stale_ms, self.join_grace_ms)

    def evaluate(self, room: Room) -> bool:
        """Feed a fresh snapshot. Returns True when the snapshot was evaluated (not debounced)."""
        now = self.clock.now_ms()
        if self._last_evaluated_ms is not None and now - self._last_evaluated_ms < self.debounce_ms:
            # Debounced snapshots can still rescue an armed room, never arm one
            if self.armed and not self._abandoned(room, now):
                logger.info("✅ Cancelled cleanup for room %s - participant is back", self.room_id)
                self.cancel()
            else:
                logger.debug("Skipping cleanup check for room %s - too frequent", self.room_id)
            return False

        self._last_evaluated_ms = now
        self.evaluations += 1
        active = strictly_active_participants(room, now, self.stale_ms, self.join_grace_ms)
        logger.debug(
            "Cleanup analysis for %s: %d participants, %d declared ids, %d strictly active",
            self.room_id,
            len(room.participants),
            len(room.declared_participant_ids),
            len(active),
        )

        if active or room.declared_participant_ids:
            if self.armed:
                logger.info("✅ Cancelled cleanup for room %s - %d active participants", self.room_id, len(active))
            self.cancel()
            return True

        if not self.armed:
            logger.info("📅 Scheduled cleanup: %s (%ss)", self.room_id, self.grace_period)
            self._timer = self.clock.call_later(self.grace_period, self._fire)
        return True

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def shutdown(self) -> None:
        """Stop for good. A delete already under way finishes but reports nothing."""
        self._closed = True
        self.cancel()
        if not self.destroying:
            self._tasks.cancel_all()

    async def flush(self) -> None:
        await self._tasks.wait()

    def _fire(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._tasks.spawn(self.destroy())

    async def destroy(self) -> bool:
        """Re-check and delete the room. Failures are reported, never retried."""
        path = room_path(self.rooms_collection, self.room_id)
        try:
            data = await self.store.get_one(path)
            if self._closed:
                return False
            if data is not None:
                now = self.clock.now_ms()
                latest = normalize(data, now_ms=now)
                if not self._abandoned(latest, now):
                    logger.info("Room %s has members again, cleanup aborted", self.room_id)
                    return False
                logger.info("🧹 Destroying room %s due to complete inactivity", self.room_id)
                self.destroying = True
                await self.store.delete_collection(chat_path(self.rooms_collection, self.room_id))
                await self.store.delete_one(path)
        except Exception as e:
            self.destroying = False
            logger.error("❌ Error destroying empty room %s: %s", self.room_id, e)
            if not self._closed:
                safe_emit(self.notifier, "Cleanup Failed", "Could not close the empty room", Severity.ERROR)
            return False

        if self._closed:
            logger.info("Room %s destroyed after its session ended", self.room_id)
            return True

        if self.on_destroyed:
            self.on_destroyed()
        self.navigator.redirect(self.home_path, replace=True)
        safe_emit(
            self.notifier,
            "Room Closed",
            "Room was automatically closed as all participants have left",
            Severity.INFO,
        )
        return True
