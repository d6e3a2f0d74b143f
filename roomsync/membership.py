"""Room membership and moderation writes.

Every operation is a read-then-write on the room document and only touches
the fields its caller owns:

    any participant   its own participants[] entry, its own id in participantIds
    host              settings fields, other entries' moderation flags,
                      pendingRequests, hostId, room deletion

There is no cross-client locking, so two clients editing the participants
list at the same moment can overwrite each other (last write wins). Each
write therefore rebuilds the list from the freshest read and changes as
little as possible.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .clock import AsyncioClock, Clock, to_iso
from .errors import JoinRejectedError, NotFoundError, RoomPermissionError
from .models import AuthUser, Room
from .normalizer import derive_user_status, normalize
from .store import DocumentStore, chat_path, room_path

logger = logging.getLogger(__name__)

# Stored field name -> accepted value types
HOST_SETTINGS_FIELDS = {
    "name": (str,),
    "description": (str,),
    "isPublic": (bool,),
    "maxParticipants": (int,),
    "hostInstrument": (str,),
    "autoCloseAfterInactivity": (bool,),
    "inactivityTimeout": (int,),
    "isChatDisabled": (bool,),
    "joinCode": (str, type(None)),
    "allowDifferentInstruments": (bool,),
}


class LeaveResult(BaseModel):
    room_deleted: bool = False
    new_host_id: Optional[str] = None


class RoomService:
    def __init__(self, store: DocumentStore, rooms_collection: str = "musicRooms", clock: Optional[Clock] = None):
        self.store = store
        self.rooms_collection = rooms_collection
        self.clock = clock or AsyncioClock()

    def _path(self, room_id: str) -> str:
        return room_path(self.rooms_collection, room_id)

    def _now_iso(self) -> str:
        return to_iso(self.clock.now_ms())

    async def _load(self, room_id: str) -> Dict[str, Any]:
        data = await self.store.get_one(self._path(room_id))
        if data is None:
            raise NotFoundError(f"Room {room_id} not found")
        return data

    async def get_room(self, room_id: str) -> Room:
        """Fetch and normalize a room record"""
        data = await self._load(room_id)
        return normalize(data, now_ms=self.clock.now_ms())

    def _require_host(self, room: Room, user_id: str, action: str) -> None:
        status = derive_user_status(user_id, room)
        if not (status.is_host or (room.host_id and room.host_id == user_id)):
            logger.warning("❌ %s tried to %s in room %s without being host", user_id, action, room.id)
            raise RoomPermissionError(f"Only the host can {action}")

    @staticmethod
    def _entries(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        participants = data.get("participants")
        if not isinstance(participants, list):
            return []
        return [p for p in participants if isinstance(p, dict)]

    @staticmethod
    def _ids(data: Dict[str, Any]) -> List[str]:
        ids = data.get("participantIds")
        if not isinstance(ids, list):
            return []
        return [i for i in ids if isinstance(i, str)]

    # -- joining -----------------------------------------------------------

    async def join_room(self, room_id: str, user: AuthUser, join_code: Optional[str] = None) -> Room:
        """Add a user to the room, enforcing capacity and private access"""
        data = await self._load(room_id)
        now = self.clock.now_ms()
        room = normalize(data, now_ms=now)

        if derive_user_status(user.id, room).is_participant:
            logger.info("User %s is already a participant of %s", user.id, room_id)
            return room

        if len(room.participants) >= room.max_participants:
            raise JoinRejectedError("Room is full.")

        if not room.is_public:
            is_host = room.host_id == user.id
            has_code = bool(join_code) and room.join_code == join_code
            if not (is_host or has_code):
                raise JoinRejectedError("You need approval or the correct join code to join this private room.")

        participants = self._entries(data)
        participants.append(self._new_participant_entry(user.id, user.display_name, user.avatar_ref, room, now))
        ids = self._ids(data)
        if user.id not in ids:
            ids.append(user.id)
        pending = [uid for uid in room.pending_join_requests if uid != user.id]

        await self.store.update_fields(
            self._path(room_id),
            {
                "participants": participants,
                "participantIds": ids,
                "pendingRequests": pending,
                "lastActivity": to_iso(now),
            },
        )
        logger.info("✅ Added %s to room %s (%d participants)", user.id, room_id, len(participants))
        return normalize({**data, "participants": participants, "participantIds": ids, "pendingRequests": pending}, now)

    def _new_participant_entry(self, user_id: str, name: str, avatar: str, room: Room, now: int) -> Dict[str, Any]:
        return {
            "id": user_id,
            "name": name or "Anonymous",
            "instrument": "piano" if room.allow_different_instruments else room.host_instrument_id,
            "avatar": avatar or "",
            "isHost": room.host_id == user_id,
            "status": "active",
            "muted": False,
            "joinedAt": to_iso(now),
            "lastSeen": to_iso(now),
            "isInRoom": True,
            "heartbeatTimestamp": now,
        }

    async def request_to_join(self, room_id: str, user_id: str) -> None:
        """Queue a join request for the host to answer"""
        data = await self._load(room_id)
        room = normalize(data, now_ms=self.clock.now_ms())
        if derive_user_status(user_id, room).is_participant or user_id in room.pending_join_requests:
            return
        await self.store.update_fields(
            self._path(room_id),
            {"pendingRequests": room.pending_join_requests + [user_id], "lastActivity": self._now_iso()},
        )
        logger.info("📨 %s requested to join %s", user_id, room_id)

    async def handle_join_request(
        self, room_id: str, host_id: str, user_id: str, approve: bool, display_name: str = "Anonymous"
    ) -> None:
        """Approve or deny a pending join request (host only)"""
        data = await self._load(room_id)
        now = self.clock.now_ms()
        room = normalize(data, now_ms=now)
        self._require_host(room, host_id, "answer join requests")

        update: Dict[str, Any] = {
            "pendingRequests": [uid for uid in room.pending_join_requests if uid != user_id],
            "lastActivity": to_iso(now),
        }
        if approve and not derive_user_status(user_id, room).is_participant:
            if len(room.participants) >= room.max_participants:
                raise JoinRejectedError("Room is full.")
            participants = self._entries(data)
            participants.append(self._new_participant_entry(user_id, display_name, "", room, now))
            ids = self._ids(data)
            if user_id not in ids:
                ids.append(user_id)
            update["participants"] = participants
            update["participantIds"] = ids

        await self.store.update_fields(self._path(room_id), update)
        logger.info("Join request of %s in %s %s", user_id, room_id, "approved" if approve else "denied")

    # -- leaving -----------------------------------------------------------

    async def leave_room(self, room_id: str, user_id: str) -> LeaveResult:
        """Voluntary departure. A departing host hands the role to participants[0] of the remaining list."""
        data = await self.store.get_one(self._path(room_id))
        if data is None:
            logger.info("Room %s doesn't exist, nothing to leave", room_id)
            return LeaveResult()

        participants = self._entries(data)
        leaving = next((p for p in participants if p.get("id") == user_id), None)
        if leaving is None:
            logger.info("User %s not found in room %s", user_id, room_id)
            return LeaveResult()

        remaining = [p for p in participants if p.get("id") != user_id]
        ids = [i for i in self._ids(data) if i != user_id]

        if not remaining:
            logger.info("Room %s is empty after %s left, deleting it", room_id, user_id)
            await self.destroy_room(room_id)
            return LeaveResult(room_deleted=True)

        update: Dict[str, Any] = {
            "participants": remaining,
            "participantIds": ids,
            "lastActivity": self._now_iso(),
        }
        result = LeaveResult()
        if leaving.get("isHost") is True or data.get("hostId") == user_id:
            new_host = remaining[0]
            update["participants"] = [{**p, "isHost": p is new_host} for p in remaining]
            update["hostId"] = new_host.get("id")
            result.new_host_id = new_host.get("id")
            logger.info("👑 Transferring host of %s from %s to %s", room_id, user_id, result.new_host_id)

        await self.store.update_fields(self._path(room_id), update)
        logger.info("User %s left room %s", user_id, room_id)
        return result

    async def remove_participant(self, room_id: str, host_id: str, target_id: str) -> None:
        """Kick a participant (host only)"""
        data = await self._load(room_id)
        room = normalize(data, now_ms=self.clock.now_ms())
        self._require_host(room, host_id, "remove participants")
        if target_id == host_id:
            raise RoomPermissionError("The host cannot remove themself; leave the room instead")

        participants = self._entries(data)
        if not any(p.get("id") == target_id for p in participants):
            logger.info("User %s not found in room %s", target_id, room_id)
            return
        await self.store.update_fields(
            self._path(room_id),
            {
                "participants": [p for p in participants if p.get("id") != target_id],
                "participantIds": [i for i in self._ids(data) if i != target_id],
                "lastActivity": self._now_iso(),
            },
        )
        logger.info("🚫 Host %s removed %s from room %s", host_id, target_id, room_id)

    # -- per-participant fields ---------------------------------------------

    async def _rewrite_entry(self, room_id: str, user_id: str, changes: Dict[str, Any]) -> bool:
        data = await self._load(room_id)
        found = False
        participants = []
        for entry in self._entries(data):
            if entry.get("id") == user_id:
                entry = {**entry, **changes}
                found = True
            participants.append(entry)
        if not found:
            return False
        await self.store.update_fields(
            self._path(room_id), {"participants": participants, "lastActivity": self._now_iso()}
        )
        return True

    async def set_participant_muted(self, room_id: str, host_id: str, target_id: str, muted: bool) -> bool:
        """Mute or unmute a participant (host only)"""
        room = await self.get_room(room_id)
        self._require_host(room, host_id, "mute participants")
        return await self._rewrite_entry(room_id, target_id, {"muted": muted})

    async def update_instrument(self, room_id: str, user_id: str, instrument: str) -> bool:
        """Change the instrument on the user's own entry"""
        return await self._rewrite_entry(room_id, user_id, {"instrument": instrument})

    # -- room-level fields ---------------------------------------------------

    async def update_room_settings(self, room_id: str, user_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Apply whitelisted room settings (host only)"""
        unknown = [key for key in settings if key not in HOST_SETTINGS_FIELDS]
        if unknown:
            raise ValueError(f"Unknown room settings: {', '.join(sorted(unknown))}")
        for key, value in settings.items():
            allowed = HOST_SETTINGS_FIELDS[key]
            if isinstance(value, bool) and bool not in allowed:
                raise ValueError(f"Invalid value for {key}")
            if not isinstance(value, allowed):
                raise ValueError(f"Invalid value for {key}")

        room = await self.get_room(room_id)
        self._require_host(room, user_id, "change room settings")
        update = {**settings, "lastActivity": self._now_iso()}
        await self.store.update_fields(self._path(room_id), update)
        logger.info("⚙️ Room %s settings updated by %s: %s", room_id, user_id, sorted(settings))
        return update

    async def touch_activity(self, room_id: str, field: str = "lastActivity") -> None:
        """Stamp an activity timestamp on the room"""
        if field not in ("lastActivity", "lastInstrumentPlay"):
            raise ValueError(f"Not an activity field: {field}")
        await self.store.update_fields(self._path(room_id), {field: self._now_iso()})

    async def close_room(self, room_id: str, user_id: str) -> None:
        """Close the room on the host's request"""
        room = await self.get_room(room_id)
        self._require_host(room, user_id, "close the room")
        await self.destroy_room(room_id)
        logger.info("🔒 Room %s closed by host %s", room_id, user_id)

    async def destroy_room(self, room_id: str) -> None:
        """Delete the room and its chat messages"""
        await self.store.delete_collection(chat_path(self.rooms_collection, room_id))
        await self.store.delete_one(self._path(room_id))
        logger.info("🧹 Deleted room %s and its chat", room_id)
