"""Turns raw, possibly malformed room records into canonical ``Room`` models.

Nothing in here raises: stored records are written by many clients running
different versions, so every field is coerced to a safe default instead.

Defaults:
    participants               -> []
    participantIds             -> ids of participants (then reconciled, see below)
    pendingRequests            -> []
    isPublic                   -> True
    allowDifferentInstruments  -> True
    other room booleans        -> False
    name                       -> "Untitled Room"
    maxParticipants            -> 3
    inactivityTimeout          -> 5 (minutes)
    hostId                     -> creatorId, then ""

Participant entries that are not mappings or carry no id are dropped.
A participant is "in the room" unless ``isInRoom`` is explicitly false, and a
missing heartbeat counts as fresh (``now_ms``), so a half-written entry never
makes a live room look abandoned.

``participant_ids`` is always a superset of the participants' ids. The list
as the record declared it is kept in ``declared_participant_ids``; the
cleanup scheduler treats that one as authoritative.
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, List, Optional

from .models import Participant, ParticipantStatus, Room, UserStatus, Visibility

logger = logging.getLogger(__name__)

_STATUSES = {status.value for status in ParticipantStatus}


def to_epoch_ms(value: Any) -> Optional[int]:
    """Coerce numbers, ISO-8601 strings and datetimes to epoch milliseconds"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and not math.isfinite(value) else int(value)
    if isinstance(value, datetime):
        try:
            return int(round(value.timestamp() * 1000))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return int(round(datetime.fromisoformat(text).timestamp() * 1000))
        except (OverflowError, OSError, ValueError):
            pass
        try:
            return int(float(text))
        except (OverflowError, ValueError):
            return None
    timestamp = getattr(value, "timestamp", None)
    if callable(timestamp):
        try:
            return int(round(timestamp() * 1000))
        except (OverflowError, OSError, TypeError, ValueError):
            return None
    return None


def _str(value: Any, default: str) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    if isinstance(value, str):
        try:
            parsed = int(value)
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _flag(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _id_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, (list, tuple)):
        return None
    ids = []
    for item in value:
        if isinstance(item, str) and item and item not in ids:
            ids.append(item)
    return ids


def normalize_participant(raw: Any, now_ms: int) -> Optional[Participant]:
    if not isinstance(raw, dict):
        return None
    participant_id = _str(raw.get("id"), "")
    if not participant_id:
        return None

    status = raw.get("status")
    heartbeat = to_epoch_ms(raw.get("heartbeatTimestamp"))
    return Participant(
        id=participant_id,
        display_name=_str(raw.get("name"), "Anonymous"),
        instrument_id=_str(raw.get("instrument"), "piano"),
        avatar_ref=_str(raw.get("avatar"), ""),
        is_host=raw.get("isHost") is True,
        status=status if status in _STATUSES else ParticipantStatus.ACTIVE.value,
        muted=raw.get("muted") is True,
        is_in_room=raw.get("isInRoom") is not False,
        joined_at=to_epoch_ms(raw.get("joinedAt")),
        left_at=to_epoch_ms(raw.get("leftAt")),
        last_seen=to_epoch_ms(raw.get("lastSeen")),
        heartbeat_timestamp=heartbeat if heartbeat else now_ms,
    )


def normalize(raw: Any, now_ms: Optional[int] = None) -> Room:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if not isinstance(raw, dict):
        logger.warning("Room snapshot is not a mapping (%s), using an empty room", type(raw).__name__)
        raw = {}

    participants = []
    raw_participants = raw.get("participants")
    if isinstance(raw_participants, (list, tuple)):
        seen = set()
        for entry in raw_participants:
            participant = normalize_participant(entry, now_ms)
            if participant is None or participant.id in seen:
                continue
            seen.add(participant.id)
            participants.append(participant)

    declared_ids = _id_list(raw.get("participantIds"))
    if declared_ids is None:
        declared_ids = [p.id for p in participants]
    participant_ids = list(declared_ids)
    for participant in participants:
        if participant.id not in participant_ids:
            participant_ids.append(participant.id)
    if len(participant_ids) != len(declared_ids):
        logger.debug("Reconciled participantIds for room %s: %s -> %s", raw.get("id"), declared_ids, participant_ids)

    creator_id = _str(raw.get("creatorId"), "")
    join_code = raw.get("joinCode")

    return Room(
        id=_str(raw.get("id"), ""),
        name=_str(raw.get("name"), "Untitled Room"),
        description=_str(raw.get("description"), ""),
        visibility=Visibility.PRIVATE if raw.get("isPublic") is False else Visibility.PUBLIC,
        max_participants=_int(raw.get("maxParticipants"), 3),
        host_id=_str(raw.get("hostId"), creator_id),
        creator_id=creator_id,
        host_instrument_id=_str(raw.get("hostInstrument"), "piano"),
        participants=participants,
        participant_ids=participant_ids,
        declared_participant_ids=declared_ids,
        pending_join_requests=_id_list(raw.get("pendingRequests")) or [],
        last_activity=to_epoch_ms(raw.get("lastActivity")),
        last_instrument_play=to_epoch_ms(raw.get("lastInstrumentPlay")),
        auto_close_after_inactivity=_flag(raw.get("autoCloseAfterInactivity"), False),
        inactivity_timeout_minutes=_int(raw.get("inactivityTimeout"), 5),
        chat_disabled=_flag(raw.get("isChatDisabled"), False),
        join_code=join_code if isinstance(join_code, str) and join_code else None,
        allow_different_instruments=_flag(raw.get("allowDifferentInstruments"), True),
    )


def derive_user_status(user_id: Optional[str], room: Optional[Room]) -> UserStatus:
    if not user_id or room is None:
        return UserStatus()
    for participant in room.participants:
        if participant.id == user_id:
            return UserStatus(is_participant=True, is_host=participant.is_host, participant=participant)
    return UserStatus()
