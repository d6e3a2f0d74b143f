from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LEFT = "left"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Participant(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str
    display_name: str = Field(default="Anonymous", alias="name")
    instrument_id: str = Field(default="piano", alias="instrument")
    avatar_ref: str = Field(default="", alias="avatar")
    is_host: bool = Field(default=False, alias="isHost")
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    muted: bool = False
    is_in_room: bool = Field(default=True, alias="isInRoom")
    joined_at: Optional[int] = Field(default=None, alias="joinedAt")
    left_at: Optional[int] = Field(default=None, alias="leftAt")
    last_seen: Optional[int] = Field(default=None, alias="lastSeen")
    heartbeat_timestamp: int = Field(default=0, alias="heartbeatTimestamp")


class Room(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str = ""
    name: str = "Untitled Room"
    description: str = ""
    visibility: Visibility = Visibility.PUBLIC
    max_participants: int = Field(default=3, alias="maxParticipants")
    host_id: str = Field(default="", alias="hostId")
    creator_id: str = Field(default="", alias="creatorId")
    host_instrument_id: str = Field(default="piano", alias="hostInstrument")
    participants: List[Participant] = Field(default_factory=list)
    participant_ids: List[str] = Field(default_factory=list, alias="participantIds")
    # Ids exactly as the stored record listed them, before reconciliation
    declared_participant_ids: List[str] = Field(default_factory=list, exclude=True)
    pending_join_requests: List[str] = Field(default_factory=list, alias="pendingRequests")
    last_activity: Optional[int] = Field(default=None, alias="lastActivity")
    last_instrument_play: Optional[int] = Field(default=None, alias="lastInstrumentPlay")
    auto_close_after_inactivity: bool = Field(default=False, alias="autoCloseAfterInactivity")
    inactivity_timeout_minutes: int = Field(default=5, alias="inactivityTimeout")
    chat_disabled: bool = Field(default=False, alias="isChatDisabled")
    join_code: Optional[str] = Field(default=None, alias="joinCode")
    allow_different_instruments: bool = Field(default=True, alias="allowDifferentInstruments")

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC.value


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    sender_id: str = Field(default="", alias="senderId")
    sender_name: str = Field(default="Anonymous", alias="senderName")
    sender_avatar: str = Field(default="", alias="senderAvatar")
    text: str = ""
    timestamp: int = 0
    read: bool = Field(default=False, alias="isRead")
    key: str = ""


class Notification(BaseModel):
    title: str
    message: str
    severity: Severity = Severity.INFO


class AuthUser(BaseModel):
    id: str
    display_name: str = "Anonymous"
    avatar_ref: str = ""


class UserStatus(BaseModel):
    is_participant: bool = False
    is_host: bool = False
    participant: Optional[Participant] = None
