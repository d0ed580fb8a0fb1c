"""Chat room, message and room-decision records."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field, model_validator

from spark.schemas.common import ApiModel, DocumentModel, Timestamp


class RoomStatus(str, Enum):
    ACTIVE = "active"
    CONNECTED = "connected"
    EXPIRED = "expired"
    PASSED = "passed"

    @property
    def is_terminal(self) -> bool:
        return self is not RoomStatus.ACTIVE


class RoomDecision(str, Enum):
    CONNECT = "connect"
    PASS = "pass"
    EXTEND = "extend"


class MessageType(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    IMAGE = "image"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _MESSAGE_STATUS_ORDER.index(self)


_MESSAGE_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class Room(DocumentModel):
    id: str
    match_id: str
    participants: list[str] = Field(min_length=2, max_length=2)
    day_number: int = Field(default=1, ge=1, le=7)
    started_at: Timestamp
    expires_at: Timestamp
    last_message_at: Timestamp
    message_count: int = 0
    status: RoomStatus = RoomStatus.ACTIVE
    decisions: dict[str, RoomDecision] = Field(default_factory=dict)
    extensions_used: int = Field(default=0, ge=0)
    created_at: Timestamp

    @model_validator(mode="after")
    def _decisions_from_participants(self) -> "Room":
        unknown = set(self.decisions) - set(self.participants)
        if unknown:
            raise ValueError(f"decisions recorded for non-participants: {sorted(unknown)}")
        if any(d is RoomDecision.EXTEND for d in self.decisions.values()):
            raise ValueError("extend is not a recordable decision")
        return self

    def other_participant(self, user_id: str) -> str:
        return next(p for p in self.participants if p != user_id)

    @property
    def all_decided(self) -> bool:
        return all(p in self.decisions for p in self.participants)

    @property
    def mutual_connect(self) -> bool:
        return self.all_decided and all(
            self.decisions[p] is RoomDecision.CONNECT for p in self.participants
        )


class Message(DocumentModel):
    id: str
    room_id: str
    sender_id: str
    text: str = ""
    type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    duration: Optional[float] = None
    status: MessageStatus = MessageStatus.SENT
    created_at: Timestamp


# ── Request / response models ─────────────────────────────────────────────


class RoomDecisionRequest(ApiModel):
    decision: str


class RoomDecisionResult(ApiModel):
    success: bool = True
    status: RoomStatus
    extended: bool = False
    mutual_match: Optional[bool] = None
    awaiting_other: bool = False
    day_number: int
    expires_at: Timestamp


class SendMessageRequest(ApiModel):
    text: Optional[str] = None
    type: str = "text"
    media_url: Optional[str] = None
    duration: Optional[float] = None


class SendMessageResponse(ApiModel):
    success: bool = True
    message_id: str


class MessagesResponse(ApiModel):
    messages: list[dict]


class MarkMessagesResponse(ApiModel):
    success: bool = True
    marked_count: int


class ActiveRoomItem(ApiModel):
    room: dict
    other_user: dict
    last_message: Optional[str] = None
    last_message_time: Timestamp
    unread_count: int = 0


class ActiveRoomsResponse(ApiModel):
    rooms: list[ActiveRoomItem]
