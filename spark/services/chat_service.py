"""
SPARK — Room messaging

Messages live in their own collection keyed by a random id and point back to
their room.  Status only ever moves forward (sent → delivered → read) and only
the recipient moves it; each step is a compare-and-set on the message so a
late ``delivered`` can never overwrite ``read``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Optional

import structlog

from spark.config import Settings, get_settings
from spark.errors import InvalidArgumentError, NotFoundError
from spark.schemas.room import (
    ActiveRoomItem,
    ActiveRoomsResponse,
    Message,
    MessageStatus,
    MessageType,
    Room,
    RoomStatus,
)
from spark.services.notification_service import NotificationService
from spark.services.room_service import RoomService
from spark.services.user_directory import UserDirectory
from spark.store.base import (
    MESSAGES,
    ROOMS,
    USERS,
    DocumentStore,
    Filter,
    OrderBy,
    atomic_update,
)
from spark.utils.timeutils import format_ts, utcnow

logger = structlog.get_logger("spark.chat_service")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
PREVIEW_CHARS = 100

_MEDIA_PREVIEW = {
    MessageType.VOICE: "🎤 Voice note",
    MessageType.IMAGE: "📷 Photo",
}


class ChatService:
    def __init__(
        self,
        store: DocumentStore,
        room_service: RoomService,
        notifications: NotificationService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rooms = room_service
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.clock = clock
        self.directory = UserDirectory(store)

    async def send_message(
        self,
        room_id: str,
        sender_id: str,
        text: Optional[str] = None,
        message_type: str = "text",
        media_url: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> Message:
        """Store a message from ``sender_id`` and bump the room's activity."""
        if not room_id:
            raise InvalidArgumentError("roomId is required")
        if not text and not media_url:
            raise InvalidArgumentError("Message needs text or media")
        try:
            kind = MessageType(message_type)
        except ValueError:
            raise InvalidArgumentError(f"Invalid message type {message_type!r}") from None

        room = await self.rooms.get_room_for(room_id, sender_id)
        self.rooms.check_can_send(room, kind)

        now = self.clock()
        message = Message(
            id=uuid.uuid4().hex,
            room_id=room_id,
            sender_id=sender_id,
            text=text or "",
            type=kind,
            media_url=media_url,
            duration=duration,
            status=MessageStatus.SENT,
            created_at=now,
        )

        # Stored only once the room has accepted the message.
        def _touch(doc) -> tuple[dict, None]:
            current = Room.from_document(doc.data)
            self.rooms.check_can_send(current, kind)
            current.last_message_at = now
            current.message_count += 1
            return current.to_document(), None

        touched, _ = await atomic_update(
            self.store, ROOMS, room_id, _touch,
            max_attempts=self.settings.CAS_MAX_ATTEMPTS,
        )
        if touched is None:
            raise NotFoundError("Room not found")
        await self.store.set(MESSAGES, message.id, message.to_document())
        logger.info(
            "message_sent",
            room_id=room_id,
            sender_id=sender_id,
            message_id=message.id,
            type=kind.value,
        )

        sender_name = await self.directory.display_name(sender_id)
        preview = _MEDIA_PREVIEW.get(kind) or message.text[:PREVIEW_CHARS]
        await self.notifications.dispatch(
            [
                NotificationService.new_message(
                    room.other_participant(sender_id), room_id, sender_id, sender_name, preview
                )
            ]
        )
        return message

    async def get_messages(
        self,
        room_id: str,
        user_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        before: Optional[datetime] = None,
    ) -> list[Message]:
        """Newest ``limit`` messages (older than ``before``), oldest first."""
        await self.rooms.get_room_for(room_id, user_id)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        filters = [Filter("roomId", "==", room_id)]
        if before is not None:
            filters.append(Filter("createdAt", "<", format_ts(before)))
        docs = await self.store.query(
            MESSAGES, filters, order_by=[OrderBy("createdAt", descending=True)], limit=limit
        )
        return [Message.from_document({"id": d.id, **d.data}) for d in reversed(docs)]

    async def mark_messages_delivered(self, room_id: str, user_id: str) -> int:
        return await self._advance_status(room_id, user_id, MessageStatus.DELIVERED)

    async def mark_messages_read(self, room_id: str, user_id: str) -> int:
        return await self._advance_status(room_id, user_id, MessageStatus.READ)

    async def _advance_status(self, room_id: str, user_id: str, target: MessageStatus) -> int:
        await self.rooms.get_room_for(room_id, user_id)
        behind = [s.value for s in MessageStatus if s.rank < target.rank]
        docs = await self.store.query(
            MESSAGES,
            [
                Filter("roomId", "==", room_id),
                Filter("senderId", "!=", user_id),
                Filter("status", "in", behind),
            ],
        )

        def _advance(doc) -> tuple[Optional[dict], bool]:
            message = Message.from_document({"id": doc.id, **doc.data})
            if message.status.rank >= target.rank:
                return None, False
            message.status = target
            return message.to_document(), True

        marked = 0
        for doc in docs:
            _, changed = await atomic_update(
                self.store, MESSAGES, doc.id, _advance,
                max_attempts=self.settings.CAS_MAX_ATTEMPTS,
            )
            if changed:
                marked += 1

        logger.info(
            "messages_marked",
            room_id=room_id,
            user_id=user_id,
            status=target.value,
            count=marked,
        )
        return marked

    async def get_active_rooms(self, user_id: str) -> ActiveRoomsResponse:
        """Open rooms for ``user_id``, most recent activity first."""
        docs = await self.store.query(
            ROOMS,
            [
                Filter("participants", "array_contains", user_id),
                Filter("status", "in", [RoomStatus.ACTIVE.value, RoomStatus.CONNECTED.value]),
            ],
            order_by=[OrderBy("lastMessageAt", descending=True)],
        )
        rooms = [Room.from_document(d.data) for d in docs]
        peers = await self.store.get_many(USERS, [r.other_participant(user_id) for r in rooms])

        items = []
        for room in rooms:
            peer_id = room.other_participant(user_id)
            peer_doc = peers.get(peer_id)
            card = (
                self.directory.profile_from(peer_doc).public_card()
                if peer_doc is not None
                else {"id": peer_id}
            )
            latest = await self.store.query(
                MESSAGES,
                [Filter("roomId", "==", room.id)],
                order_by=[OrderBy("createdAt", descending=True)],
                limit=1,
            )
            unread = await self.store.query(
                MESSAGES,
                [
                    Filter("roomId", "==", room.id),
                    Filter("senderId", "==", peer_id),
                    Filter("status", "in", [MessageStatus.SENT.value, MessageStatus.DELIVERED.value]),
                ],
            )
            items.append(
                ActiveRoomItem(
                    room=room.to_document(),
                    other_user=card,
                    last_message=latest[0].data.get("text") if latest else None,
                    last_message_time=room.last_message_at,
                    unread_count=len(unread),
                )
            )
        return ActiveRoomsResponse(rooms=items)
