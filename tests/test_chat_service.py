"""Tests for ChatService — messaging inside rooms."""
from datetime import timedelta

from unittest.mock import AsyncMock

import pytest

from spark.errors import (
    ConcurrentUpdateError,
    FailedPreconditionError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from spark.schemas.room import MessageStatus, Room, RoomStatus
from spark.services.chat_service import ChatService
from spark.services.room_service import RoomService
from spark.store.base import MESSAGES, ROOMS


@pytest.fixture
def rooms(store, notifications, settings, clock):
    return RoomService(store, notifications, settings, clock=clock)


@pytest.fixture
def chat(store, rooms, notifications, settings, clock):
    return ChatService(store, rooms, notifications, settings, clock=clock)


def _set_status(store, room_id, status):
    doc = store.dump(ROOMS)[room_id]
    doc["status"] = status
    store.load(ROOMS, {room_id: doc})


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_text_message(self, chat, room, store, clock, gateway):
        clock.advance(minutes=5)
        message = await chat.send_message(room.id, "alice", text="hey there")

        stored = store.dump(MESSAGES)[message.id]
        assert stored["senderId"] == "alice"
        assert stored["status"] == "sent"
        assert stored["type"] == "text"

        updated = Room.from_document(store.dump(ROOMS)[room.id])
        assert updated.message_count == 1
        assert updated.last_message_at == clock()

        (note,) = gateway.of_type("chat")
        assert note["recipient"] == "bob"
        assert note["title"] == "Alice"
        assert note["body"] == "hey there"

    @pytest.mark.asyncio
    async def test_voice_unlocks_on_day_three(self, chat, rooms, room, clock):
        clock.advance(days=1)
        await rooms.advance_days()
        with pytest.raises(FailedPreconditionError):
            await chat.send_message(room.id, "alice", message_type="voice",
                                    media_url="gs://voice/1.m4a", duration=4.2)

        clock.advance(days=1)
        await rooms.advance_days()
        message = await chat.send_message(room.id, "alice", message_type="voice",
                                          media_url="gs://voice/1.m4a", duration=4.2)
        assert message.duration == 4.2

    @pytest.mark.asyncio
    async def test_image_unlocks_on_day_five(self, chat, rooms, room, clock, gateway):
        clock.advance(days=3)
        await rooms.advance_days()
        with pytest.raises(FailedPreconditionError):
            await chat.send_message(room.id, "bob", message_type="image", media_url="gs://img/1")

        clock.advance(days=1)
        await rooms.advance_days()
        await chat.send_message(room.id, "bob", message_type="image", media_url="gs://img/1")
        assert gateway.of_type("chat")[-1]["body"] == "📷 Photo"

    @pytest.mark.asyncio
    async def test_connected_room_still_open(self, chat, room, store):
        _set_status(store, room.id, RoomStatus.CONNECTED.value)
        await chat.send_message(room.id, "bob", text="forever")

    @pytest.mark.asyncio
    async def test_closed_room_rejects(self, chat, room, store):
        _set_status(store, room.id, RoomStatus.EXPIRED.value)
        with pytest.raises(FailedPreconditionError):
            await chat.send_message(room.id, "bob", text="hello?")

    @pytest.mark.asyncio
    async def test_room_closing_mid_send_stores_nothing(self, chat, rooms, room, store):
        load_room = rooms.get_room_for

        async def closes_after_read(room_id, user_id):
            snapshot = await load_room(room_id, user_id)
            _set_status(store, room_id, RoomStatus.EXPIRED.value)
            return snapshot

        rooms.get_room_for = closes_after_read
        with pytest.raises(FailedPreconditionError):
            await chat.send_message(room.id, "bob", text="too late")

        assert store.dump(MESSAGES) == {}
        assert store.dump(ROOMS)[room.id]["messageCount"] == 0

    @pytest.mark.asyncio
    async def test_lost_room_update_stores_nothing(self, chat, room, store):
        store.compare_and_set = AsyncMock(return_value=False)
        with pytest.raises(ConcurrentUpdateError):
            await chat.send_message(room.id, "alice", text="contended")

        assert store.dump(MESSAGES) == {}
        assert store.dump(ROOMS)[room.id]["messageCount"] == 0

    @pytest.mark.asyncio
    async def test_invalid_requests(self, chat, room):
        with pytest.raises(InvalidArgumentError):
            await chat.send_message(room.id, "alice")
        with pytest.raises(InvalidArgumentError):
            await chat.send_message(room.id, "alice", text="x", message_type="gif")
        with pytest.raises(InvalidArgumentError):
            await chat.send_message("", "alice", text="x")
        with pytest.raises(PermissionDeniedError):
            await chat.send_message(room.id, "mallory", text="hi")

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_send(self, store, rooms, room, settings, clock,
                                                   failing_notifications):
        chat = ChatService(store, rooms, failing_notifications, settings, clock=clock)
        message = await chat.send_message(room.id, "alice", text="still sent")
        assert message.id in store.dump(MESSAGES)


class TestHistory:
    async def _conversation(self, chat, room, clock, count=5):
        sent = []
        for n in range(count):
            clock.advance(minutes=1)
            sender = "alice" if n % 2 == 0 else "bob"
            sent.append(await chat.send_message(room.id, sender, text=f"m{n}"))
        return sent

    @pytest.mark.asyncio
    async def test_newest_page_in_chronological_order(self, chat, room, clock):
        await self._conversation(chat, room, clock)
        page = await chat.get_messages(room.id, "bob", limit=3)
        assert [m.text for m in page] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_before_cursor(self, chat, room, clock):
        sent = await self._conversation(chat, room, clock)
        page = await chat.get_messages(room.id, "alice", limit=10, before=sent[2].created_at)
        assert [m.text for m in page] == ["m0", "m1"]

    @pytest.mark.asyncio
    async def test_outsider_cannot_read(self, chat, room):
        with pytest.raises(PermissionDeniedError):
            await chat.get_messages(room.id, "mallory")


class TestStatusMarks:
    @pytest.mark.asyncio
    async def test_read_marks_only_peer_messages(self, chat, room, store, clock):
        for text in ("a", "b"):
            clock.advance(minutes=1)
            await chat.send_message(room.id, "alice", text=text)
        own = await chat.send_message(room.id, "bob", text="mine")

        assert await chat.mark_messages_read(room.id, "bob") == 2
        assert store.dump(MESSAGES)[own.id]["status"] == "sent"
        assert await chat.mark_messages_read(room.id, "bob") == 0

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, chat, room, store):
        message = await chat.send_message(room.id, "alice", text="hi")
        assert await chat.mark_messages_delivered(room.id, "bob") == 1
        assert await chat.mark_messages_read(room.id, "bob") == 1
        assert await chat.mark_messages_delivered(room.id, "bob") == 0
        assert store.dump(MESSAGES)[message.id]["status"] == MessageStatus.READ.value


class TestActiveRooms:
    @pytest.mark.asyncio
    async def test_lists_open_rooms_with_peer_and_unread(self, chat, rooms, room, store, clock):
        clock.advance(minutes=1)
        await chat.send_message(room.id, "alice", text="first")
        clock.advance(minutes=1)
        await chat.send_message(room.id, "alice", text="second")

        closed = await rooms.create_room("bob", "alice", "match-2")
        _set_status(store, closed.id, RoomStatus.PASSED.value)

        response = await chat.get_active_rooms("bob")
        (item,) = response.rooms
        assert item.room["id"] == room.id
        assert item.other_user["name"] == "Alice"
        assert item.last_message == "second"
        assert item.unread_count == 2

        await chat.mark_messages_read(room.id, "bob")
        (item,) = (await chat.get_active_rooms("bob")).rooms
        assert item.unread_count == 0

    @pytest.mark.asyncio
    async def test_most_recent_activity_first(self, chat, rooms, room, clock):
        other = await rooms.create_room("alice", "carol", "match-3")
        clock.advance(minutes=5)
        await chat.send_message(room.id, "bob", text="newest")

        response = await chat.get_active_rooms("alice")
        assert [i.room["id"] for i in response.rooms] == [room.id, other.id]
        assert response.rooms[1].other_user == {"id": "carol"}
