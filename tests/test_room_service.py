"""Tests for RoomService — the room state machine."""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from spark.config import Settings
from spark.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from spark.schemas.room import Room, RoomStatus
from spark.services.room_service import RoomService, room_id_for_match
from spark.store.base import ROOMS, ROOMS_ARCHIVE, USERS, Filter
from spark.utils.timeutils import format_ts


@pytest.fixture
def rooms(store, notifications, settings, clock):
    return RoomService(store, notifications, settings, clock=clock)


def _stored(store, room_id):
    return Room.from_document(store.dump(ROOMS)[room_id])


class TestCreateRoom:
    @pytest.mark.asyncio
    async def test_initial_state(self, rooms, clock):
        room = await rooms.create_room("alice", "bob", "match-1")
        assert room.id == room_id_for_match("match-1")
        assert room.status is RoomStatus.ACTIVE
        assert room.day_number == 1
        assert room.decisions == {}
        assert room.extensions_used == 0
        assert room.expires_at == clock() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_same_match_never_opens_two_rooms(self, rooms, store, clock):
        first = await rooms.create_room("alice", "bob", "match-1")
        clock.advance(hours=1)
        second = await rooms.create_room("alice", "bob", "match-1")
        assert first.id == second.id
        assert second.started_at == first.started_at
        assert len(store.dump(ROOMS)) == 1

    @pytest.mark.asyncio
    async def test_archived_room_is_not_recreated(self, rooms, store):
        room = await rooms.create_room("alice", "bob", "match-1")
        store.load(ROOMS_ARCHIVE, {room.id: store.dump(ROOMS)[room.id]})
        await store.delete(ROOMS, room.id)

        again = await rooms.create_room("alice", "bob", "match-1")
        assert again.id == room.id
        assert store.dump(ROOMS) == {}


class TestDecide:
    @pytest.mark.asyncio
    async def test_first_decision_awaits_peer(self, rooms, room, gateway):
        result = await rooms.decide(room.id, "alice", "connect")
        assert result.status is RoomStatus.ACTIVE
        assert result.awaiting_other is True
        assert result.mutual_match is None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_mutual_connect(self, rooms, room, store, gateway):
        await rooms.decide(room.id, "alice", "connect")
        result = await rooms.decide(room.id, "bob", "connect")

        assert result.status is RoomStatus.CONNECTED
        assert result.mutual_match is True
        assert _stored(store, room.id).status is RoomStatus.CONNECTED
        celebrations = gateway.of_type("mutual_match")
        assert sorted(n["recipient"] for n in celebrations) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_connect_and_pass_resolves_to_passed(self, rooms, room, store, gateway):
        await rooms.decide(room.id, "alice", "connect")
        result = await rooms.decide(room.id, "bob", "pass")
        assert result.status is RoomStatus.PASSED
        assert result.mutual_match is False
        assert gateway.of_type("mutual_match") == []

    @pytest.mark.asyncio
    async def test_concurrent_decisions_converge_once(self, rooms, room, store, gateway):
        """Bob's decision lands between Alice's read and write."""
        original_cas = store.compare_and_set
        raced = False

        async def racing_cas(collection, doc_id, expected_version, data):
            nonlocal raced
            if not raced:
                raced = True
                current = store.dump(ROOMS)[room.id]
                current["decisions"]["bob"] = "connect"
                store.load(ROOMS, {room.id: current})
            return await original_cas(collection, doc_id, expected_version, data)

        store.compare_and_set = racing_cas
        result = await rooms.decide(room.id, "alice", "connect")

        assert result.status is RoomStatus.CONNECTED
        assert len(gateway.of_type("mutual_match")) == 2

    @pytest.mark.asyncio
    async def test_decision_can_change_until_peer_decides(self, rooms, room, store):
        await rooms.decide(room.id, "alice", "connect")
        await rooms.decide(room.id, "alice", "pass")
        assert _stored(store, room.id).decisions == {"alice": "pass"}

    @pytest.mark.asyncio
    async def test_terminal_room_repeat_is_idempotent(self, rooms, room, gateway):
        await rooms.decide(room.id, "alice", "connect")
        await rooms.decide(room.id, "bob", "connect")

        again = await rooms.decide(room.id, "alice", "connect")
        assert again.status is RoomStatus.CONNECTED
        assert len(gateway.of_type("mutual_match")) == 2

        with pytest.raises(FailedPreconditionError):
            await rooms.decide(room.id, "alice", "pass")

    @pytest.mark.asyncio
    async def test_invalid_calls(self, rooms, room):
        with pytest.raises(InvalidArgumentError):
            await rooms.decide(room.id, "alice", "maybe")
        with pytest.raises(InvalidArgumentError):
            await rooms.decide("", "alice", "connect")
        with pytest.raises(NotFoundError):
            await rooms.decide("missing", "alice", "connect")
        with pytest.raises(PermissionDeniedError):
            await rooms.decide(room.id, "mallory", "connect")
        with pytest.raises(PermissionDeniedError):
            await rooms.decide(room.id, "mallory", "extend")


class TestExtend:
    @pytest.mark.asyncio
    async def test_extend_once(self, rooms, room, store, clock):
        clock.advance(days=4)
        await rooms.advance_days()
        assert _stored(store, room.id).day_number == 5

        result = await rooms.decide(room.id, "alice", "extend")
        assert result.extended is True
        assert result.day_number == 2
        assert result.expires_at == room.expires_at + timedelta(days=3)

        stored = _stored(store, room.id)
        assert stored.extensions_used == 1
        assert stored.decisions == {}

        with pytest.raises(FailedPreconditionError):
            await rooms.decide(room.id, "alice", "extend")

    @pytest.mark.asyncio
    async def test_day_floor_is_one(self, rooms, room):
        result = await rooms.decide(room.id, "alice", "extend")
        assert result.day_number == 1

    @pytest.mark.asyncio
    async def test_requires_premium(self, rooms, room):
        with pytest.raises(FailedPreconditionError):
            await rooms.decide(room.id, "bob", "extend")

    @pytest.mark.asyncio
    async def test_next_advance_recomputes_day_from_start(self, rooms, room, store, clock):
        clock.advance(days=4)
        await rooms.advance_days()
        await rooms.decide(room.id, "alice", "extend")
        assert _stored(store, room.id).day_number == 2

        clock.advance(days=1)
        await rooms.advance_days()
        stored = _stored(store, room.id)
        assert stored.day_number == 6
        assert stored.extensions_used == 1
        assert stored.expires_at == room.expires_at + timedelta(days=3)


class TestAdvanceDays:
    @pytest.mark.asyncio
    async def test_day_follows_elapsed_time(self, rooms, room, store, clock, gateway):
        clock.advance(days=2)
        summary = await rooms.advance_days()
        assert summary.rooms_updated == 1
        assert summary.reminders_sent == 0
        assert _stored(store, room.id).day_number == 3

        again = await rooms.advance_days()
        assert again.rooms_updated == 0

    @pytest.mark.asyncio
    async def test_reminders_on_days_six_and_seven(self, rooms, room, clock, gateway):
        clock.advance(days=5)
        summary = await rooms.advance_days()
        assert summary.reminders_sent == 2
        day_six = gateway.of_type("decision_reminder")
        assert {n["title"] for n in day_six} == {"📅 1 day left to decide"}
        assert any("Bob" in n["body"] for n in day_six if n["recipient"] == "alice")

        gateway.sent.clear()
        clock.advance(days=1)
        await rooms.advance_days()
        assert {n["title"] for n in gateway.of_type("decision_reminder")} == {"⏰ Decision day!"}

    @pytest.mark.asyncio
    async def test_unreadable_peer_profile_does_not_stop_the_run(
        self, rooms, room, store, clock, gateway
    ):
        # Dave's profile is missing its gender and fails validation.
        store.load(USERS, {"dave": {"name": "Dave", "age": 31}})
        now = clock()
        other = Room(
            id=room_id_for_match("match-2"),
            match_id="match-2",
            participants=["carol", "dave"],
            started_at=now,
            expires_at=now + timedelta(days=7),
            last_message_at=now,
            created_at=now,
        )
        store.load(ROOMS, {other.id: other.to_document()})

        clock.advance(days=5)
        summary = await rooms.advance_days()

        assert summary.rooms_updated == 2
        assert summary.rooms_failed == 0
        assert summary.reminders_sent == 4
        assert _stored(store, room.id).day_number == 6
        assert _stored(store, other.id).day_number == 6
        to_carol = [n for n in gateway.of_type("decision_reminder") if n["recipient"] == "carol"]
        assert "your match" in to_carol[0]["body"]

    @pytest.mark.asyncio
    async def test_day_capped_at_seven(self, rooms, room, store, clock):
        clock.advance(days=12)
        await rooms.advance_days()
        assert _stored(store, room.id).day_number == 7

    @pytest.mark.asyncio
    async def test_terminal_rooms_untouched(self, rooms, room, store, clock):
        await rooms.decide(room.id, "alice", "pass")
        await rooms.decide(room.id, "bob", "pass")
        clock.advance(days=3)
        summary = await rooms.advance_days()
        assert summary.rooms_scanned == 0
        assert _stored(store, room.id).day_number == 1


class TestSweepExpired:
    @pytest.mark.asyncio
    async def test_one_sided_decision_expires(self, rooms, room, store, clock, gateway):
        await rooms.decide(room.id, "alice", "connect")
        clock.advance(days=7)

        summary = await rooms.sweep_expired()
        assert summary.rooms_expired == 1
        assert _stored(store, room.id).status is RoomStatus.EXPIRED
        assert sorted(n["recipient"] for n in gateway.of_type("expired")) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_not_yet_expired_left_alone(self, rooms, room, store, clock):
        clock.advance(days=6)
        summary = await rooms.sweep_expired()
        assert summary.rooms_scanned == 0
        assert _stored(store, room.id).status is RoomStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_both_decided_resolves_like_a_decision(self, rooms, room, store, clock, gateway):
        doc = store.dump(ROOMS)[room.id]
        doc["decisions"] = {"alice": "connect", "bob": "connect"}
        store.load(ROOMS, {room.id: doc})
        clock.advance(days=8)

        summary = await rooms.sweep_expired()
        assert summary.rooms_connected == 1
        assert _stored(store, room.id).status is RoomStatus.CONNECTED
        assert len(gateway.of_type("mutual_match")) == 2
        assert gateway.of_type("expired") == []

    @pytest.mark.asyncio
    async def test_decision_racing_the_sweep_wins_once(self, rooms, room, store, clock, gateway):
        clock.advance(days=7)
        stale = await store.query(
            ROOMS,
            [Filter("status", "==", "active"), Filter("expiresAt", "<=", format_ts(clock()))],
        )
        await rooms.decide(room.id, "alice", "connect")
        await rooms.decide(room.id, "bob", "connect")

        store.query = AsyncMock(return_value=stale)
        summary = await rooms.sweep_expired()

        assert summary.rooms_skipped == 1
        assert _stored(store, room.id).status is RoomStatus.CONNECTED
        assert gateway.of_type("expired") == []
        assert len(gateway.of_type("mutual_match")) == 2


def _closed_room(room_id, status, expires_at, started_at):
    return Room(
        id=room_id,
        match_id=f"match-{room_id}",
        participants=["alice", "bob"],
        day_number=7,
        started_at=started_at,
        expires_at=expires_at,
        last_message_at=started_at,
        status=status,
        created_at=started_at,
    ).to_document()


class TestArchive:
    def _seed(self, store, clock):
        old = clock() - timedelta(days=45)
        recent = clock() - timedelta(days=5)
        docs = {f"old{n}": _closed_room(f"old{n}", RoomStatus.EXPIRED, old, old) for n in range(4)}
        docs["oldpass"] = _closed_room("oldpass", RoomStatus.PASSED, old, old)
        docs["recent"] = _closed_room("recent", RoomStatus.EXPIRED, recent, recent)
        docs["together"] = _closed_room("together", RoomStatus.CONNECTED, old, old)
        store.load(ROOMS, docs)
        return docs

    @pytest.mark.asyncio
    async def test_moves_stale_rooms_in_pages(self, store, notifications, clock):
        docs = self._seed(store, clock)
        settings = Settings(_env_file=None, ARCHIVE_QUERY_LIMIT=2, ARCHIVE_BATCH_WRITES=4)
        rooms = RoomService(store, notifications, settings, clock=clock)

        summary = await rooms.archive_stale()

        assert summary.rooms_archived == 5
        assert summary.batches_committed == 3
        assert sorted(store.dump(ROOMS)) == ["recent", "together"]
        archived = store.dump(ROOMS_ARCHIVE)
        assert sorted(archived) == ["old0", "old1", "old2", "old3", "oldpass"]
        assert archived["old2"] == docs["old2"]

    @pytest.mark.asyncio
    async def test_batches_split_at_write_limit(self, store, notifications, clock):
        self._seed(store, clock)
        settings = Settings(_env_file=None, ARCHIVE_BATCH_WRITES=3)
        rooms = RoomService(store, notifications, settings, clock=clock)

        summary = await rooms.archive_stale()
        assert summary.rooms_archived == 5
        assert summary.batches_committed == 5

    @pytest.mark.asyncio
    async def test_rerun_is_a_no_op(self, rooms, store, clock):
        self._seed(store, clock)
        await rooms.archive_stale()
        summary = await rooms.archive_stale()
        assert summary.rooms_archived == 0
        assert summary.batches_committed == 0
